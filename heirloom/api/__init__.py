"""
Heirloom — HTTP API
"""
