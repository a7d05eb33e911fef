"""
Heirloom — Systems

Stateful domain systems. Currently only identity enrollment.
"""
