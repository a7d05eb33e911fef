"""
Heirloom — Proof-of-Personhood Enrollment

Gates enrollment into the user registry behind a Privado ID zero-knowledge
proof, enforcing one human, one account via single-use nullifiers.
"""

__version__ = "0.1.0"
