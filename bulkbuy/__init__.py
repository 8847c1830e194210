"""
Multi-wallet bulk buy for bonding-curve tokens on Solana.
"""

__version__ = "0.1.0"
