"""
Wallet Ledger

An off-chain custodial balance ledger where transfers are authorized by
signed approval messages. All balance math uses integer minor units.
"""

__version__ = "1.0.0"
