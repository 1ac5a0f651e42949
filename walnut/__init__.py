"""Walnut - multi-mint Cashu wallet transaction engine.

Holds ecash proofs from any number of mints and drives top-ups, sends,
receives and Lightning payments through an audited transaction ledger.
"""

from loguru import logger

from .wallet import TransactionResult, Wallet

# Silent as a library; the CLI turns logging on
logger.disable("walnut")

__all__ = [
    "Wallet",
    "TransactionResult",
]
