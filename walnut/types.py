"""Type definitions and error hierarchy for the walnut wallet engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, TypedDict

from loguru import logger


# Currency units used by Cashu mints (NUT-00)
CurrencyUnit = Literal[
    "btc",  # Bitcoin
    "sat",  # Satoshi (1e-8 BTC)
    "msat",  # Millisatoshi (1e-11 BTC)
    "usd",  # US Dollar
    "eur",  # Euro
    "auth",  # Authentication tokens
]


class Proof(TypedDict):
    """Proof structure extended with the owning mint and unit.

    ``C`` is the mint's unblinded signature over ``secret``.
    """

    id: str
    amount: int
    secret: str
    C: str
    mint: str
    unit: CurrencyUnit


class BlindedMessage(TypedDict):
    """Blinded message for mint operations."""

    amount: int
    B_: str  # hex encoded blinded message
    id: str  # keyset ID


class BlindedSignature(TypedDict):
    """Blinded signature response from mint."""

    amount: int
    C_: str  # hex encoded blinded signature
    id: str  # keyset ID


class Keyset(TypedDict):
    """Keys of one keyset as served by a mint (NUT-01)."""

    id: str
    unit: CurrencyUnit
    keys: dict[str, str]  # amount -> compressed secp256k1 pubkey


class ProofState(str, Enum):
    """Where a proof sits in the ledger."""

    HELD = "HELD"
    PENDING = "PENDING"
    SPENT = "SPENT"


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class WalletError(Exception):
    """Base class for wallet errors.

    Every error carries a ``params`` dict with context for the audit trail
    (caller, mint url, raw mint message, error token...). Errors are logged
    once when they are created.
    """

    name = "WALLET_ERROR"

    def __init__(self, message: str, params: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.params: dict[str, Any] = params or {}
        logger.error(f"{self.name}: {message} {self.params or ''}")


class MintConnectionError(WalletError):
    """Mint unreachable or timed out."""

    name = "CONNECTION_ERROR"


class ValidationError(WalletError):
    """Malformed input, invalid keys, insufficient funds, expired invoice."""

    name = "VALIDATION_ERROR"


class MintError(WalletError):
    """Well-formed but rejected mint response."""

    name = "MINT_ERROR"


class StorageError(WalletError):
    """Local persistence failure."""

    name = "STORAGE_ERROR"


class NotFoundError(WalletError):
    name = "NOT_FOUND_ERROR"


class AlreadyExistsError(WalletError):
    name = "ALREADY_EXISTS_ERROR"


class UnauthorizedError(WalletError):
    name = "UNAUTHORIZED_ERROR"


class DuplicateProofError(ValidationError):
    """A proof with the same secret is already in the ledger."""

    name = "DUPLICATE_ERROR"


MAX_MESSAGE_LENGTH = 200
MAX_PARAMS_MESSAGE_LENGTH = 500


def format_error(exc: BaseException) -> dict[str, Any]:
    """Flatten an exception into the dict stored in transaction audit data.

    Long messages are truncated so that a chatty mint cannot bloat the
    transaction history.
    """
    if isinstance(exc, WalletError):
        name = exc.name
        message = exc.message
        params = dict(exc.params)
    else:
        name = "UNKNOWN_ERROR"
        message = str(exc)
        params = {}

    if isinstance(params.get("message"), str):
        params["message"] = params["message"][:MAX_PARAMS_MESSAGE_LENGTH]

    return {
        "name": name,
        "message": message[:MAX_MESSAGE_LENGTH],
        "params": params,
    }
