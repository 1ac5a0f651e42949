"""Transaction Ledger: audited record of every wallet operation."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Iterable

from loguru import logger

from .types import CurrencyUnit, NotFoundError, ValidationError


class TransactionType(str, Enum):
    RECEIVE = "RECEIVE"
    RECEIVE_OFFLINE = "RECEIVE_OFFLINE"
    SEND = "SEND"
    TOPUP = "TOPUP"
    TRANSFER = "TRANSFER"


class TransactionStatus(str, Enum):
    DRAFT = "DRAFT"
    PREPARED = "PREPARED"
    PREPARED_OFFLINE = "PREPARED_OFFLINE"  # token stored, not redeemed yet
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    REVERTED = "REVERTED"
    EXPIRED = "EXPIRED"
    BLOCKED = "BLOCKED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        TransactionStatus.COMPLETED,
        TransactionStatus.ERROR,
        TransactionStatus.REVERTED,
        TransactionStatus.EXPIRED,
        TransactionStatus.BLOCKED,
    }
)

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.DRAFT: frozenset(
        {
            TransactionStatus.PREPARED,
            TransactionStatus.PREPARED_OFFLINE,
            TransactionStatus.PENDING,
            TransactionStatus.COMPLETED,
            TransactionStatus.ERROR,
            TransactionStatus.BLOCKED,
        }
    ),
    TransactionStatus.PREPARED_OFFLINE: frozenset(
        {
            TransactionStatus.PREPARED,
            TransactionStatus.COMPLETED,
            TransactionStatus.ERROR,
            TransactionStatus.BLOCKED,
        }
    ),
    TransactionStatus.PREPARED: frozenset(
        {
            TransactionStatus.PENDING,
            TransactionStatus.COMPLETED,
            TransactionStatus.ERROR,
            TransactionStatus.REVERTED,
        }
    ),
    TransactionStatus.PENDING: frozenset(
        {
            TransactionStatus.COMPLETED,
            TransactionStatus.ERROR,
            TransactionStatus.REVERTED,
            TransactionStatus.EXPIRED,
        }
    ),
}


@dataclass
class Transaction:
    """One audited wallet operation.

    ``data`` is an append-only list of step records; each carries the status
    it moved to and a ``createdAt`` timestamp.
    """

    id: int
    type: TransactionType
    amount: int
    unit: CurrencyUnit = "sat"
    fee: int = 0
    status: TransactionStatus = TransactionStatus.DRAFT
    data: list[dict[str, Any]] = field(default_factory=list)
    balance_after: int | None = None
    created_at: float = field(default_factory=time.time)
    note_to_self: str | None = None
    memo: str | None = None
    mint: str | None = None
    input_token: str | None = None
    output_token: str | None = None
    proof: str | None = None  # payment preimage
    sent_from: str | None = None
    received_amount: int | None = None

    @property
    def last_step(self) -> dict[str, Any]:
        return self.data[-1] if self.data else {}

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["type"] = self.type.value
        result["status"] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        data = dict(data)
        data["type"] = TransactionType(data["type"])
        data["status"] = TransactionStatus(data["status"])
        return cls(**data)


class TransactionLedger:
    def __init__(self) -> None:
        self._transactions: dict[int, Transaction] = {}
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._transactions)

    def add_transaction(
        self,
        type: TransactionType,
        amount: int,
        *,
        unit: CurrencyUnit = "sat",
        fee: int = 0,
        memo: str | None = None,
        mint: str | None = None,
        step: dict[str, Any] | None = None,
        **fields: Any,
    ) -> Transaction:
        """Create a DRAFT transaction with its first audit step."""
        transaction = Transaction(
            id=self._next_id,
            type=type,
            amount=amount,
            unit=unit,
            fee=fee,
            memo=memo,
            mint=mint,
            **fields,
        )
        transaction.data.append(
            _step(TransactionStatus.DRAFT, step or {"amount": amount, "unit": unit})
        )
        self._transactions[transaction.id] = transaction
        self._next_id += 1
        logger.info(
            f"Created {type.value} transaction {transaction.id} for {amount} {unit}"
        )
        return transaction

    def find_by_id(self, transaction_id: int) -> Transaction | None:
        return self._transactions.get(transaction_id)

    def get(self, transaction_id: int) -> Transaction:
        transaction = self.find_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError(
                f"Transaction {transaction_id} not found",
                {"transactionId": transaction_id},
            )
        return transaction

    # ───────────────────────── Status machine ─────────────────────────────────

    def update_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        step: dict[str, Any] | None = None,
    ) -> bool:
        """Move a transaction to ``status`` and append an audit step.

        Returns:
            False if the transaction already had ``status`` (no-op)

        Raises:
            ValidationError: If the transition is not allowed
        """
        transaction = self.get(transaction_id)
        if transaction.status == status:
            return False

        allowed = ALLOWED_TRANSITIONS.get(transaction.status, frozenset())
        if status not in allowed:
            raise ValidationError(
                f"Cannot move transaction {transaction_id} from "
                f"{transaction.status.value} to {status.value}",
                {"transactionId": transaction_id},
            )

        transaction.data.append(_step(status, step or {}))
        transaction.status = status
        logger.info(f"Transaction {transaction_id} -> {status.value}")
        return True

    def update_statuses(
        self,
        transaction_ids: Iterable[int],
        status: TransactionStatus,
        step: dict[str, Any] | None = None,
    ) -> list[int]:
        """Bulk update; transactions already in a terminal state are skipped.

        Returns:
            Ids that actually changed status
        """
        changed: list[int] = []
        for transaction_id in transaction_ids:
            transaction = self.find_by_id(transaction_id)
            if transaction is None or transaction.status.is_terminal:
                continue
            if self.update_status(transaction_id, status, step):
                changed.append(transaction_id)
        return changed

    def append_step(self, transaction_id: int, step: dict[str, Any]) -> None:
        """Record an audit step without changing status."""
        transaction = self.get(transaction_id)
        transaction.data.append(_step(transaction.status, step))

    # ───────────────────────── Field setters ─────────────────────────────────

    def set_balance_after(self, transaction_id: int, balance: int) -> None:
        self.get(transaction_id).balance_after = balance

    def set_fee(self, transaction_id: int, fee: int) -> None:
        self.get(transaction_id).fee = fee

    def set_output_token(self, transaction_id: int, token: str) -> None:
        self.get(transaction_id).output_token = token

    def set_proof(self, transaction_id: int, preimage: str) -> None:
        self.get(transaction_id).proof = preimage

    def set_received_amount(self, transaction_id: int, amount: int) -> None:
        self.get(transaction_id).received_amount = amount

    def set_note_to_self(self, transaction_id: int, note: str) -> None:
        self.get(transaction_id).note_to_self = note

    # ───────────────────────── Queries ─────────────────────────────────

    def all(self) -> list[Transaction]:
        return list(self._transactions.values())

    def get_by_status(
        self, status: TransactionStatus, type: TransactionType | None = None
    ) -> list[Transaction]:
        return [
            t
            for t in self._transactions.values()
            if t.status == status and (type is None or t.type == type)
        ]

    def get_pending(self, type: TransactionType | None = None) -> list[Transaction]:
        return self.get_by_status(TransactionStatus.PENDING, type)

    def get_recent(self, limit: int = 10) -> list[Transaction]:
        return sorted(
            self._transactions.values(), key=lambda t: (t.created_at, t.id), reverse=True
        )[:limit]

    def count(self) -> int:
        return len(self._transactions)

    # ───────────────────────── Persistence ─────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "nextId": self._next_id,
            "transactions": [t.to_dict() for t in self._transactions.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransactionLedger:
        ledger = cls()
        for item in data.get("transactions", []):
            transaction = Transaction.from_dict(item)
            ledger._transactions[transaction.id] = transaction
        ledger._next_id = data.get(
            "nextId", max(ledger._transactions, default=0) + 1
        )
        return ledger


def _step(status: TransactionStatus, fields: dict[str, Any]) -> dict[str, Any]:
    return {"status": status.value, **fields, "createdAt": time.time()}
