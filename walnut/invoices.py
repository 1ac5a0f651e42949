"""Registries for outstanding Lightning invoices.

``InvoiceRegistry`` tracks invoices this wallet asked a mint for (top-ups),
``PaymentRequestRegistry`` tracks invoices contacts asked this wallet to pay.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from .lightning import InvoiceDecoder, decode_invoice
from .types import AlreadyExistsError, ValidationError


@dataclass
class Invoice:
    mint: str
    encoded_invoice: str
    amount: int
    payment_hash: str
    expires_at: int
    transaction_id: int
    quote: str | None = None
    memo: str | None = None
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        return self.expires_at <= (time.time() if now is None else now)


class PaymentRequestStatus(str, Enum):
    RECEIVED = "RECEIVED"
    PAID = "PAID"
    EXPIRED = "EXPIRED"


@dataclass
class PaymentRequest:
    encoded_invoice: str
    amount: int
    payment_hash: str
    expires_at: int
    sent_from: str
    sent_from_pubkey: str | None = None
    description: str | None = None
    memo: str | None = None
    status: PaymentRequestStatus = PaymentRequestStatus.RECEIVED
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        return self.expires_at <= (time.time() if now is None else now)


class InvoiceRegistry:
    def __init__(self, invoice_decoder: InvoiceDecoder = decode_invoice) -> None:
        self._decode = invoice_decoder
        self._invoices: dict[str, Invoice] = {}

    def __len__(self) -> int:
        return len(self._invoices)

    def add_invoice(
        self,
        mint: str,
        encoded_invoice: str,
        amount: int,
        payment_hash: str,
        transaction_id: int,
        *,
        quote: str | None = None,
        memo: str | None = None,
    ) -> Invoice:
        """Track a top-up invoice; expiry comes from the decoded invoice."""
        decoded = self._decode(encoded_invoice)
        invoice = Invoice(
            mint=mint,
            encoded_invoice=encoded_invoice,
            amount=amount,
            payment_hash=payment_hash,
            expires_at=decoded.expires_at,
            transaction_id=transaction_id,
            quote=quote,
            memo=memo,
        )
        self._invoices[payment_hash] = invoice
        return invoice

    def all(self) -> list[Invoice]:
        return list(self._invoices.values())

    def find_by_payment_hash(self, payment_hash: str) -> Invoice | None:
        return self._invoices.get(payment_hash)

    def find_by_transaction_id(self, transaction_id: int) -> Invoice | None:
        return next(
            (i for i in self._invoices.values() if i.transaction_id == transaction_id),
            None,
        )

    def remove_invoice(self, payment_hash: str) -> None:
        self._invoices.pop(payment_hash, None)

    def remove_expired(self, now: float | None = None) -> list[Invoice]:
        """Drop expired invoices and return them."""
        now = time.time() if now is None else now
        expired = [i for i in self._invoices.values() if i.is_expired(now)]
        for invoice in expired:
            del self._invoices[invoice.payment_hash]
        if expired:
            logger.debug(f"Removed {len(expired)} expired invoices")
        return expired

    def to_dict(self) -> dict[str, Any]:
        return {"invoices": [asdict(i) for i in self._invoices.values()]}

    def load(self, data: dict[str, Any]) -> None:
        for item in data.get("invoices", []):
            invoice = Invoice(**item)
            self._invoices[invoice.payment_hash] = invoice


class PaymentRequestRegistry:
    def __init__(self, invoice_decoder: InvoiceDecoder = decode_invoice) -> None:
        self._decode = invoice_decoder
        self._requests: dict[str, PaymentRequest] = {}

    def __len__(self) -> int:
        return len(self._requests)

    def add_payment_request(
        self,
        encoded_invoice: str,
        sent_from: str,
        sent_from_pubkey: str | None = None,
        memo: str | None = None,
        now: float | None = None,
    ) -> PaymentRequest:
        """Track an invoice received from a contact.

        Raises:
            AlreadyExistsError: The payment hash is already tracked
            ValidationError: The invoice has already expired
        """
        decoded = self._decode(encoded_invoice)

        if decoded.payment_hash in self._requests:
            raise AlreadyExistsError(
                "Payment request already exists",
                {"paymentHash": decoded.payment_hash},
            )

        if decoded.is_expired(now):
            raise ValidationError(
                "This invoice has already expired and can not be paid.",
                {"paymentHash": decoded.payment_hash, "expiresAt": decoded.expires_at},
            )

        request = PaymentRequest(
            encoded_invoice=encoded_invoice,
            amount=decoded.amount,
            payment_hash=decoded.payment_hash,
            expires_at=decoded.expires_at,
            sent_from=sent_from,
            sent_from_pubkey=sent_from_pubkey,
            description=decoded.description,
            memo=memo,
        )
        self._requests[request.payment_hash] = request
        return request

    def find_by_payment_hash(self, payment_hash: str) -> PaymentRequest | None:
        return self._requests.get(payment_hash)

    def all_active(self, now: float | None = None) -> list[PaymentRequest]:
        return [
            r
            for r in self._requests.values()
            if r.status == PaymentRequestStatus.RECEIVED and not r.is_expired(now)
        ]

    def mark_paid(self, payment_hash: str) -> PaymentRequest | None:
        request = self._requests.get(payment_hash)
        if request is not None:
            request.status = PaymentRequestStatus.PAID
        return request

    def remove_expired(self, now: float | None = None) -> list[PaymentRequest]:
        """Keep only requests whose expiry is still ahead."""
        now = time.time() if now is None else now
        expired = [r for r in self._requests.values() if r.is_expired(now)]
        for request in expired:
            request.status = PaymentRequestStatus.EXPIRED
            del self._requests[request.payment_hash]
        return expired

    def to_dict(self) -> dict[str, Any]:
        return {
            "paymentRequests": [
                {**asdict(r), "status": r.status.value} for r in self._requests.values()
            ]
        }

    def load(self, data: dict[str, Any]) -> None:
        for item in data.get("paymentRequests", []):
            item = dict(item)
            item["status"] = PaymentRequestStatus(item["status"])
            request = PaymentRequest(**item)
            self._requests[request.payment_hash] = request
