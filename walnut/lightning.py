"""Lightning invoice decoding."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

import bolt11

from .types import ValidationError

DEFAULT_INVOICE_EXPIRY = 600


@dataclass(frozen=True)
class InvoiceData:
    """The parts of a bolt11 invoice the wallet reads."""

    amount: int  # sat, rounded down
    description: str | None
    expiry: int  # seconds after timestamp
    payment_hash: str
    timestamp: int

    @property
    def expires_at(self) -> int:
        return self.timestamp + self.expiry

    def is_expired(self, now: float | None = None) -> bool:
        return self.expires_at <= (time.time() if now is None else now)


InvoiceDecoder = Callable[[str], InvoiceData]


def decode_invoice(
    encoded_invoice: str, default_expiry: int = DEFAULT_INVOICE_EXPIRY
) -> InvoiceData:
    """Decode a bolt11 payment request.

    Args:
        encoded_invoice: bech32 invoice string, with or without ``lightning:`` prefix
        default_expiry: expiry used when the invoice carries none

    Returns:
        Decoded invoice data

    Raises:
        ValidationError: If the invoice cannot be decoded
    """
    invoice = encoded_invoice.strip()
    if invoice.lower().startswith("lightning:"):
        invoice = invoice[len("lightning:") :]

    try:
        invoice_obj = bolt11.decode(invoice)
    except Exception as e:
        raise ValidationError(
            "Could not decode Lightning invoice", {"message": str(e)}
        ) from e

    expiry = invoice_obj.expiry if invoice_obj.expiry is not None else default_expiry
    return InvoiceData(
        amount=(invoice_obj.amount_msat or 0) // 1000,
        description=invoice_obj.description,
        expiry=int(expiry),
        payment_hash=invoice_obj.payment_hash,
        timestamp=int(invoice_obj.date),
    )
