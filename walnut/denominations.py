"""Denomination and keyset helpers for Cashu mints."""

from __future__ import annotations

import math
from typing import Iterable

from .types import Proof


def is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def split_amount(amount: int) -> list[int]:
    """Split an amount into power-of-two denominations, ascending.

    Example:
        split_amount(13) == [1, 4, 8]
    """
    if amount < 0:
        raise ValueError(f"Cannot split negative amount {amount}")
    return [1 << bit for bit in range(amount.bit_length()) if amount >> bit & 1]


def is_valid_compressed_pubkey(pubkey: str) -> bool:
    """Validate that pubkey looks like a compressed secp256k1 public key."""
    if not isinstance(pubkey, str) or len(pubkey) != 66:
        return False
    if not pubkey.startswith(("02", "03")):
        return False
    try:
        bytes.fromhex(pubkey)
    except ValueError:
        return False
    return True


def validate_keyset_keys(keys: dict[str, str]) -> bool:
    """Check the keyset-validation rule.

    Every key must be indexed by a power-of-two integer amount and be a
    compressed public key.

    Args:
        keys: amount -> pubkey mapping as published by the mint

    Returns:
        True if valid, False otherwise
    """
    if not isinstance(keys, dict) or not keys:
        return False

    for amount_str, pubkey in keys.items():
        try:
            amount = int(amount_str)
        except (ValueError, TypeError):
            return False
        if not is_power_of_two(amount):
            return False
        if not is_valid_compressed_pubkey(pubkey):
            return False

    return True


def get_keyset_denominations(keys: dict[str, str]) -> list[int]:
    """Sorted list of amounts a keyset can sign."""
    return sorted(int(amount) for amount in keys)


def blank_output_count(fee_reserve: int) -> int:
    """Number of blank outputs to send with a melt for fee change (NUT-08).

    Example:
        fee_reserve=1000 -> ceil(log2(1000)) = 10 blank outputs
    """
    if fee_reserve <= 0:
        return 0
    return max(math.ceil(math.log2(fee_reserve)), 1)


def calculate_input_fees(proofs: Iterable[Proof], fees_by_keyset: dict[str, int]) -> int:
    """Calculate input fees from per-keyset ``input_fee_ppk`` rates.

    Example:
        With input_fee_ppk=1000 (1 sat per proof) and 3 proofs:
        fee = (3 * 1000 + 999) // 1000 = 3
    """
    sum_fees = 0
    for proof in proofs:
        try:
            sum_fees += int(fees_by_keyset.get(proof["id"], 0))
        except (ValueError, TypeError):
            continue
    return (sum_fees + 999) // 1000


def sum_proofs(proofs: Iterable[Proof]) -> int:
    return sum(p["amount"] for p in proofs)
