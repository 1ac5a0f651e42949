"""Cashu token encoding (cashuA JSON and cashuB CBOR)."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Literal, cast

import cbor2

from .types import CurrencyUnit, Proof, ValidationError


@dataclass
class TokenEntry:
    """Proofs issued by a single mint inside a token."""

    mint: str
    proofs: list[Proof]

    @property
    def amount(self) -> int:
        return sum(p["amount"] for p in self.proofs)


@dataclass
class Token:
    """A portable bundle of proofs, possibly spanning several mints."""

    entries: list[TokenEntry] = field(default_factory=list)
    unit: CurrencyUnit = "sat"
    memo: str | None = None

    @property
    def amount(self) -> int:
        return sum(entry.amount for entry in self.entries)

    @property
    def mints(self) -> list[str]:
        return [entry.mint for entry in self.entries]

    @classmethod
    def from_proofs(
        cls, proofs: list[Proof], *, memo: str | None = None
    ) -> Token:
        """Group proofs by their mint into a token, keeping first-seen mint order."""
        if not proofs:
            raise ValidationError("Cannot build a token without proofs")

        by_mint: dict[str, list[Proof]] = {}
        for proof in proofs:
            by_mint.setdefault(proof["mint"], []).append(proof)

        return cls(
            entries=[TokenEntry(mint=url, proofs=ps) for url, ps in by_mint.items()],
            unit=proofs[0]["unit"],
            memo=memo,
        )


def token_amount(token: Token) -> int:
    return token.amount


def token_mints(token: Token) -> list[str]:
    return token.mints


# ───────────────────────── Encoding ─────────────────────────────────


def _b64_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64_decode(encoded: str) -> bytes:
    # Restore stripped base64 padding
    encoded += "=" * ((-len(encoded)) % 4)
    # Some encoders use the standard alphabet
    encoded = encoded.replace("+", "-").replace("/", "_")
    return base64.urlsafe_b64decode(encoded)


def _serialize_v3(token: Token) -> str:
    """Serialize a token into CashuA (V3) format."""
    token_data: dict[str, Any] = {
        "token": [
            {
                "mint": entry.mint,
                "proofs": [
                    {
                        "id": proof["id"],
                        "amount": proof["amount"],
                        "secret": proof["secret"],
                        "C": proof["C"],
                    }
                    for proof in entry.proofs
                ],
            }
            for entry in token.entries
        ],
        "unit": token.unit,
    }
    if token.memo:
        token_data["memo"] = token.memo

    json_str = json.dumps(token_data, separators=(",", ":"))
    return f"cashuA{_b64_encode(json_str.encode())}"


def _serialize_v4(token: Token) -> str:
    """Serialize a token into CashuB (V4) format using CBOR."""
    if len(token.entries) != 1:
        raise ValidationError("cashuB tokens hold proofs from exactly one mint")

    entry = token.entries[0]

    # Group proofs by keyset ID for V4 format
    proofs_by_keyset: dict[str, list[Proof]] = {}
    for proof in entry.proofs:
        proofs_by_keyset.setdefault(proof["id"], []).append(proof)

    token_data: dict[str, Any] = {
        "m": entry.mint,
        "u": token.unit,
        "t": [
            {
                "i": bytes.fromhex(keyset_id),
                "p": [
                    {
                        "a": proof["amount"],
                        "s": proof["secret"],
                        "c": bytes.fromhex(proof["C"]),
                    }
                    for proof in keyset_proofs
                ],
            }
            for keyset_id, keyset_proofs in proofs_by_keyset.items()
        ],
    }
    if token.memo:
        token_data["d"] = token.memo

    return f"cashuB{_b64_encode(cbor2.dumps(token_data))}"


def encode_token(token: Token, version: Literal[3, 4] = 3) -> str:
    """Encode a token as ``cashuA`` (version 3) or ``cashuB`` (version 4).

    Version 3 is the default since it can carry proofs from several mints.
    """
    if not token.entries or not any(entry.proofs for entry in token.entries):
        raise ValidationError("Cannot encode an empty token")
    if version == 3:
        return _serialize_v3(token)
    if version == 4:
        return _serialize_v4(token)
    raise ValueError(f"Unsupported token version: {version}")


# ───────────────────────── Decoding ─────────────────────────────────


def _parse_v3(encoded: str) -> Token:
    token_data = json.loads(_b64_decode(encoded).decode())
    unit = cast(CurrencyUnit, token_data.get("unit", "sat"))

    entries: list[TokenEntry] = []
    for mint_info in token_data["token"]:
        mint_url = mint_info["mint"]
        entries.append(
            TokenEntry(
                mint=mint_url,
                proofs=[
                    Proof(
                        id=proof["id"],
                        amount=int(proof["amount"]),
                        secret=proof["secret"],
                        C=proof["C"],
                        mint=mint_url,
                        unit=unit,
                    )
                    for proof in mint_info["proofs"]
                ],
            )
        )

    return Token(entries=entries, unit=unit, memo=token_data.get("memo"))


def _parse_v4(encoded: str) -> Token:
    token_data = cbor2.loads(_b64_decode(encoded))
    mint_url = token_data["m"]
    unit = cast(CurrencyUnit, token_data.get("u", "sat"))

    proofs: list[Proof] = []
    # Each token in 't' has 'i' (keyset id) and 'p' (proofs)
    for token_entry in token_data["t"]:
        keyset_id = token_entry["i"].hex()
        for proof in token_entry["p"]:
            proofs.append(
                Proof(
                    id=keyset_id,
                    amount=int(proof["a"]),
                    secret=proof["s"],
                    C=proof["c"].hex(),
                    mint=mint_url,
                    unit=unit,
                )
            )

    return Token(
        entries=[TokenEntry(mint=mint_url, proofs=proofs)],
        unit=unit,
        memo=token_data.get("d"),
    )


def decode_token(encoded_token: str) -> Token:
    """Decode a ``cashuA``/``cashuB`` string.

    Raises:
        ValidationError: If the string is not a well-formed token
    """
    encoded_token = encoded_token.strip()
    if encoded_token.startswith("cashu:"):
        encoded_token = encoded_token[len("cashu:") :]

    prefix, body = encoded_token[:6], encoded_token[6:]
    try:
        if prefix == "cashuA":
            token = _parse_v3(body)
        elif prefix == "cashuB":
            token = _parse_v4(body)
        else:
            raise ValidationError(f"Unknown token version: {encoded_token[:7]}")
    except (
        KeyError,
        TypeError,
        ValueError,
        AttributeError,
        binascii.Error,
        cbor2.CBORDecodeError,
    ) as e:
        raise ValidationError("Invalid token format", {"message": str(e)}) from e

    if not any(entry.proofs for entry in token.entries):
        raise ValidationError("Token contains no proofs")
    return token
