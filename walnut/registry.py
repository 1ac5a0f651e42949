"""Mint Registry: known mints, their keysets and trust flags."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from loguru import logger

from .crypto import derive_keyset_id
from .denominations import validate_keyset_keys
from .gateway import GatewayPool
from .mint import InvalidKeysetError
from .types import (
    AlreadyExistsError,
    CurrencyUnit,
    Keyset,
    NotFoundError,
    ValidationError,
)


@dataclass
class MintRecord:
    """A registered mint.

    ``keys`` keeps every keyset ever seen so legacy proofs stay spendable;
    ``units`` points at the current keyset per unit.
    """

    mint_url: str
    keys: dict[str, dict[str, str]] = field(default_factory=dict)
    keysets: list[str] = field(default_factory=list)
    units: dict[str, str] = field(default_factory=dict)
    keyset_units: dict[str, str] = field(default_factory=dict)
    input_fees: dict[str, int] = field(default_factory=dict)
    is_blocked: bool = False
    shortname: str = ""
    hostname: str = ""
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.hostname:
            self.hostname = urlparse(self.mint_url).hostname or self.mint_url
        if not self.shortname:
            self.shortname = self.hostname.split(".")[0]

    def current_keyset(self, unit: CurrencyUnit = "sat") -> Keyset:
        keyset_id = self.units.get(unit)
        if keyset_id is None:
            raise NotFoundError(
                f"Mint {self.mint_url} has no keyset for unit {unit}",
                {"mintUrl": self.mint_url, "unit": unit},
            )
        return self.keyset(keyset_id)

    def keyset(self, keyset_id: str) -> Keyset:
        if keyset_id not in self.keys:
            raise NotFoundError(
                f"Unknown keyset {keyset_id}",
                {"mintUrl": self.mint_url, "keysetId": keyset_id},
            )
        return Keyset(
            id=keyset_id,
            unit=self.keyset_units[keyset_id],  # type: ignore[typeddict-item]
            keys=self.keys[keyset_id],
        )

    def supports_unit(self, unit: CurrencyUnit) -> bool:
        return unit in self.units

    def to_dict(self) -> dict[str, Any]:
        return {
            "mintUrl": self.mint_url,
            "keys": self.keys,
            "keysets": self.keysets,
            "units": self.units,
            "keysetUnits": self.keyset_units,
            "inputFees": self.input_fees,
            "isBlocked": self.is_blocked,
            "shortname": self.shortname,
            "hostname": self.hostname,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MintRecord:
        return cls(
            mint_url=data["mintUrl"],
            keys=data.get("keys", {}),
            keysets=data.get("keysets", []),
            units=data.get("units", {}),
            keyset_units=data.get("keysetUnits", {}),
            input_fees=data.get("inputFees", {}),
            is_blocked=data.get("isBlocked", False),
            shortname=data.get("shortname", ""),
            hostname=data.get("hostname", ""),
            created_at=data.get("createdAt", time.time()),
        )


def normalize_mint_url(url: str) -> str:
    return url.strip().rstrip("/")


def validate_mint_url(url: str, allow_insecure: bool = False) -> bool:
    """Mints must be reached over https, or plain http to a Tor hidden service."""
    parsed = urlparse(url)
    if not parsed.hostname:
        return False
    if parsed.scheme == "https":
        return True
    if parsed.scheme == "http":
        return allow_insecure or parsed.hostname.endswith(".onion")
    return False


class MintRegistry:
    def __init__(self, gateways: GatewayPool, *, allow_insecure: bool = False) -> None:
        self.gateways = gateways
        self.allow_insecure = allow_insecure
        self._mints: dict[str, MintRecord] = {}

    def __len__(self) -> int:
        return len(self._mints)

    def __contains__(self, url: str) -> bool:
        return normalize_mint_url(url) in self._mints

    def all(self) -> list[MintRecord]:
        return list(self._mints.values())

    def find_by_url(self, url: str) -> MintRecord | None:
        return self._mints.get(normalize_mint_url(url))

    def get(self, url: str) -> MintRecord:
        record = self.find_by_url(url)
        if record is None:
            raise NotFoundError(f"Mint {url} is not registered", {"mintUrl": url})
        return record

    # ───────────────────────── Registration ─────────────────────────────────

    async def add_mint(self, url: str) -> MintRecord:
        """Fetch keys from the mint and register it.

        Raises:
            ValidationError: Bad URL or keys failing validation
            AlreadyExistsError: Mint already registered
            MintConnectionError: Mint unreachable
        """
        url = normalize_mint_url(url)
        if not validate_mint_url(url, self.allow_insecure):
            raise ValidationError(
                "Mint URL must use https (or http to an .onion address)",
                {"mintUrl": url},
            )
        if url in self._mints:
            raise AlreadyExistsError(f"Mint {url} already added", {"mintUrl": url})

        record = MintRecord(mint_url=url)
        await self._load_keys(record)
        self._mints[url] = record
        logger.info(f"Added mint {url} with keysets {record.keysets}")
        return record

    async def update_mint_keys(self, url: str) -> MintRecord:
        """Refetch the mint's active keysets and fee rates."""
        record = self.get(url)
        await self._load_keys(record)
        return record

    async def _load_keys(self, record: MintRecord) -> None:
        gateway = self.gateways.get(record.mint_url)
        try:
            keysets = await gateway.get_keys()
        except InvalidKeysetError as e:
            raise ValidationError(
                "Mint keys are not valid", {**e.params, "mintUrl": record.mint_url}
            ) from e

        if not keysets:
            raise ValidationError(
                "Mint has no active keysets", {"mintUrl": record.mint_url}
            )

        for keyset in keysets:
            self._apply_keyset(record, keyset)

        record.input_fees.update(await gateway.get_input_fees())

    def _apply_keyset(self, record: MintRecord, keyset: Keyset) -> None:
        if not validate_keyset_keys(keyset["keys"]):
            raise ValidationError(
                "Mint keys are not valid",
                {"mintUrl": record.mint_url, "keysetId": keyset["id"]},
            )
        # Only version 00 ids are derivable from the keys
        if keyset["id"].startswith("00"):
            derived = derive_keyset_id(keyset["keys"])
            if derived != keyset["id"]:
                raise ValidationError(
                    "Keyset id does not match its keys",
                    {
                        "mintUrl": record.mint_url,
                        "keysetId": keyset["id"],
                        "derived": derived,
                    },
                )

        record.keys[keyset["id"]] = dict(keyset["keys"])
        record.keyset_units[keyset["id"]] = keyset["unit"]
        record.units[keyset["unit"]] = keyset["id"]
        if keyset["id"] not in record.keysets:
            record.keysets.append(keyset["id"])

    def rotate_keys(self, mint_url: str, new_keys: Keyset) -> None:
        """Make ``new_keys`` the mint's current keyset for its unit.

        Earlier keysets stay resolvable for proofs issued under them.
        """
        record = self.get(mint_url)
        previous = record.units.get(new_keys["unit"])
        self._apply_keyset(record, new_keys)
        logger.info(
            f"Rotated keys of {mint_url} ({new_keys['unit']}): "
            f"{previous} -> {new_keys['id']}"
        )

    # ───────────────────────── Trust flags ─────────────────────────────────

    def block_mint(self, url: str) -> None:
        self.get(url).is_blocked = True

    def unblock_mint(self, url: str) -> None:
        self.get(url).is_blocked = False

    def is_blocked(self, url: str) -> bool:
        record = self.find_by_url(url)
        return record is not None and record.is_blocked

    def blocked_urls(self) -> list[str]:
        return [m.mint_url for m in self._mints.values() if m.is_blocked]

    def remove_mint(self, url: str) -> MintRecord:
        record = self.get(url)
        del self._mints[record.mint_url]
        logger.info(f"Removed mint {record.mint_url}")
        return record

    # ───────────────────────── Persistence ─────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {"mints": [m.to_dict() for m in self._mints.values()]}

    def load(self, data: dict[str, Any]) -> None:
        for item in data.get("mints", []):
            record = MintRecord.from_dict(item)
            self._mints[record.mint_url] = record
