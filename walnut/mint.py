"""HTTP client for a single Cashu mint (v1 REST endpoints).

The client is deliberately thin: it builds request bodies, turns error
responses into :class:`MintError` and checks the shape of key responses.
Wallet logic such as blinding, fee handling and retries lives in
:mod:`walnut.gateway`.
"""

from __future__ import annotations

from typing import Any, TypedDict, cast

import httpx
from loguru import logger

from .denominations import validate_keyset_keys
from .types import (
    BlindedMessage,
    BlindedSignature,
    CurrencyUnit,
    Keyset,
    MintError,
    Proof,
)


class InvalidKeysetError(MintError):
    """The mint served keys that are malformed or not valid curve points."""


# Response bodies


class MintInfo(TypedDict, total=False):
    name: str
    pubkey: str
    version: str
    description: str
    contact: list[dict[str, str]]
    motd: str
    nuts: dict[str, dict[str, Any]]


class KeysetInfo(TypedDict, total=False):
    """One entry of ``GET /v1/keysets``."""

    id: str
    unit: CurrencyUnit
    active: bool
    input_fee_ppk: int


class MintQuoteResponse(TypedDict, total=False):
    quote: str
    request: str  # bolt11 invoice to pay
    amount: int
    unit: CurrencyUnit
    state: str  # UNPAID | PAID | ISSUED
    paid: bool  # older mints send this instead of state
    expiry: int


class MeltQuoteResponse(TypedDict, total=False):
    quote: str
    amount: int
    fee_reserve: int
    unit: CurrencyUnit
    request: str
    state: str  # UNPAID | PENDING | PAID
    paid: bool
    expiry: int
    payment_preimage: str | None
    change: list[BlindedSignature]


class SignaturesResponse(TypedDict):
    signatures: list[BlindedSignature]


class ProofStateEntry(TypedDict, total=False):
    Y: str
    state: str  # UNSPENT | PENDING | SPENT
    witness: str | None


class CheckStateResponse(TypedDict):
    states: list[ProofStateEntry]


def _wire_proofs(proofs: list[Proof]) -> list[dict[str, Any]]:
    """Drop the wallet-side ``mint`` and ``unit`` fields from proofs."""
    return [
        {"id": p["id"], "amount": p["amount"], "secret": p["secret"], "C": p["C"]}
        for p in proofs
    ]


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.text


def parse_keysets(body: Any, mint_url: str) -> list[Keyset]:
    """Check a ``/v1/keys`` style body and return its keysets.

    Args:
        body: Decoded JSON response.
        mint_url: Mint the body came from, for error context.

    Raises:
        InvalidKeysetError: If the body is malformed or a key is not a
            compressed secp256k1 point.
    """
    keysets = body.get("keysets") if isinstance(body, dict) else None
    if not isinstance(keysets, list):
        raise InvalidKeysetError(
            "Mint sent a keys response without a keyset list", {"mintUrl": mint_url}
        )

    for keyset in keysets:
        missing = [name for name in ("id", "unit", "keys") if name not in keyset]
        if missing:
            raise InvalidKeysetError(
                "Keyset is missing fields",
                {"mintUrl": mint_url, "missing": missing},
            )
        if not validate_keyset_keys(keyset["keys"]):
            raise InvalidKeysetError(
                f"Keyset {keyset['id']} has invalid keys",
                {"mintUrl": mint_url, "keysetId": keyset["id"]},
            )
    return cast(list[Keyset], keysets)


class Mint:
    """Async client bound to one mint URL.

    Network failures surface as ``httpx`` exceptions; any 4xx/5xx answer
    is raised as :class:`MintError` carrying the mint's ``detail`` text.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _send(self, method: str, path: str, body: dict[str, Any] | None) -> Any:
        logger.debug(f"{method} {self.url}{path}")
        response = await self.client.request(method, path, json=body)
        if response.is_error:
            detail = _error_detail(response)
            logger.debug(f"{self.url}{path} answered {response.status_code}: {detail}")
            raise MintError(
                f"Mint returned {response.status_code}",
                {
                    "mintUrl": self.url,
                    "path": path,
                    "status": response.status_code,
                    "message": detail,
                },
            )
        return response.json()

    async def _get(self, path: str) -> Any:
        return await self._send("GET", path, None)

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        return await self._send("POST", path, body)

    # Info and keys

    async def get_info(self) -> MintInfo:
        return cast(MintInfo, await self._get("/v1/info"))

    async def get_keys(self) -> list[Keyset]:
        """Keys of the mint's active keysets."""
        return parse_keysets(await self._get("/v1/keys"), self.url)

    async def get_keyset(self, id: str) -> Keyset:
        """Keys of one keyset, including inactive ones."""
        keysets = parse_keysets(await self._get(f"/v1/keys/{id}"), self.url)
        if not keysets:
            raise InvalidKeysetError(
                f"Mint returned no keys for keyset {id}", {"mintUrl": self.url}
            )
        return keysets[0]

    async def get_keysets_info(self) -> list[KeysetInfo]:
        """All keyset ids known to the mint with their input fee rates."""
        body = await self._get("/v1/keysets")
        return cast(list[KeysetInfo], body["keysets"])

    # Minting

    async def create_mint_quote(
        self,
        *,
        amount: int,
        unit: CurrencyUnit = "sat",
        description: str | None = None,
    ) -> MintQuoteResponse:
        body: dict[str, Any] = {"amount": amount, "unit": unit}
        if description is not None:
            body["description"] = description
        return await self._post("/v1/mint/quote/bolt11", body)

    async def get_mint_quote(self, quote_id: str) -> MintQuoteResponse:
        return await self._get(f"/v1/mint/quote/bolt11/{quote_id}")

    async def mint(
        self, *, quote: str, outputs: list[BlindedMessage]
    ) -> SignaturesResponse:
        """Exchange a paid quote for signatures on ``outputs``."""
        return await self._post("/v1/mint/bolt11", {"quote": quote, "outputs": outputs})

    # Melting

    async def create_melt_quote(
        self, request: str, *, unit: CurrencyUnit = "sat"
    ) -> MeltQuoteResponse:
        return await self._post(
            "/v1/melt/quote/bolt11", {"request": request, "unit": unit}
        )

    async def get_melt_quote(self, quote_id: str) -> MeltQuoteResponse:
        return await self._get(f"/v1/melt/quote/bolt11/{quote_id}")

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[Proof],
        outputs: list[BlindedMessage] | None = None,
    ) -> MeltQuoteResponse:
        """Pay the quoted invoice with ``inputs``.

        ``outputs`` are blank messages the mint may sign to return the
        unused part of the fee reserve.
        """
        body: dict[str, Any] = {"quote": quote, "inputs": _wire_proofs(inputs)}
        if outputs is not None:
            body["outputs"] = outputs
        return await self._post("/v1/melt/bolt11", body)

    # Proof management

    async def swap(
        self, *, inputs: list[Proof], outputs: list[BlindedMessage]
    ) -> SignaturesResponse:
        return await self._post(
            "/v1/swap", {"inputs": _wire_proofs(inputs), "outputs": outputs}
        )

    async def check_state(self, *, Ys: list[str]) -> CheckStateResponse:
        """Spent state for each ``Y = hash_to_curve(secret)``, in order."""
        return await self._post("/v1/checkstate", {"Ys": Ys})
