"""Mint Gateway: engine intents translated into mint protocol calls.

Every method wraps transport failures into ``MintConnectionError``, mint
rejections into ``MintError`` and malformed responses into
``ValidationError`` so that callers only ever see wallet errors. Calls that
return signatures report ``new_keys`` when the mint signed with a keyset the
caller did not hand in, which is how an unannounced key rotation shows up.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, cast

import httpx
from coincurve import PublicKey
from loguru import logger

from .crypto import (
    BlindedOutput,
    compute_y,
    create_blinded_message,
    get_mint_pubkey_for_amount,
    unblind_signature,
)
from .denominations import blank_output_count, split_amount, sum_proofs
from .lightning import InvoiceDecoder, decode_invoice
from .mint import Mint
from .token import TokenEntry
from .types import (
    BlindedSignature,
    CurrencyUnit,
    Keyset,
    MintConnectionError,
    MintError,
    Proof,
    ValidationError,
)


# ──────────────────────────────────────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class MintInvoice:
    encoded_invoice: str
    payment_hash: str
    quote: str
    expiry: int | None = None


@dataclass
class MeltQuote:
    quote: str
    amount: int
    fee_reserve: int
    expiry: int | None = None


@dataclass
class RedeemResult:
    proofs: list[Proof]
    new_keys: Keyset | None = None


@dataclass
class SwapResult:
    accepted_proofs: list[Proof] = field(default_factory=list)
    rejected_proofs: list[Proof] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    new_keys: Keyset | None = None


@dataclass
class SplitResult:
    send_proofs: list[Proof]
    change_proofs: list[Proof]
    new_keys: Keyset | None = None


@dataclass
class PayResult:
    is_paid: bool
    is_pending: bool = False
    preimage: str | None = None
    change_proofs: list[Proof] = field(default_factory=list)
    fee_saved: int = 0
    new_keys: Keyset | None = None


@dataclass
class SpentResult:
    spent: list[Proof] = field(default_factory=list)
    pending: list[Proof] = field(default_factory=list)


# ──────────────────────────────────────────────────────────────────────────────
# Gateway
# ──────────────────────────────────────────────────────────────────────────────


class MintGateway:
    """Stateless adapter around one mint's protocol client."""

    def __init__(
        self,
        mint: Mint,
        *,
        invoice_decoder: InvoiceDecoder = decode_invoice,
    ) -> None:
        self.mint = mint
        self.mint_url = mint.url
        self._decode_invoice = invoice_decoder

    async def aclose(self) -> None:
        await self.mint.aclose()

    @asynccontextmanager
    async def _errors(self, operation: str) -> AsyncIterator[None]:
        """Translate raw failures of ``operation`` into wallet errors."""
        params = {"caller": operation, "mintUrl": self.mint_url}
        try:
            yield
        except httpx.TimeoutException as e:
            raise MintConnectionError(
                f"Mint {self.mint_url} did not respond in time", params
            ) from e
        except httpx.RequestError as e:
            raise MintConnectionError(
                f"Could not connect to mint {self.mint_url}",
                {**params, "message": str(e)},
            ) from e
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise ValidationError(
                "Mint returned a bad response", {**params, "message": repr(e)}
            ) from e

    # ───────────────────────── Keys & fees ─────────────────────────────────

    async def get_keys(self) -> list[Keyset]:
        """Active keysets with validated keys."""
        async with self._errors("getKeys"):
            return await self.mint.get_keys()

    async def get_keyset(self, keyset_id: str) -> Keyset:
        async with self._errors("getKeyset"):
            return await self.mint.get_keyset(keyset_id)

    async def get_input_fees(self) -> dict[str, int]:
        """Map keyset id -> input_fee_ppk.

        Mints that predate NUT-02 fees do not serve ``/v1/keysets``; they are
        treated as fee free.
        """
        async with self._errors("getInputFees"):
            try:
                keysets = await self.mint.get_keysets_info()
            except MintError:
                logger.warning(f"Mint {self.mint_url} has no keyset fee info")
                return {}
            return {ks["id"]: int(ks.get("input_fee_ppk", 0)) for ks in keysets}

    async def check_fees(self, invoice: str, unit: CurrencyUnit = "sat") -> MeltQuote:
        """Ask the mint what paying ``invoice`` would cost."""
        async with self._errors("checkFees"):
            quote = await self.mint.create_melt_quote(invoice, unit=unit)
            return MeltQuote(
                quote=quote["quote"],
                amount=int(quote["amount"]),
                fee_reserve=int(quote.get("fee_reserve", 0)),
                expiry=quote.get("expiry"),
            )

    # ───────────────────────── Minting ─────────────────────────────────

    async def request_invoice(
        self, amount: int, unit: CurrencyUnit = "sat", description: str | None = None
    ) -> MintInvoice:
        """Request a Lightning invoice for a top-up of ``amount``."""
        async with self._errors("requestInvoice"):
            quote = await self.mint.create_mint_quote(
                amount=amount, unit=unit, description=description
            )
            encoded_invoice = quote["request"]
            invoice = self._decode_invoice(encoded_invoice)
            return MintInvoice(
                encoded_invoice=encoded_invoice,
                payment_hash=invoice.payment_hash,
                quote=quote["quote"],
                expiry=quote.get("expiry"),
            )

    async def redeem_tokens(
        self, amount: int, quote: str, keyset: Keyset
    ) -> RedeemResult:
        """Claim proofs for a paid mint quote.

        Raises:
            MintError: "quote not paid" while the invoice is unpaid
        """
        async with self._errors("redeemTokens"):
            status = await self.mint.get_mint_quote(quote)
            state = status.get("state") or ("PAID" if status.get("paid") else "UNPAID")
            if state == "UNPAID":
                raise MintError("quote not paid", {"quote": quote})
            if state == "ISSUED":
                raise MintError("quote already issued", {"quote": quote})

            outputs = _outputs_for(split_amount(amount), keyset["id"])
            response = await self.mint.mint(
                quote=quote, outputs=[o.message for o in outputs]
            )
            proofs, new_keys = await self._unblind(
                response["signatures"], outputs, keyset
            )
            return RedeemResult(proofs=proofs, new_keys=new_keys)

    # ───────────────────────── Swapping ─────────────────────────────────

    async def swap(
        self, entry: TokenEntry, keyset: Keyset, input_fee: int = 0
    ) -> SwapResult:
        """Swap a received token entry for fresh proofs.

        A mint rejection (already spent, unverifiable proofs) marks the whole
        entry as rejected instead of raising.
        """
        amount = entry.amount - input_fee
        if amount <= 0:
            return SwapResult(
                rejected_proofs=list(entry.proofs),
                errors=["Token amount does not cover the mint fee"],
            )

        async with self._errors("swap"):
            outputs = _outputs_for(split_amount(amount), keyset["id"])
            try:
                response = await self.mint.swap(
                    inputs=entry.proofs, outputs=[o.message for o in outputs]
                )
            except MintError as e:
                return SwapResult(
                    rejected_proofs=list(entry.proofs),
                    errors=[str(e.params.get("message", e.message))],
                )
            proofs, new_keys = await self._unblind(
                response["signatures"], outputs, keyset
            )
            return SwapResult(accepted_proofs=proofs, new_keys=new_keys)

    async def split(
        self, amount: int, proofs: list[Proof], keyset: Keyset, input_fee: int = 0
    ) -> SplitResult:
        """Swap ``proofs`` into proofs worth exactly ``amount`` plus change."""
        change = sum_proofs(proofs) - amount - input_fee
        if change < 0:
            raise ValidationError(
                "Selected proofs do not cover amount and fees",
                {"amount": amount, "inputFee": input_fee},
            )

        async with self._errors("split"):
            send_outputs = _outputs_for(split_amount(amount), keyset["id"])
            change_outputs = _outputs_for(split_amount(change), keyset["id"])
            outputs = send_outputs + change_outputs
            response = await self.mint.swap(
                inputs=proofs, outputs=[o.message for o in outputs]
            )
            new_proofs, new_keys = await self._unblind(
                response["signatures"], outputs, keyset
            )
            return SplitResult(
                send_proofs=new_proofs[: len(send_outputs)],
                change_proofs=new_proofs[len(send_outputs) :],
                new_keys=new_keys,
            )

    # ───────────────────────── Melting ─────────────────────────────────

    async def pay_invoice(
        self,
        invoice: str,
        proofs: list[Proof],
        fee_reserve: int,
        keyset: Keyset,
        quote: str | None = None,
        unit: CurrencyUnit = "sat",
    ) -> PayResult:
        """Melt ``proofs`` to pay ``invoice``.

        Blank outputs (NUT-08) are attached so the mint can return whatever
        part of the fee reserve the payment did not use.
        """
        async with self._errors("payInvoice"):
            if quote is None:
                quote = (await self.check_fees(invoice, unit)).quote

            # Placeholder amount; the mint decides the real change amounts
            blank_outputs = _outputs_for(
                [1] * blank_output_count(fee_reserve), keyset["id"]
            )
            response = await self.mint.melt(
                quote=quote,
                inputs=proofs,
                outputs=[o.message for o in blank_outputs] or None,
            )

            state = response.get("state")
            is_paid = state == "PAID" if state else bool(response.get("paid"))

            change_proofs: list[Proof] = []
            new_keys: Keyset | None = None
            change = response.get("change") or []
            if change:
                change_proofs, new_keys = await self._unblind(
                    change, blank_outputs, keyset
                )

            return PayResult(
                is_paid=is_paid,
                is_pending=state == "PENDING",
                preimage=response.get("payment_preimage"),
                change_proofs=change_proofs,
                fee_saved=sum_proofs(change_proofs),
                new_keys=new_keys,
            )

    # ───────────────────────── State checks ─────────────────────────────────

    async def check_spent(self, proofs: list[Proof]) -> SpentResult:
        """Ask the mint which of ``proofs`` are spent or pending (NUT-07)."""
        if not proofs:
            return SpentResult()

        async with self._errors("checkSpent"):
            ys = [compute_y(p["secret"]) for p in proofs]
            response = await self.mint.check_state(Ys=ys)
            states = {s["Y"]: s["state"] for s in response["states"]}

            result = SpentResult()
            for proof, y in zip(proofs, ys):
                state = states.get(y)
                if state == "SPENT":
                    result.spent.append(proof)
                elif state == "PENDING":
                    result.pending.append(proof)
            return result

    # ───────────────────────── Helpers ─────────────────────────────────

    async def _unblind(
        self,
        signatures: list[BlindedSignature],
        outputs: list[BlindedOutput],
        keyset: Keyset,
    ) -> tuple[list[Proof], Keyset | None]:
        """Unblind signatures by output index into proofs."""
        if len(signatures) > len(outputs):
            raise ValueError("More signatures than outputs")

        new_keys: Keyset | None = None
        keys_by_id: dict[str, Keyset] = {keyset["id"]: keyset}
        proofs: list[Proof] = []

        for sig, output in zip(signatures, outputs):
            keyset_id = sig["id"]
            if keyset_id not in keys_by_id:
                logger.info(
                    f"Mint {self.mint_url} signed with unknown keyset {keyset_id}, "
                    "fetching keys"
                )
                new_keys = await self.mint.get_keyset(keyset_id)
                keys_by_id[keyset_id] = new_keys

            amount = int(sig["amount"])
            mint_pubkey = get_mint_pubkey_for_amount(
                keys_by_id[keyset_id]["keys"], amount
            )
            if mint_pubkey is None:
                raise MintError(
                    f"Could not find mint public key for amount {amount}",
                    {"mintUrl": self.mint_url, "keysetId": keyset_id},
                )

            C = unblind_signature(
                PublicKey(bytes.fromhex(sig["C_"])), output.r, mint_pubkey
            )
            proofs.append(
                Proof(
                    id=keyset_id,
                    amount=amount,
                    secret=output.secret,
                    C=C.format(compressed=True).hex(),
                    mint=self.mint_url,
                    unit=cast(CurrencyUnit, keys_by_id[keyset_id]["unit"]),
                )
            )

        return proofs, new_keys


def _outputs_for(amounts: list[int], keyset_id: str) -> list[BlindedOutput]:
    return [create_blinded_message(amount, keyset_id) for amount in amounts]


# ──────────────────────────────────────────────────────────────────────────────
# Gateway pool
# ──────────────────────────────────────────────────────────────────────────────


class GatewayPool:
    """Mint URL -> gateway handle, built lazily and torn down by ``aclose``."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        invoice_decoder: InvoiceDecoder = decode_invoice,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._invoice_decoder = invoice_decoder
        self._gateways: dict[str, MintGateway] = {}

    def get(self, mint_url: str) -> MintGateway:
        mint_url = mint_url.rstrip("/")
        gateway = self._gateways.get(mint_url)
        if gateway is None:
            mint = Mint(mint_url, timeout=self._timeout, transport=self._transport)
            gateway = MintGateway(mint, invoice_decoder=self._invoice_decoder)
            self._gateways[mint_url] = gateway
        return gateway

    def __contains__(self, mint_url: str) -> bool:
        return mint_url.rstrip("/") in self._gateways

    async def aclose(self) -> None:
        for gateway in self._gateways.values():
            await gateway.aclose()
        self._gateways.clear()
