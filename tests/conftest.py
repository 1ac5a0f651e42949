"""Shared fixtures: an in-process Cashu mint behind ``httpx.MockTransport``.

The fake mint signs with real secp256k1 keys, so every proof the wallet
unblinds is verifiable and spent-tracking behaves like a real mint.
"""

import hashlib
import itertools
import json
import secrets
import time

import httpx
import pytest
import pytest_asyncio
from coincurve import PrivateKey, PublicKey

from walnut.crypto import (
    compute_y,
    derive_keyset_id,
    hash_to_curve,
    sign_blinded_message,
)
from walnut.denominations import split_amount
from walnut.lightning import InvoiceData
from walnut.storage import MemoryStore
from walnut.token import Token, encode_token
from walnut.types import Proof, ValidationError
from walnut.wallet import Wallet

MINT_URL = "https://mint.test"
OTHER_MINT_URL = "https://other.mint.test"

AMOUNTS = [2**i for i in range(12)]


class MintRejection(Exception):
    """Raised inside the fake mint to answer with a 400 ``detail``."""


class UnknownResource(Exception):
    """Answered with a 404."""


class FakeKeyset:
    def __init__(self, unit: str = "sat", input_fee_ppk: int = 0) -> None:
        self.private_keys = {amount: PrivateKey() for amount in AMOUNTS}
        self.keys = {
            str(amount): key.public_key.format(compressed=True).hex()
            for amount, key in self.private_keys.items()
        }
        self.id = derive_keyset_id(self.keys)
        self.unit = unit
        self.input_fee_ppk = input_fee_ppk
        self.active = True

    def to_keys(self) -> dict:
        return {"id": self.id, "unit": self.unit, "keys": self.keys}

    def sign(self, B_: str, amount: int) -> str:
        point = PublicKey(bytes.fromhex(B_))
        return (
            sign_blinded_message(point, self.private_keys[amount])
            .format(compressed=True)
            .hex()
        )

    def signature_for(self, secret: str, amount: int) -> str:
        """C = k*Y, what a wallet holds after unblinding."""
        Y = hash_to_curve(secret.encode("utf-8"))
        return Y.multiply(self.private_keys[amount].secret).format(compressed=True).hex()


class FakeMint:
    """Just enough of the Cashu v1 API for wallet tests.

    Knobs:
        melt_state: "PAID", "PENDING" or "FAILED" for the next melts
        lightning_fee: fee the mint actually spends on a payment
        fee_reserve: fee reserve quoted on melt quotes
        sign_with: keyset id used for every signature (unannounced rotation)
        offline: every request raises a connection error
        failures: path -> (status, detail), answered once
        timeouts: paths that time out once
    """

    def __init__(self, network: "FakeMintNetwork", url: str, input_fee_ppk: int = 0):
        self.network = network
        self.url = url
        self.keysets: dict[str, FakeKeyset] = {}
        self.active = self.add_keyset(input_fee_ppk=input_fee_ppk)
        self.spent_ys: set[str] = set()
        self.pending_ys: set[str] = set()
        self.mint_quotes: dict[str, dict] = {}
        self.melt_quotes: dict[str, dict] = {}
        self.melt_state = "PAID"
        self.lightning_fee = 0
        self.fee_reserve = 4
        self.invoice_expiry = 600
        self.invoice_amount_offset = 0
        self.sign_with: str | None = None
        self.serve_fee_info = True
        self.offline = False
        self.failures: dict[str, tuple[int, str]] = {}
        self.timeouts: set[str] = set()
        self.requests: list[tuple[str, str]] = []
        self._ids = itertools.count(1)

    # ───────────────────────── Test helpers ─────────────────────────────────

    def add_keyset(self, unit: str = "sat", input_fee_ppk: int = 0) -> FakeKeyset:
        keyset = FakeKeyset(unit=unit, input_fee_ppk=input_fee_ppk)
        self.keysets[keyset.id] = keyset
        return keyset

    def rotate(self) -> FakeKeyset:
        """Deactivate the current keyset and publish a new one."""
        self.active.active = False
        self.active = self.add_keyset(
            unit=self.active.unit, input_fee_ppk=self.active.input_fee_ppk
        )
        return self.active

    def issue_proofs(self, amounts: list[int], keyset: FakeKeyset | None = None) -> list[Proof]:
        keyset = keyset or self.active
        proofs = []
        for amount in amounts:
            secret = secrets.token_hex(32)
            proofs.append(
                Proof(
                    id=keyset.id,
                    amount=amount,
                    secret=secret,
                    C=keyset.signature_for(secret, amount),
                    mint=self.url,
                    unit=keyset.unit,  # type: ignore[typeddict-item]
                )
            )
        return proofs

    def make_token(self, amounts: list[int], memo: str | None = None) -> str:
        return encode_token(Token.from_proofs(self.issue_proofs(amounts), memo=memo))

    def pay_quotes(self) -> None:
        """Simulate the user paying every open top-up invoice."""
        for quote in self.mint_quotes.values():
            if quote["state"] == "UNPAID":
                quote["state"] = "PAID"

    def spend(self, proofs: list[Proof]) -> None:
        self.spent_ys.update(compute_y(p["secret"]) for p in proofs)

    def settle_pending(self, paid: bool) -> None:
        """Finish in-flight melts either way."""
        if paid:
            self.spent_ys |= self.pending_ys
        self.pending_ys.clear()

    def is_spent(self, proof: Proof) -> bool:
        return compute_y(proof["secret"]) in self.spent_ys

    # ───────────────────────── Transport ─────────────────────────────────

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if self.offline:
            raise httpx.ConnectError("Connection refused", request=request)
        if path in self.timeouts:
            self.timeouts.discard(path)
            raise httpx.ReadTimeout("Timed out", request=request)
        if path in self.failures:
            status, detail = self.failures.pop(path)
            return httpx.Response(status, json={"detail": detail, "code": 20000})

        body = json.loads(request.content) if request.content else {}
        try:
            return httpx.Response(200, json=self._route(request.method, path, body))
        except MintRejection as e:
            return httpx.Response(400, json={"detail": str(e), "code": 11001})
        except UnknownResource as e:
            return httpx.Response(404, json={"detail": str(e)})

    def _route(self, method: str, path: str, body: dict) -> dict:
        parts = path.strip("/").split("/")
        if method == "GET":
            if path == "/v1/info":
                return {"name": "Fake mint", "version": "fake/0.1.0", "nuts": {}}
            if path == "/v1/keys":
                return {
                    "keysets": [ks.to_keys() for ks in self.keysets.values() if ks.active]
                }
            if parts[:2] == ["v1", "keys"] and len(parts) == 3:
                if parts[2] not in self.keysets:
                    raise UnknownResource("unknown keyset")
                return {"keysets": [self.keysets[parts[2]].to_keys()]}
            if path == "/v1/keysets":
                if not self.serve_fee_info:
                    raise UnknownResource("Not found")
                return {
                    "keysets": [
                        {
                            "id": ks.id,
                            "unit": ks.unit,
                            "active": ks.active,
                            "input_fee_ppk": ks.input_fee_ppk,
                        }
                        for ks in self.keysets.values()
                    ]
                }
            if parts[:4] == ["v1", "mint", "quote", "bolt11"] and len(parts) == 5:
                return self._mint_quote_response(parts[4])
        if method == "POST":
            if path == "/v1/mint/quote/bolt11":
                return self._create_mint_quote(body)
            if path == "/v1/mint/bolt11":
                return self._mint(body)
            if path == "/v1/melt/quote/bolt11":
                return self._create_melt_quote(body)
            if path == "/v1/melt/bolt11":
                return self._melt(body)
            if path == "/v1/swap":
                return self._swap(body)
            if path == "/v1/checkstate":
                return self._check_state(body)
        raise UnknownResource(f"No route for {method} {path}")

    # ───────────────────────── Endpoints ─────────────────────────────────

    def _create_mint_quote(self, body: dict) -> dict:
        quote_id = f"mint-quote-{next(self._ids)}"
        request = self.network.create_invoice(
            body["amount"] + self.invoice_amount_offset,
            expiry=self.invoice_expiry,
            description=body.get("description"),
        )
        self.mint_quotes[quote_id] = {
            "quote": quote_id,
            "request": request,
            "amount": body["amount"],
            "unit": body["unit"],
            "state": "UNPAID",
        }
        return self._mint_quote_response(quote_id)

    def _mint_quote_response(self, quote_id: str) -> dict:
        if quote_id not in self.mint_quotes:
            raise UnknownResource("quote not found")
        quote = self.mint_quotes[quote_id]
        return {
            **quote,
            "paid": quote["state"] != "UNPAID",
            "expiry": int(time.time()) + self.invoice_expiry,
        }

    def _mint(self, body: dict) -> dict:
        quote = self.mint_quotes.get(body["quote"])
        if quote is None:
            raise MintRejection("quote not found")
        if quote["state"] == "UNPAID":
            raise MintRejection("quote not paid")
        if quote["state"] == "ISSUED":
            raise MintRejection("quote already issued")
        if sum(o["amount"] for o in body["outputs"]) != quote["amount"]:
            raise MintRejection("outputs do not match quote amount")
        quote["state"] = "ISSUED"
        return {"signatures": [self._sign(o) for o in body["outputs"]]}

    def _create_melt_quote(self, body: dict) -> dict:
        invoice = self.network.invoices.get(body["request"])
        if invoice is None:
            raise MintRejection("could not decode invoice")
        quote_id = f"melt-quote-{next(self._ids)}"
        self.melt_quotes[quote_id] = {
            "quote": quote_id,
            "amount": invoice.amount,
            "fee_reserve": self.fee_reserve,
            "request": body["request"],
            "unit": body["unit"],
            "state": "UNPAID",
        }
        return {**self.melt_quotes[quote_id], "paid": False, "expiry": invoice.expires_at}

    def _melt(self, body: dict) -> dict:
        quote = self.melt_quotes.get(body["quote"])
        if quote is None:
            raise MintRejection("quote not found")
        inputs = body["inputs"]
        self._verify_inputs(inputs)
        total = sum(p["amount"] for p in inputs)
        fee = self._input_fee(inputs)
        if total < quote["amount"] + quote["fee_reserve"] + fee:
            raise MintRejection("not enough inputs provided for melt")

        if self.melt_state == "FAILED":
            raise MintRejection("Lightning payment unsuccessful")

        ys = {compute_y(p["secret"]) for p in inputs}
        if self.melt_state == "PENDING":
            self.pending_ys |= ys
            quote["state"] = "PENDING"
            return {**quote, "paid": False, "change": None}

        self.spent_ys |= ys
        quote["state"] = "PAID"
        change_amount = total - quote["amount"] - self.lightning_fee - fee
        outputs = body.get("outputs") or []
        change = [
            self._sign({**output, "amount": amount})
            for output, amount in zip(outputs, split_amount(change_amount))
        ]
        return {
            **quote,
            "paid": True,
            "payment_preimage": "ab" * 32,
            "change": change,
        }

    def _swap(self, body: dict) -> dict:
        inputs = body["inputs"]
        outputs = body["outputs"]
        self._verify_inputs(inputs)
        fee = self._input_fee(inputs)
        if sum(p["amount"] for p in inputs) - fee != sum(o["amount"] for o in outputs):
            raise MintRejection("inputs and outputs not balanced")
        self.spent_ys.update(compute_y(p["secret"]) for p in inputs)
        return {"signatures": [self._sign(o) for o in outputs]}

    def _check_state(self, body: dict) -> dict:
        states = []
        for y in body["Ys"]:
            if y in self.spent_ys:
                state = "SPENT"
            elif y in self.pending_ys:
                state = "PENDING"
            else:
                state = "UNSPENT"
            states.append({"Y": y, "state": state, "witness": None})
        return {"states": states}

    # ───────────────────────── Internals ─────────────────────────────────

    def _sign(self, output: dict) -> dict:
        keyset_id = self.sign_with or output["id"]
        keyset = self.keysets.get(keyset_id)
        if keyset is None:
            raise MintRejection("keyset not known")
        return {
            "id": keyset.id,
            "amount": output["amount"],
            "C_": keyset.sign(output["B_"], output["amount"]),
        }

    def _verify_inputs(self, inputs: list[dict]) -> None:
        for proof in inputs:
            keyset = self.keysets.get(proof["id"])
            if keyset is None or proof["amount"] not in keyset.private_keys:
                raise MintRejection("could not verify proofs")
            if keyset.signature_for(proof["secret"], proof["amount"]) != proof["C"]:
                raise MintRejection("could not verify proofs")
            y = compute_y(proof["secret"])
            if y in self.spent_ys:
                raise MintRejection("Token already spent.")
            if y in self.pending_ys:
                raise MintRejection("Token is pending.")

    def _input_fee(self, inputs: list[dict]) -> int:
        ppk = sum(self.keysets[p["id"]].input_fee_ppk for p in inputs)
        return (ppk + 999) // 1000


class FakeMintNetwork:
    """Routes requests to fake mints by origin and issues fake invoices."""

    def __init__(self) -> None:
        self.mints: dict[str, FakeMint] = {}
        self.invoices: dict[str, InvoiceData] = {}
        self._counter = itertools.count(1)
        self.transport = httpx.MockTransport(self.handle)

    def add_mint(self, url: str, input_fee_ppk: int = 0) -> FakeMint:
        mint = FakeMint(self, url, input_fee_ppk=input_fee_ppk)
        self.mints[url] = mint
        return mint

    def create_invoice(
        self,
        amount: int,
        *,
        expiry: int = 600,
        description: str | None = None,
        timestamp: int | None = None,
    ) -> str:
        encoded = f"lnbcfake{next(self._counter)}n1{secrets.token_hex(4)}"
        self.invoices[encoded] = InvoiceData(
            amount=amount,
            description=description,
            expiry=expiry,
            payment_hash=hashlib.sha256(encoded.encode()).hexdigest(),
            timestamp=int(time.time()) if timestamp is None else timestamp,
        )
        return encoded

    def decode_invoice(self, encoded_invoice: str) -> InvoiceData:
        invoice = self.invoices.get(encoded_invoice.strip())
        if invoice is None:
            raise ValidationError(
                "Could not decode Lightning invoice", {"message": encoded_invoice}
            )
        return invoice

    def handle(self, request: httpx.Request) -> httpx.Response:
        origin = f"{request.url.scheme}://{request.url.host}"
        mint = self.mints.get(origin)
        if mint is None:
            raise httpx.ConnectError(f"Name does not resolve: {origin}", request=request)
        return mint.handle(request)


@pytest.fixture
def network() -> FakeMintNetwork:
    return FakeMintNetwork()


@pytest.fixture
def mint(network: FakeMintNetwork) -> FakeMint:
    return network.add_mint(MINT_URL)


@pytest.fixture
def other_mint(network: FakeMintNetwork) -> FakeMint:
    return network.add_mint(OTHER_MINT_URL)


@pytest.fixture
def make_wallet(network: FakeMintNetwork):
    """Factory for wallets wired to the fake network."""

    def _make(store=None) -> Wallet:
        return Wallet(
            store=store if store is not None else MemoryStore(),
            transport=network.transport,
            invoice_decoder=network.decode_invoice,
        )

    return _make


@pytest_asyncio.fixture
async def wallet(make_wallet, mint: FakeMint):
    """Wallet with the default fake mint registered and no funds."""
    wallet = make_wallet()
    await wallet.add_mint(mint.url)
    yield wallet
    await wallet.aclose()


@pytest.fixture
def fund(wallet: Wallet, mint: FakeMint):
    """Put freshly issued proofs of ``amounts`` into the wallet."""

    def _fund(amounts: list[int], target: FakeMint | None = None) -> list[Proof]:
        source = target or mint
        added, _ = wallet.proofs.add_proofs(source.url, source.issue_proofs(amounts))
        return added

    return _fund


@pytest.fixture
def proof():
    """Factory for syntactically valid proofs that no mint has signed."""

    def _proof(amount: int = 1, mint: str = MINT_URL, keyset_id: str = "00ad268c4d1f5826", unit: str = "sat") -> Proof:
        return Proof(
            id=keyset_id,
            amount=amount,
            secret=secrets.token_hex(32),
            C="02" + secrets.token_hex(32),
            mint=mint,
            unit=unit,  # type: ignore[typeddict-item]
        )

    return _proof
