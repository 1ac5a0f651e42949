"""Wallet Orchestrator: multi-step, failure tolerant wallet operations.

Every public operation returns a ``TransactionResult`` instead of raising, so
a caller can render partial success. Failures are recorded on the
transaction as an ERROR step before they are returned.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from .denominations import calculate_input_fees, sum_proofs
from .events import SEND_COMPLETED, TOPUP_COMPLETED, EventBus
from .gateway import GatewayPool
from .invoices import Invoice, InvoiceRegistry, PaymentRequest, PaymentRequestRegistry
from .ledger import Balances, ProofLedger
from .lightning import InvoiceDecoder, decode_invoice
from .registry import MintRecord, MintRegistry
from .storage import KeyValueStore
from .token import Token, TokenEntry, decode_token, encode_token
from .transactions import (
    Transaction,
    TransactionLedger,
    TransactionStatus,
    TransactionType,
)
from .types import (
    CurrencyUnit,
    DuplicateProofError,
    Keyset,
    MintConnectionError,
    MintError,
    NotFoundError,
    Proof,
    ProofState,
    ValidationError,
    WalletError,
    format_error,
)


@dataclass
class TransactionResult:
    """Outcome of an orchestrator operation.

    ``error`` is set on failure and on partial success; ``transaction`` may be
    None when the operation failed before a transaction was recorded.
    """

    transaction: Transaction | None
    message: str
    error: dict[str, Any] | None = None
    encoded_invoice: str | None = None
    encoded_token: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


# ──────────────────────────────────────────────────────────────────────────────
# Wallet implementation
# ──────────────────────────────────────────────────────────────────────────────


class Wallet:
    """Multi-mint Cashu wallet.

    Owns the proof ledger, mint registry, transaction ledger and invoice
    registries, and drives the mint gateways. All state mutation happens
    synchronously around the awaited mint calls, so two operations running
    on the same event loop never select the same proof.
    """

    def __init__(
        self,
        *,
        store: KeyValueStore | None = None,
        gateways: GatewayPool | None = None,
        invoice_decoder: InvoiceDecoder = decode_invoice,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        allow_insecure: bool = False,
    ) -> None:
        self.store = store
        self.gateways = gateways or GatewayPool(
            timeout=timeout, transport=transport, invoice_decoder=invoice_decoder
        )
        self._decode_invoice = invoice_decoder

        self.proofs = ProofLedger()
        self.mints = MintRegistry(self.gateways, allow_insecure=allow_insecure)
        self.transactions = TransactionLedger()
        self.invoices = InvoiceRegistry(invoice_decoder)
        self.payment_requests = PaymentRequestRegistry(invoice_decoder)
        self.events = EventBus()

    @classmethod
    def load(cls, store: KeyValueStore, **kwargs: Any) -> Wallet:
        """Create a wallet and restore its state from ``store``."""
        wallet = cls(store=store, **kwargs)
        wallet.proofs = ProofLedger.from_dict(store.get("proofs", {}))
        wallet.mints.load(store.get("mints", {}))
        wallet.transactions = TransactionLedger.from_dict(store.get("transactions", {}))
        wallet.invoices.load(store.get("invoices", {}))
        wallet.payment_requests.load(store.get("payment_requests", {}))
        return wallet

    def save(self) -> None:
        if self.store is None:
            return
        self.store.set("proofs", self.proofs.to_dict())
        self.store.set("mints", self.mints.to_dict())
        self.store.set("transactions", self.transactions.to_dict())
        self.store.set("invoices", self.invoices.to_dict())
        self.store.set("payment_requests", self.payment_requests.to_dict())

    # ───────────────────────── Mints ─────────────────────────────────

    async def add_mint(self, mint_url: str) -> MintRecord:
        record = await self.mints.add_mint(mint_url)
        self.save()
        return record

    async def ensure_mints(self, mint_urls: list[str]) -> None:
        """Register configured mints that are not known yet."""
        for url in mint_urls:
            if url not in self.mints:
                await self.add_mint(url)

    def block_mint(self, mint_url: str) -> None:
        self.mints.block_mint(mint_url)
        self.save()

    def unblock_mint(self, mint_url: str) -> None:
        self.mints.unblock_mint(mint_url)
        self.save()

    def remove_mint(self, mint_url: str) -> None:
        """Forget a mint. Refused while the wallet still holds its proofs."""
        record = self.mints.get(mint_url)
        if self.proofs.get_proofs(record.mint_url) or self.proofs.get_proofs(
            record.mint_url, state=ProofState.PENDING
        ):
            raise ValidationError(
                "Mint still holds ecash in this wallet", {"mintUrl": record.mint_url}
            )
        self.mints.remove_mint(record.mint_url)
        self.save()

    def get_balances(self, unit: CurrencyUnit | None = None) -> Balances:
        return self.proofs.get_balances(unit)

    # ─────────────────────────────── Top-up ──────────────────────────────────

    async def topup(
        self, mint_url: str, amount: int, unit: CurrencyUnit = "sat", memo: str = ""
    ) -> TransactionResult:
        """Ask ``mint_url`` for a Lightning invoice worth ``amount``.

        The transaction is PENDING before the mint is contacted, so an
        interrupted request still leaves an auditable record.
        """
        transaction: Transaction | None = None
        try:
            _check_amount(amount)
            record = self._spendable_mint(mint_url)

            transaction = self.transactions.add_transaction(
                TransactionType.TOPUP, amount, unit=unit, memo=memo, mint=record.mint_url
            )
            self.transactions.update_status(
                transaction.id,
                TransactionStatus.PENDING,
                {"mintUrl": record.mint_url, "amount": amount, "unit": unit},
            )

            gateway = self.gateways.get(record.mint_url)
            mint_invoice = await gateway.request_invoice(amount, unit, memo or None)

            decoded = self._decode_invoice(mint_invoice.encoded_invoice)
            if unit == "sat" and decoded.amount != amount:
                raise MintError(
                    "Mint returned a Lightning invoice with an incorrect amount",
                    {
                        "caller": "topup",
                        "requested": amount,
                        "invoiceAmount": decoded.amount,
                    },
                )

            self.invoices.add_invoice(
                record.mint_url,
                mint_invoice.encoded_invoice,
                amount,
                mint_invoice.payment_hash,
                transaction.id,
                quote=mint_invoice.quote,
                memo=memo,
            )
            self.transactions.append_step(
                transaction.id,
                {
                    "encodedInvoice": mint_invoice.encoded_invoice,
                    "paymentHash": mint_invoice.payment_hash,
                    "quote": mint_invoice.quote,
                },
            )
            self.save()
            return TransactionResult(
                transaction=transaction,
                message=f"Pay the invoice to top up {amount} {unit}.",
                encoded_invoice=mint_invoice.encoded_invoice,
            )
        except WalletError as e:
            return self._fail(transaction, e, "topup")

    async def check_pending_topups(self) -> dict[str, int]:
        """Try to claim proofs for every outstanding top-up invoice.

        Unpaid invoices are left untouched. Once an invoice has expired and
        the mint still reports its quote unpaid, the transaction flips to
        EXPIRED and the invoice is dropped.
        """
        summary = {"completed": 0, "expired": 0, "pending": 0}
        self.payment_requests.remove_expired()

        for invoice in self.invoices.all():
            transaction = self.transactions.find_by_id(invoice.transaction_id)
            if transaction is None or transaction.status.is_terminal:
                self.invoices.remove_invoice(invoice.payment_hash)
                continue

            try:
                outcome = await self._check_pending_topup(invoice, transaction)
            except WalletError as e:
                logger.warning(f"Could not check top-up {transaction.id}: {e.message}")
                outcome = "pending"
            summary[outcome] += 1

        self.save()
        return summary

    async def _check_pending_topup(
        self, invoice: Invoice, transaction: Transaction
    ) -> str:
        # An expired invoice may still have been paid in time, so ask first
        record = self.mints.get(invoice.mint)
        gateway = self.gateways.get(record.mint_url)
        try:
            result = await gateway.redeem_tokens(
                invoice.amount,
                invoice.quote or invoice.payment_hash,
                record.current_keyset(transaction.unit),
            )
        except MintError as e:
            if "quote not paid" not in f"{e.message} {e.params.get('message', '')}":
                raise
            if invoice.is_expired():
                self.transactions.update_status(
                    transaction.id,
                    TransactionStatus.EXPIRED,
                    {"message": "Invoice expired before it was paid"},
                )
                self.invoices.remove_invoice(invoice.payment_hash)
                return "expired"
            logger.debug(f"Top-up {transaction.id} not paid yet")
            return "pending"

        _, received = self._add_new_proofs(
            record.mint_url, result.proofs, transaction_id=transaction.id
        )
        self._apply_new_keys(record.mint_url, result.new_keys)

        step: dict[str, Any] = {
            "receivedAmount": received,
            "paymentHash": invoice.payment_hash,
        }
        if received != invoice.amount:
            logger.warning(
                f"Top-up {transaction.id} received {received} instead of "
                f"{invoice.amount} {transaction.unit}"
            )
            step["expectedAmount"] = invoice.amount
            step["error"] = format_error(
                ValidationError(
                    "Received amount does not match the invoice amount",
                    {"caller": "topup", "invoiceAmount": invoice.amount},
                )
            )
            self.transactions.set_received_amount(transaction.id, received)

        self.transactions.update_status(
            transaction.id, TransactionStatus.COMPLETED, step
        )
        self._set_balance_after(transaction)
        self.invoices.remove_invoice(invoice.payment_hash)
        self.events.emit(
            TOPUP_COMPLETED,
            {
                "transactionId": transaction.id,
                "paymentHash": invoice.payment_hash,
                "amount": received,
            },
        )
        return "completed"

    # ─────────────────────────────── Send ─────────────────────────────────────

    async def send(
        self, mint_url: str, amount: int, unit: CurrencyUnit = "sat", memo: str = ""
    ) -> TransactionResult:
        """Prepare an ecash token worth exactly ``amount``.

        The selected proofs are reserved before the split; the change comes
        back as held proofs and the proofs to send stay pending until the
        recipient claims them.
        """
        transaction: Transaction | None = None
        selected: list[Proof] = []
        network_started = False
        try:
            _check_amount(amount)
            record = self._spendable_mint(mint_url)

            transaction = self.transactions.add_transaction(
                TransactionType.SEND, amount, unit=unit, memo=memo, mint=record.mint_url
            )

            selected = self.proofs.select_proofs_to_cover(record.mint_url, amount, unit)
            self.proofs.mark_pending(selected, transaction.id)
            selected_amount = sum_proofs(selected)
            self.transactions.update_status(
                transaction.id,
                TransactionStatus.PREPARED,
                {"mintUrl": record.mint_url, "selectedAmount": selected_amount},
            )

            fee = 0
            if selected_amount == amount:
                proofs_to_send = selected
            else:
                fee = calculate_input_fees(selected, record.input_fees)
                gateway = self.gateways.get(record.mint_url)
                network_started = True
                split = await gateway.split(
                    amount, selected, record.current_keyset(unit), fee
                )

                self.proofs.mark_spent(selected)
                self._add_new_proofs(record.mint_url, split.change_proofs)
                self._add_new_proofs(
                    record.mint_url,
                    split.send_proofs,
                    state=ProofState.PENDING,
                    transaction_id=transaction.id,
                )
                self._apply_new_keys(record.mint_url, split.new_keys)
                proofs_to_send = split.send_proofs
                if fee:
                    self.transactions.set_fee(transaction.id, fee)

            encoded_token = encode_token(Token.from_proofs(proofs_to_send, memo=memo))
            self.transactions.update_status(
                transaction.id,
                TransactionStatus.PENDING,
                {
                    "encodedTokenToSend": encoded_token,
                    "sentAmount": sum_proofs(proofs_to_send),
                    "fee": fee,
                },
            )
            self.transactions.set_output_token(transaction.id, encoded_token)
            self._set_balance_after(transaction)
            self.save()
            return TransactionResult(
                transaction=transaction,
                message=f"Ecash token for {amount} {unit} is ready to be shared.",
                encoded_token=encoded_token,
            )
        except WalletError as e:
            self._release(selected, e, network_started)
            return self._fail(transaction, e, "send")

    async def check_pending_spent(self) -> dict[str, int]:
        """Ask mints whether pending proofs have been spent.

        Claimed sends complete and emit ``sendCompleted``. Proofs the mint
        reports as in flight are flagged; once such a proof comes back unspent
        it returns to the balance and its transaction is REVERTED. Unclaimed
        sends stay pending, since their token remains valid.
        """
        summary = {"spent_count": 0, "spent_amount": 0, "pending_by_mint_count": 0}

        by_mint: dict[str, list[Proof]] = {}
        for proof in self.proofs.get_proofs(state=ProofState.PENDING):
            by_mint.setdefault(proof["mint"], []).append(proof)

        for mint_url, proofs in by_mint.items():
            try:
                result = await self.gateways.get(mint_url).check_spent(proofs)
            except WalletError as e:
                logger.warning(f"Could not check pending proofs at {mint_url}: {e}")
                continue

            owners = {p["secret"]: self.proofs.get_transaction_id(p) for p in proofs}
            was_pending_by_mint = {
                p["secret"] for p in self.proofs.get_pending_by_mint()
            }

            if result.spent:
                removed = self.proofs.mark_spent(result.spent)
                summary["spent_count"] += len(removed)
                summary["spent_amount"] += sum_proofs(removed)
                completed_ids = {owners[p["secret"]] for p in removed} - {None}
                for transaction_id in sorted(completed_ids):  # type: ignore[type-var]
                    self._complete_claimed(transaction_id)

            self.proofs.set_pending_by_mint(result.pending, True)
            summary["pending_by_mint_count"] += len(result.pending)

            flagged = {p["secret"] for p in result.spent + result.pending}
            unspent = [p for p in proofs if p["secret"] not in flagged]
            self._settle_unspent(unspent, owners, was_pending_by_mint)

        self.save()
        return summary

    def _complete_claimed(self, transaction_id: int) -> None:
        transaction = self.transactions.find_by_id(transaction_id)
        if transaction is None or transaction.status != TransactionStatus.PENDING:
            return
        self.transactions.update_status(
            transaction_id,
            TransactionStatus.COMPLETED,
            {"message": "Ecash has been spent at the mint"},
        )
        if transaction.type == TransactionType.SEND:
            self.events.emit(
                SEND_COMPLETED,
                {"transactionId": transaction_id, "amount": transaction.amount},
            )

    def _settle_unspent(
        self,
        unspent: list[Proof],
        owners: dict[str, int | None],
        was_pending_by_mint: set[str],
    ) -> None:
        """Return proofs that nothing is waiting for any more."""
        reverted: set[int] = set()
        for proof in unspent:
            transaction_id = owners.get(proof["secret"])
            transaction = (
                self.transactions.find_by_id(transaction_id)
                if transaction_id is not None
                else None
            )
            if proof["secret"] in was_pending_by_mint:
                # In-flight payment failed at the mint
                self.proofs.restore_to_held([proof])
                if transaction is not None:
                    reverted.add(transaction.id)
            elif transaction is None or (
                transaction.status.is_terminal
                and transaction.status != TransactionStatus.COMPLETED
            ):
                self.proofs.restore_to_held([proof])

        for transaction_id in sorted(reverted):
            self.transactions.update_statuses(
                [transaction_id],
                TransactionStatus.REVERTED,
                {"message": "Payment failed at the mint, ecash returned to balance"},
            )
            self._set_balance_after(self.transactions.get(transaction_id))

    async def revert(self, transaction_id: int) -> TransactionResult:
        """Take back an unclaimed send.

        The reserved proofs are swapped for fresh ones, which invalidates the
        shared token.
        """
        transaction = self.transactions.find_by_id(transaction_id)
        try:
            if transaction is None:
                raise NotFoundError(
                    f"Transaction {transaction_id} not found",
                    {"transactionId": transaction_id},
                )
            if (
                transaction.type != TransactionType.SEND
                or transaction.status != TransactionStatus.PENDING
                or transaction.mint is None
            ):
                raise ValidationError(
                    "Only pending sends can be reverted",
                    {"transactionId": transaction_id},
                )

            proofs = self.proofs.get_pending_by_transaction().get(transaction.id, [])
            if not proofs:
                raise NotFoundError(
                    "No pending ecash found for this transaction",
                    {"transactionId": transaction_id},
                )

            record = self.mints.get(transaction.mint)
            fee = calculate_input_fees(proofs, record.input_fees)
            gateway = self.gateways.get(record.mint_url)
            try:
                split = await gateway.split(
                    sum_proofs(proofs) - fee,
                    proofs,
                    record.current_keyset(transaction.unit),
                    fee,
                )
            except MintError:
                state = await gateway.check_spent(proofs)
                if len(state.spent) == len(proofs):
                    self.proofs.mark_spent(proofs)
                    self._complete_claimed(transaction.id)
                    self.save()
                    return TransactionResult(
                        transaction=transaction,
                        message="Ecash has already been claimed by the receiver.",
                    )
                raise

            self.proofs.mark_spent(proofs)
            _, returned = self._add_new_proofs(
                record.mint_url, split.send_proofs + split.change_proofs
            )
            self._apply_new_keys(record.mint_url, split.new_keys)
            self.transactions.update_status(
                transaction.id,
                TransactionStatus.REVERTED,
                {"revertedAmount": returned, "fee": fee},
            )
            self._set_balance_after(transaction)
            self.save()
            return TransactionResult(
                transaction=transaction,
                message=f"{returned} {transaction.unit} returned to your balance.",
            )
        except WalletError as e:
            # The send is still valid, so the transaction keeps its status
            return TransactionResult(
                transaction=transaction, message=e.message, error=format_error(e)
            )

    # ─────────────────────────────── Receive ──────────────────────────────────

    async def receive(self, encoded_token: str, memo: str = "") -> TransactionResult:
        """Redeem a token into the wallet, mint by mint.

        Entries a mint rejects are kept as an error token; the operation only
        fails when no entry could be received.
        """
        transaction: Transaction | None = None
        try:
            token = decode_token(encoded_token)
            transaction = self.transactions.add_transaction(
                TransactionType.RECEIVE,
                token.amount,
                unit=token.unit,
                memo=memo or token.memo,
                mint=token.mints[0],
                input_token=encoded_token,
            )
            blocked = self._block_if_needed(transaction, token)
            if blocked is not None:
                return blocked
            return await self._redeem_token(transaction, token)
        except WalletError as e:
            return self._fail(
                transaction, e, "receive", errorToken=e.params.get("errorToken")
            )

    async def receive_offline_prepare(
        self, encoded_token: str, memo: str = ""
    ) -> TransactionResult:
        """Store a token for later redemption without contacting its mints.

        The transaction stays PREPARED_OFFLINE until
        :meth:`receive_offline_complete` redeems it.
        """
        transaction: Transaction | None = None
        try:
            token = decode_token(encoded_token)
            transaction = self.transactions.add_transaction(
                TransactionType.RECEIVE_OFFLINE,
                token.amount,
                unit=token.unit,
                memo=memo or token.memo,
                mint=token.mints[0],
                input_token=encoded_token,
            )
            blocked = self._block_if_needed(transaction, token)
            if blocked is not None:
                return blocked

            self.transactions.update_status(
                transaction.id,
                TransactionStatus.PREPARED_OFFLINE,
                {"mints": token.mints},
            )
            self.save()
            return TransactionResult(
                transaction=transaction,
                message=(
                    f"You received {token.amount} {token.unit} while offline. "
                    "Redeem them when you are online again."
                ),
            )
        except WalletError as e:
            return self._fail(transaction, e, "receive_offline_prepare")

    async def receive_offline_complete(self, transaction_id: int) -> TransactionResult:
        """Redeem a token stored by :meth:`receive_offline_prepare`.

        While its mints are still unreachable the transaction keeps its
        PREPARED_OFFLINE status so it can be retried.
        """
        transaction = self.transactions.find_by_id(transaction_id)
        try:
            if transaction is None:
                raise NotFoundError(
                    f"Transaction {transaction_id} not found",
                    {"transactionId": transaction_id},
                )
            if transaction.status != TransactionStatus.PREPARED_OFFLINE:
                raise ValidationError(
                    "Only tokens received offline can be redeemed",
                    {"transactionId": transaction_id},
                )
            if not transaction.input_token:
                raise ValidationError(
                    "Could not find ecash token to redeem",
                    {"transactionId": transaction_id},
                )
        except WalletError as e:
            return TransactionResult(
                transaction=transaction, message=e.message, error=format_error(e)
            )

        try:
            token = decode_token(transaction.input_token)
            if token.unit != transaction.unit:
                raise ValidationError(
                    "Transaction unit and token unit are not the same",
                    {"unit": token.unit, "transactionUnit": transaction.unit},
                )
            blocked = self._block_if_needed(transaction, token)
            if blocked is not None:
                return blocked
            return await self._redeem_token(transaction, token, prepare=False)
        except MintConnectionError as e:
            self.transactions.append_step(transaction.id, {"error": format_error(e)})
            self.save()
            return TransactionResult(
                transaction=transaction, message=e.message, error=format_error(e)
            )
        except WalletError as e:
            return self._fail(
                transaction,
                e,
                "receive_offline_complete",
                errorToken=e.params.get("errorToken"),
            )

    async def receive_offline_pending(self) -> list[TransactionResult]:
        """Try to redeem every token that was received offline."""
        return [
            await self.receive_offline_complete(transaction.id)
            for transaction in self.transactions.get_by_status(
                TransactionStatus.PREPARED_OFFLINE
            )
        ]

    def _block_if_needed(
        self, transaction: Transaction, token: Token
    ) -> TransactionResult | None:
        blocked = [url for url in token.mints if self.mints.is_blocked(url)]
        if not blocked:
            return None
        message = f"The mint {blocked[0]} is blocked. You can unblock it in Settings."
        self.transactions.update_status(
            transaction.id,
            TransactionStatus.BLOCKED,
            {"message": message, "blockedMints": blocked},
        )
        self.save()
        return TransactionResult(transaction=transaction, message=message)

    async def _redeem_token(
        self, transaction: Transaction, token: Token, *, prepare: bool = True
    ) -> TransactionResult:
        """Swap every entry of ``token`` and complete ``transaction``.

        A failing entry goes to the error token and the remaining entries are
        still swapped.

        Raises:
            MintConnectionError: If no entry was received because every mint
                was unreachable
            MintError: If no entry was received for any other reason
        """
        unit = token.unit
        for url in token.mints:
            if url not in self.mints:
                logger.info(f"Adding unknown mint {url} from received token")
                await self.mints.add_mint(url)

        if prepare:
            self.transactions.update_status(
                transaction.id, TransactionStatus.PREPARED, {"mints": token.mints}
            )

        received = 0
        fees_paid = 0
        unreachable = 0
        error_entries: list[TokenEntry] = []
        errors: list[str] = []
        for entry in token.entries:
            try:
                record = self.mints.get(entry.mint)
                fee = calculate_input_fees(entry.proofs, record.input_fees)
                result = await self.gateways.get(record.mint_url).swap(
                    entry, record.current_keyset(unit), fee
                )
            except WalletError as e:
                # The mint may already have consumed these inputs
                logger.warning(f"Could not receive ecash from {entry.mint}: {e}")
                error_entries.append(entry)
                errors.append(e.message)
                if isinstance(e, MintConnectionError):
                    unreachable += 1
                continue

            if result.rejected_proofs:
                error_entries.append(
                    TokenEntry(mint=entry.mint, proofs=result.rejected_proofs)
                )
                errors.extend(result.errors)
            if result.accepted_proofs:
                _, added = self._add_new_proofs(
                    record.mint_url,
                    result.accepted_proofs,
                    transaction_id=transaction.id,
                )
                received += added
                fees_paid += fee
            self._apply_new_keys(record.mint_url, result.new_keys)

        error_token = (
            encode_token(Token(entries=error_entries, unit=unit, memo=token.memo))
            if error_entries
            else None
        )
        amount_with_errors = sum(entry.amount for entry in error_entries)

        if received == 0:
            params = {
                "caller": "receive",
                "message": errors[0] if errors else None,
                "errorToken": error_token,
            }
            if unreachable == len(token.entries):
                raise MintConnectionError(
                    "Could not reach the mint to receive the ecash.", params
                )
            raise MintError(
                "Mint returned error on request to swap the received ecash.", params
            )

        self.transactions.update_status(
            transaction.id,
            TransactionStatus.COMPLETED,
            {
                "receivedAmount": received,
                "amountWithErrors": amount_with_errors,
                "swapFeePaid": fees_paid,
                "errorToken": error_token,
                "errors": errors,
            },
        )
        if received != token.amount:
            self.transactions.set_received_amount(transaction.id, received)
        if fees_paid:
            self.transactions.set_fee(transaction.id, fees_paid)
        self._set_balance_after(transaction)
        self.save()

        error = None
        if error_entries:
            logger.warning(
                f"Received {received} {unit}, {amount_with_errors} {unit} "
                f"could not be received: {errors}"
            )
            error = {
                "name": MintError.name,
                "message": (
                    f"{len(token.entries) - len(error_entries)} of "
                    f"{len(token.entries)} token entries received"
                ),
                "params": {"errorToken": error_token, "errors": errors},
            }
        return TransactionResult(
            transaction=transaction,
            message=f"You've received {received} {unit}.",
            error=error,
            extra={
                "received_amount": received,
                "amount_with_errors": amount_with_errors,
            },
        )

    # ─────────────────────────────── Transfer ─────────────────────────────────

    async def transfer(
        self,
        mint_url: str,
        amount: int,
        estimated_fee: int,
        invoice_expiry: float,
        encoded_invoice: str,
        unit: CurrencyUnit = "sat",
        memo: str = "",
        quote: str | None = None,
    ) -> TransactionResult:
        """Pay a Lightning invoice with ecash held at ``mint_url``.

        Args:
            mint_url: Mint whose proofs pay the invoice
            amount: Invoice amount
            estimated_fee: Fee reserve quoted by the mint
            invoice_expiry: Unix time the invoice expires
            encoded_invoice: bolt11 invoice
            quote: Melt quote id, fetched when not given
        """
        transaction: Transaction | None = None
        selected: list[Proof] = []
        network_started = False
        try:
            if invoice_expiry <= time.time():
                raise ValidationError(
                    "This invoice has already expired and can not be paid.",
                    {"caller": "transfer", "invoiceExpiry": invoice_expiry},
                )
            _check_amount(amount)
            decoded = self._decode_invoice(encoded_invoice)
            record = self._spendable_mint(mint_url)

            available = self.proofs.get_balances(unit)
            mint_balance = next(
                (
                    mb.balance(unit)
                    for mb in available.mint_balances
                    if mb.mint_url == record.mint_url
                ),
                0,
            )
            if mint_balance < amount + estimated_fee:
                raise ValidationError(
                    "Not enough funds available to pay the invoice and fee",
                    {
                        "caller": "transfer",
                        "balance": mint_balance,
                        "required": amount + estimated_fee,
                    },
                )

            transaction = self.transactions.add_transaction(
                TransactionType.TRANSFER,
                amount,
                unit=unit,
                fee=estimated_fee,
                memo=memo,
                mint=record.mint_url,
                step={
                    "amount": amount,
                    "estimatedFee": estimated_fee,
                    "encodedInvoice": encoded_invoice,
                    "unit": unit,
                },
            )

            selected = self.proofs.select_proofs_to_cover(
                record.mint_url, amount + estimated_fee, unit
            )
            self.proofs.mark_pending(selected, transaction.id)
            selected_amount = sum_proofs(selected)
            self.transactions.update_status(
                transaction.id,
                TransactionStatus.PREPARED,
                {"selectedAmount": selected_amount, "quote": quote},
            )

            gateway = self.gateways.get(record.mint_url)
            network_started = True
            result = await gateway.pay_invoice(
                encoded_invoice,
                selected,
                # Everything beyond the invoice amount may come back as change
                selected_amount - amount,
                record.current_keyset(unit),
                quote=quote,
                unit=unit,
            )
            self._apply_new_keys(record.mint_url, result.new_keys)

            if result.is_paid:
                self.proofs.mark_spent(selected)
                self._add_new_proofs(
                    record.mint_url, result.change_proofs, transaction_id=transaction.id
                )
                final_fee = selected_amount - amount - result.fee_saved
                self.transactions.set_fee(transaction.id, final_fee)
                if result.preimage:
                    self.transactions.set_proof(transaction.id, result.preimage)
                self.transactions.update_status(
                    transaction.id,
                    TransactionStatus.COMPLETED,
                    {
                        "preimage": result.preimage,
                        "feeSaved": result.fee_saved,
                        "finalFee": final_fee,
                    },
                )
                self._set_balance_after(transaction)
                self.payment_requests.mark_paid(decoded.payment_hash)
                self.save()
                return TransactionResult(
                    transaction=transaction,
                    message=(
                        f"Lightning invoice has been paid. "
                        f"Final network fee has been {final_fee} {unit}."
                    ),
                )

            if result.is_pending:
                self.proofs.set_pending_by_mint(selected, True)
                self.transactions.update_status(
                    transaction.id,
                    TransactionStatus.PENDING,
                    {"message": "Payment is in flight at the mint"},
                )
                self.save()
                return TransactionResult(
                    transaction=transaction,
                    message="Payment is pending, the outcome will be checked later.",
                )

            raise MintError(
                "Lightning payment did not succeed",
                {"caller": "transfer", "mintUrl": record.mint_url},
            )
        except WalletError as e:
            self._release(selected, e, network_started)
            return self._fail(transaction, e, "transfer")

    async def pay_payment_request(
        self, payment_hash: str, mint_url: str | None = None
    ) -> TransactionResult:
        """Pay a stored payment request, from the largest mint balance by default."""
        try:
            request = self.payment_requests.find_by_payment_hash(payment_hash)
            if request is None:
                raise NotFoundError(
                    "Payment request not found", {"paymentHash": payment_hash}
                )
            mint_url = mint_url or self._default_mint(request)
            quote = await self.gateways.get(mint_url).check_fees(
                request.encoded_invoice
            )
        except WalletError as e:
            return TransactionResult(
                transaction=None, message=e.message, error=format_error(e)
            )

        return await self.transfer(
            mint_url,
            quote.amount,
            quote.fee_reserve,
            request.expires_at,
            request.encoded_invoice,
            memo=request.memo or "",
            quote=quote.quote,
        )

    def _default_mint(self, request: PaymentRequest) -> str:
        candidates = self.proofs.get_mint_balances_with_enough_balance(request.amount)
        candidates = [c for c in candidates if not self.mints.is_blocked(c.mint_url)]
        if not candidates:
            raise ValidationError(
                "Not enough funds available", {"amount": request.amount}
            )
        return candidates[0].mint_url

    # ───────────────────────── Maintenance ─────────────────────────────────

    async def check_spent(self) -> dict[str, int]:
        """Drop held proofs the mints report as spent.

        Returns:
            ``{"spent_count": ..., "spent_amount": ...}`` summed over mints
        """
        summary = {"spent_count": 0, "spent_amount": 0}
        for record in self.mints.all():
            held = self.proofs.get_proofs(record.mint_url)
            if not held:
                continue
            try:
                result = await self.gateways.get(record.mint_url).check_spent(held)
            except WalletError as e:
                logger.warning(f"Spent check failed for {record.mint_url}: {e}")
                continue
            removed = self.proofs.mark_spent(result.spent)
            summary["spent_count"] += len(removed)
            summary["spent_amount"] += sum_proofs(removed)

        if summary["spent_count"]:
            logger.info(
                f"Removed {summary['spent_count']} spent proofs "
                f"worth {summary['spent_amount']}"
            )
        self.save()
        return summary

    # ───────────────────────── Helpers ─────────────────────────────────

    def _spendable_mint(self, mint_url: str) -> MintRecord:
        record = self.mints.get(mint_url)
        if record.is_blocked:
            raise ValidationError(
                f"Mint {record.mint_url} is blocked", {"mintUrl": record.mint_url}
            )
        return record

    def _apply_new_keys(self, mint_url: str, new_keys: Keyset | None) -> None:
        """Adopt a keyset the mint signed with. Call after storing the proofs."""
        if new_keys is None:
            return
        try:
            self.mints.rotate_keys(mint_url, new_keys)
        except ValidationError as e:
            logger.warning(
                f"Keeping current keys of {mint_url}, rejected {new_keys['id']}: "
                f"{e.message}"
            )

    def _add_new_proofs(
        self,
        mint_url: str,
        proofs: list[Proof],
        *,
        state: ProofState = ProofState.HELD,
        transaction_id: int | None = None,
    ) -> tuple[list[Proof], int]:
        """Add proofs from a mint response; a replayed batch is logged and skipped."""
        if not proofs:
            return [], 0
        try:
            return self.proofs.add_proofs(
                mint_url, proofs, state=state, transaction_id=transaction_id
            )
        except DuplicateProofError as e:
            logger.warning(f"Mint {mint_url} returned known proofs: {e.message}")
            return [], 0

    def _release(
        self, selected: list[Proof], error: WalletError, network_started: bool
    ) -> None:
        """Give reserved proofs back unless the mint may have consumed them.

        After a timeout or unreadable response the outcome at the mint is
        unknown, so the proofs stay pending for ``check_pending_spent``.
        """
        if not selected:
            return
        if not network_started or isinstance(error, MintError):
            self.proofs.restore_to_held(selected)

    def _set_balance_after(self, transaction: Transaction) -> None:
        balance = self.proofs.get_balances(transaction.unit).total_balance
        self.transactions.set_balance_after(transaction.id, balance)

    def _fail(
        self,
        transaction: Transaction | None,
        error: WalletError,
        caller: str,
        **step: Any,
    ) -> TransactionResult:
        formatted = format_error(error)
        if transaction is not None and not transaction.status.is_terminal:
            self.transactions.update_status(
                transaction.id,
                TransactionStatus.ERROR,
                {"error": formatted, **{k: v for k, v in step.items() if v}},
            )
        logger.error(f"[{caller}] {error.message}")
        self.save()
        return TransactionResult(
            transaction=transaction, message=error.message, error=formatted
        )

    # ─────────────────────────────── Cleanup ──────────────────────────────────

    async def aclose(self) -> None:
        await self.gateways.aclose()

    async def __aenter__(self) -> Wallet:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.save()
        await self.aclose()


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive integer", {"amount": amount})
