"""Mint management, spent-proof sweeps and persistence across restarts."""

import pytest

from walnut.storage import JsonFileStore, MemoryStore
from walnut.transactions import TransactionStatus
from walnut.types import NotFoundError, ValidationError
from walnut.wallet import Wallet


class TestMintManagement:
    @pytest.mark.asyncio
    async def test_ensure_mints_is_idempotent(self, wallet, mint, other_mint) -> None:
        await wallet.ensure_mints([mint.url, other_mint.url])
        await wallet.ensure_mints([mint.url, other_mint.url + "/"])

        assert [m.mint_url for m in wallet.mints.all()] == [mint.url, other_mint.url]

    @pytest.mark.asyncio
    async def test_remove_mint_with_funds_refused(self, wallet, mint, fund) -> None:
        fund([1])

        with pytest.raises(ValidationError, match="still holds ecash"):
            wallet.remove_mint(mint.url)
        assert mint.url in wallet.mints

    @pytest.mark.asyncio
    async def test_remove_empty_mint(self, wallet, mint) -> None:
        wallet.remove_mint(mint.url)

        assert mint.url not in wallet.mints
        with pytest.raises(NotFoundError):
            wallet.remove_mint(mint.url)

    @pytest.mark.asyncio
    async def test_send_from_blocked_mint(self, wallet, mint, fund) -> None:
        fund([4])
        wallet.block_mint(mint.url)

        result = await wallet.send(mint.url, 4)

        assert "is blocked" in result.error["message"]
        assert wallet.get_balances().total_balance == 4

        wallet.unblock_mint(mint.url)
        assert (await wallet.send(mint.url, 4)).ok


class TestCheckSpent:
    @pytest.mark.asyncio
    async def test_sweeps_proofs_spent_elsewhere(self, wallet, mint, fund) -> None:
        spent, kept = fund([4, 8])
        mint.spend([spent])

        summary = await wallet.check_spent()

        assert summary == {"spent_count": 1, "spent_amount": 4}
        assert wallet.get_balances().total_balance == 8
        assert wallet.proofs.get_proofs(mint.url)[0]["secret"] == kept["secret"]

    @pytest.mark.asyncio
    async def test_offline_mint_skipped(self, wallet, mint, fund) -> None:
        fund([4])
        mint.offline = True

        summary = await wallet.check_spent()

        assert summary == {"spent_count": 0, "spent_amount": 0}
        assert wallet.get_balances().total_balance == 4


class TestPersistence:
    @pytest.mark.asyncio
    async def test_state_survives_restart(self, network, mint, make_wallet, tmp_path) -> None:
        path = tmp_path / "wallet.json"
        wallet = make_wallet(JsonFileStore(path))
        await wallet.add_mint(mint.url)
        topup = await wallet.topup(mint.url, 16)
        mint.pay_quotes()
        await wallet.check_pending_topups()
        sent = await wallet.send(mint.url, 5)
        pending_topup = await wallet.topup(mint.url, 2)
        await wallet.aclose()

        restored = Wallet.load(
            JsonFileStore(path),
            transport=network.transport,
            invoice_decoder=network.decode_invoice,
        )

        balances = restored.get_balances()
        assert balances.total_balance == 11
        assert balances.total_pending_balance == 5
        assert restored.transactions.get(topup.transaction.id).status == TransactionStatus.COMPLETED
        copy = restored.transactions.get(sent.transaction.id)
        assert copy.status == TransactionStatus.PENDING
        assert copy.output_token == sent.encoded_token
        assert restored.invoices.find_by_transaction_id(pending_topup.transaction.id) is not None
        assert restored.mints.get(mint.url).current_keyset()["id"] == mint.active.id

        mint.pay_quotes()
        assert (await restored.check_pending_topups())["completed"] == 1
        assert restored.get_balances().total_balance == 13
        new = await restored.send(mint.url, 1)
        assert new.transaction.id == pending_topup.transaction.id + 1
        await restored.aclose()

    @pytest.mark.asyncio
    async def test_context_manager_saves(self, network, mint) -> None:
        store = MemoryStore()
        async with Wallet(
            store=store,
            transport=network.transport,
            invoice_decoder=network.decode_invoice,
        ) as wallet:
            await wallet.add_mint(mint.url)
            wallet.proofs.add_proofs(mint.url, mint.issue_proofs([2]))

        restored = Wallet.load(store)
        assert restored.get_balances().total_balance == 2
