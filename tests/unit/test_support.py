"""Test events, storage, configuration, invoice decoding and error formatting."""

import asyncio
import json
import os
from unittest.mock import Mock, patch

import pytest
from dotenv import dotenv_values

from walnut.config import load_settings, parse_mint_urls, set_mints_in_env
from walnut.events import SEND_COMPLETED, TOPUP_COMPLETED, EventBus
from walnut.lightning import decode_invoice
from walnut.storage import JsonFileStore, MemoryStore
from walnut.types import (
    MintError,
    NotFoundError,
    StorageError,
    ValidationError,
    format_error,
)


class TestEventBus:
    def test_emit_to_subscribers(self) -> None:
        bus = EventBus()
        received = []
        bus.on(SEND_COMPLETED, received.append)

        delivered = bus.emit(SEND_COMPLETED, {"transactionId": 1})

        assert delivered == 1
        assert received == [{"transactionId": 1}]
        assert bus.emit(TOPUP_COMPLETED, {}) == 0

    def test_off(self) -> None:
        bus = EventBus()
        callback = Mock()
        bus.on(TOPUP_COMPLETED, callback)
        bus.off(TOPUP_COMPLETED, callback)

        bus.emit(TOPUP_COMPLETED, {})

        callback.assert_not_called()

    def test_failing_subscriber_does_not_stop_others(self) -> None:
        bus = EventBus()
        second = Mock()
        bus.on(SEND_COMPLETED, Mock(side_effect=RuntimeError("boom")))
        bus.on(SEND_COMPLETED, second)

        delivered = bus.emit(SEND_COMPLETED, {"amount": 1})

        assert delivered == 1
        second.assert_called_once_with({"amount": 1})

    @pytest.mark.asyncio
    async def test_async_subscriber(self) -> None:
        bus = EventBus()
        received = []

        async def on_topup(payload):
            received.append(payload)

        bus.on(TOPUP_COMPLETED, on_topup)
        bus.emit(TOPUP_COMPLETED, {"amount": 5})
        await asyncio.sleep(0)

        assert received == [{"amount": 5}]


class TestStorage:
    def test_memory_store_copies_values(self) -> None:
        store = MemoryStore()
        value = {"a": [1]}
        store.set("key", value)
        value["a"].append(2)

        assert store.get("key") == {"a": [1]}
        store.delete("key")
        assert store.get("key", "missing") == "missing"

    def test_json_file_store_persists(self, tmp_path) -> None:
        path = tmp_path / "nested" / "wallet.json"
        store = JsonFileStore(path)
        store.set("proofs", {"proofs": []})

        reopened = JsonFileStore(path)

        assert reopened.get("proofs") == {"proofs": []}
        assert json.loads(path.read_text()) == {"proofs": {"proofs": []}}

    def test_corrupt_file(self, tmp_path) -> None:
        path = tmp_path / "wallet.json"
        path.write_text("{not json")

        with pytest.raises(StorageError, match="Could not read"):
            JsonFileStore(path)


class TestConfig:
    def test_parse_mint_urls(self) -> None:
        assert parse_mint_urls(None) == []
        assert parse_mint_urls(" https://a.test/ , ,https://b.test,https://a.test") == [
            "https://a.test",
            "https://b.test",
        ]

    def test_load_settings_from_env(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setenv("CASHU_MINTS", "https://a.test,https://b.test")
        monkeypatch.setenv("WALNUT_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("WALNUT_TIMEOUT", "5")
        monkeypatch.setenv("WALNUT_LOG_LEVEL", "debug")

        settings = load_settings(tmp_path / "missing.env")

        assert settings.mint_urls == ["https://a.test", "https://b.test"]
        assert settings.store_path == tmp_path / "wallet.json"
        assert settings.timeout == 5.0
        assert settings.log_level == "DEBUG"

    def test_bad_number(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setenv("WALNUT_INVOICE_EXPIRY", "soon")
        with pytest.raises(ValidationError, match="WALNUT_INVOICE_EXPIRY"):
            load_settings(tmp_path / "missing.env")

    def test_set_mints_in_env(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setenv("CASHU_MINTS", "")
        env_file = tmp_path / ".env"

        set_mints_in_env(["https://a.test", "https://b.test"], env_file)

        assert dotenv_values(env_file)["CASHU_MINTS"] == "https://a.test,https://b.test"
        assert os.environ["CASHU_MINTS"] == "https://a.test,https://b.test"


class TestDecodeInvoice:
    def test_garbage_invoice(self) -> None:
        with pytest.raises(ValidationError, match="Could not decode"):
            decode_invoice("lightning:lnbcgarbage")

    def test_default_expiry(self) -> None:
        fake = Mock(
            amount_msat=21_500,
            description="coffee",
            expiry=None,
            payment_hash="ab" * 32,
            date=1_700_000_000,
        )
        with patch("walnut.lightning.bolt11.decode", return_value=fake) as decode:
            invoice = decode_invoice("LIGHTNING:lnbc1fake", default_expiry=900)

        decode.assert_called_once_with("lnbc1fake")
        assert invoice.amount == 21
        assert invoice.expiry == 900
        assert invoice.expires_at == 1_700_000_900


class TestFormatError:
    def test_wallet_error(self) -> None:
        error = MintError("Mint said no", {"caller": "send", "message": "x" * 600})

        formatted = format_error(error)

        assert formatted["name"] == "MINT_ERROR"
        assert formatted["params"]["caller"] == "send"
        assert len(formatted["params"]["message"]) == 500
        assert error.params["message"] == "x" * 600

    def test_long_message_truncated(self) -> None:
        formatted = format_error(NotFoundError("y" * 300))
        assert len(formatted["message"]) == 200
        assert formatted["name"] == "NOT_FOUND_ERROR"

    def test_unknown_error(self) -> None:
        formatted = format_error(RuntimeError("boom"))
        assert formatted == {"name": "UNKNOWN_ERROR", "message": "boom", "params": {}}
