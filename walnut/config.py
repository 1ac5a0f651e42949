"""Configuration from environment variables and a ``.env`` file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv, set_key

from .types import CurrencyUnit, ValidationError

MINTS_ENV_VAR = "CASHU_MINTS"


@dataclass
class Settings:
    mint_urls: list[str] = field(default_factory=list)
    data_dir: Path = field(default_factory=lambda: Path.home() / ".walnut")
    unit: CurrencyUnit = "sat"
    timeout: float = 30.0
    invoice_expiry: int = 600
    log_level: str = "WARNING"
    mint_debug: bool = False

    @property
    def store_path(self) -> Path:
        return self.data_dir / "wallet.json"


def parse_mint_urls(value: str | None) -> list[str]:
    """Split a comma-separated mint list, dropping blanks and duplicates.

    Example: CASHU_MINTS="https://mint1.com,https://mint2.com"
    """
    if not value:
        return []
    mints = [mint.strip().rstrip("/") for mint in value.split(",")]
    return list(dict.fromkeys(mint for mint in mints if mint))


def _number(name: str, default: str, kind: type[int] | type[float]) -> int | float:
    raw = os.getenv(name, default)
    try:
        return kind(raw)
    except ValueError as e:
        raise ValidationError(
            f"{name} must be a number", {"value": raw}
        ) from e


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Build settings from the environment after loading ``.env``.

    Variables already set in the environment win over the file.
    """
    load_dotenv(env_file or find_dotenv(usecwd=True))

    return Settings(
        mint_urls=parse_mint_urls(os.getenv(MINTS_ENV_VAR)),
        data_dir=Path(os.getenv("WALNUT_DATA_DIR", "~/.walnut")).expanduser(),
        unit=os.getenv("WALNUT_UNIT", "sat"),  # type: ignore[arg-type]
        timeout=float(_number("WALNUT_TIMEOUT", "30", float)),
        invoice_expiry=int(_number("WALNUT_INVOICE_EXPIRY", "600", int)),
        log_level=os.getenv("WALNUT_LOG_LEVEL", "WARNING").upper(),
        mint_debug=os.getenv("MINT_DEBUG", "false").lower() == "true",
    )


def set_mints_in_env(mints: list[str], env_file: str | Path = ".env") -> None:
    """Persist the mint list to the ``.env`` file and the running environment."""
    mint_str = ",".join(mints)
    Path(env_file).touch(exist_ok=True)
    set_key(str(env_file), MINTS_ENV_VAR, mint_str)
    os.environ[MINTS_ENV_VAR] = mint_str
