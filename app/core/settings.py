"""Importer settings read from the environment (``.env`` is honoured)."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class ImportSettings:
    future_year_window: int = 5
    tx_sheet_min_score: int = 3
    max_upload_mb: int = 25
    log_level: str = "INFO"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @staticmethod
    def load() -> "ImportSettings":
        return ImportSettings(
            future_year_window=_int_env("IMPORT_FUTURE_YEAR_WINDOW", 5),
            tx_sheet_min_score=_int_env("IMPORT_TX_SHEET_MIN_SCORE", 3),
            max_upload_mb=_int_env("IMPORT_MAX_UPLOAD_MB", 25),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> ImportSettings:
    return ImportSettings.load()
