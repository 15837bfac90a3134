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
        raise RuntimeError(f"{name} must be an integer, got {raw!r}.") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}.") from exc


@dataclass(frozen=True)
class CategoryDefaults:
    """
    Fallback category ids used when a named category ("Transfer", "Other",
    "Entertainment") cannot be found for the owner or globally.
    """
    transfer_id: int = 10
    other_id: int = 11
    entertainment_id: int = 5


@lru_cache(maxsize=1)
def category_defaults() -> CategoryDefaults:
    return CategoryDefaults(
        transfer_id=_int_env("TRANSFER_CATEGORY_ID", 10),
        other_id=_int_env("OTHER_CATEGORY_ID", 11),
        entertainment_id=_int_env("ENTERTAINMENT_CATEGORY_ID", 5),
    )


def transfer_window_days() -> int:
    return _int_env("TRANSFER_WINDOW_DAYS", 3)


def new_merchant_threshold() -> float:
    return _float_env("NEW_MERCHANT_THRESHOLD", 100.0)
