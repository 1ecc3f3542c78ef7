"""Runtime configuration for the sync pipeline.

All tunables live on :class:`SyncConfig`. Defaults reflect the production
quota of the extraction provider; ``SyncConfig.from_env()`` lets operators
override any of them through ``EXPENSE_SYNC_*`` environment variables without
touching code.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from typing import Any

_ENV_PREFIX = "EXPENSE_SYNC_"

DEFAULT_BANK_NAMES: tuple[str, ...] = ("QNB", "QIB", "CBQ", "Doha Bank")
DEFAULT_KEYWORDS: tuple[str, ...] = ("purchase", "transaction")
DEFAULT_IGNORE_WORDS: tuple[str, ...] = ("OTP", "withdrawal", "deposit", "bonus", "refund")
DEFAULT_AI_MODEL = "gpt-4o-mini"
DEFAULT_AI_TEMPERATURE = 0.15


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Tunables for rate limiting, extraction, sync and reminders.

    Attributes
    ----------
    max_requests / window_ms:
        Sliding-window quota: at most ``max_requests`` AI calls in any trailing
        ``window_ms`` milliseconds.
    base_delay_ms:
        Fixed pause between consecutive extraction calls, and the base of the
        per-item exponential retry backoff.
    max_retries:
        Retries per item for transient AI errors (quota, timeout, server,
        stopped response).
    max_items_per_run:
        Upper bound on candidates extracted in one run.
    lookback_days:
        Oldest message age considered when no expense has been stored yet.
    payment_reminder_lead / cancellation_reminder_lead:
        How long before the next recurring date each reminder fires.
    """

    max_requests: int = 15
    window_ms: int = 60_000
    base_delay_ms: int = 2_500
    max_retries: int = 3
    max_items_per_run: int = 10
    lookback_days: int = 30
    bank_names: tuple[str, ...] = DEFAULT_BANK_NAMES
    keywords: tuple[str, ...] = DEFAULT_KEYWORDS
    ignore_words: tuple[str, ...] = DEFAULT_IGNORE_WORDS
    payment_reminder_lead: timedelta = timedelta(days=1)
    cancellation_reminder_lead: timedelta = timedelta(days=3)
    ai_model: str = DEFAULT_AI_MODEL
    ai_temperature: float = DEFAULT_AI_TEMPERATURE
    chat_history_depth: int = 100
    chat_top_n: int = 10
    max_run_attempts: int = 3
    run_retry_backoff_s: float = 30.0

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise ValueError("max_requests must be a positive integer")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be a positive integer")
        if self.base_delay_ms < 0 or self.max_retries < 0:
            raise ValueError("base_delay_ms and max_retries must be non-negative")
        if self.max_items_per_run <= 0:
            raise ValueError("max_items_per_run must be a positive integer")
        if not self.bank_names:
            raise ValueError("bank_names must not be empty")
        if self.max_run_attempts <= 0:
            raise ValueError("max_run_attempts must be a positive integer")

    @property
    def base_delay_s(self) -> float:
        return self.base_delay_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> SyncConfig:
        """Build a config from ``EXPENSE_SYNC_<FIELD>`` variables.

        Unset or blank variables keep the dataclass default. List-valued fields
        take comma-separated values; reminder leads are given in hours.
        Explicit keyword ``overrides`` win over the environment.
        """

        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None or not raw.strip():
                continue
            values[f.name] = _coerce(f.name, raw.strip())
        values.update(overrides)
        return replace(cls(), **values)


def _coerce(name: str, raw: str) -> Any:
    if name in ("bank_names", "keywords", "ignore_words"):
        return tuple(p.strip() for p in raw.split(",") if p.strip())
    if name in ("payment_reminder_lead", "cancellation_reminder_lead"):
        return timedelta(hours=_number(name, raw, float))
    if name == "ai_model":
        return raw
    if name in ("ai_temperature", "run_retry_backoff_s"):
        return _number(name, raw, float)
    return _number(name, raw, int)


def _number(name: str, raw: str, kind: type) -> Any:
    try:
        return kind(raw)
    except ValueError as e:
        raise ValueError(f"{_ENV_PREFIX}{name.upper()} must be a number, got {raw!r}") from e


__all__ = [
    "DEFAULT_AI_MODEL",
    "DEFAULT_AI_TEMPERATURE",
    "DEFAULT_BANK_NAMES",
    "DEFAULT_IGNORE_WORDS",
    "DEFAULT_KEYWORDS",
    "SyncConfig",
]
