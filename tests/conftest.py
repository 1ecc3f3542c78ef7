"""Pytest configuration for test isolation.

The sync pipeline reads tunables from ``EXPENSE_SYNC_*`` variables and talks to
the database through the process-wide engine in ``db.client``. Either can leak
between tests: a developer's shell may export overrides, and an engine bound
by one test would otherwise be reused (or rejected, for a different URL) by
the next one.

Every test therefore starts with a scrubbed environment and a fresh engine.
Tests that need a database request the ``database_url`` fixture, which creates
a per-test SQLite file.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
# `packages/` and `libs/db/src` must precede the repo root so local packages resolve first.
sys.path[:0] = [
    p
    for p in [str(_ROOT / "packages"), str(_ROOT / "libs" / "db" / "src"), str(_ROOT)]
    if p not in sys.path
]

from db.client import dispose_engine  # noqa: E402

from tests.helpers.db import bootstrap_sqlite_db  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop ``EXPENSE_SYNC_*``/``DATABASE_URL`` overrides and reset the engine."""

    for key in list(os.environ):
        if key.startswith("EXPENSE_SYNC_") or key == "DATABASE_URL":
            monkeypatch.delenv(key, raising=False)
    dispose_engine()
    yield
    dispose_engine()


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """A migrated per-test SQLite database, also exported as ``DATABASE_URL``."""

    url = bootstrap_sqlite_db(tmp_path / "expenses.sqlite3")
    monkeypatch.setenv("DATABASE_URL", url)
    return url
