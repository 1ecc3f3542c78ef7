# ruff: noqa: I001
"""Candidate message selection.

A :class:`MessageFilter` describes which inbound messages look like bank
transactions: the sender must contain one of the allow-listed names, the body
must contain one of the keywords (when any are given) and none of the ignore
words, and the timestamp must fall within ``[start, end]``. Matching is
case-insensitive substring matching, the same semantics SQL ``LIKE`` has on
SQLite.

Stores return matches newest first. Two stores are provided: an in-memory one
and one over the ``sms_inbox`` table.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import and_, not_, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert

from db.client import session_scope
from db.models.expenses import SmsMessageEntity
from .dates import to_millis
from .errors import MessagePermissionError
from .logging_setup import get_logger
from .models import CandidateMessage

_logger = get_logger("expense_sync.messages")


@dataclass(frozen=True, slots=True)
class MessageFilter:
    """Conjunctive predicate over candidate messages.

    A single sender is expressed as a one-element ``senders`` tuple; there is
    no separate single-sender mode.
    """

    senders: tuple[str, ...]
    keywords: tuple[str, ...] = ()
    ignore_words: tuple[str, ...] = ()
    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        if not self.senders or not any(s.strip() for s in self.senders):
            raise ValueError("MessageFilter requires at least one sender")

    def matches(self, message: CandidateMessage) -> bool:
        address = message.address.casefold()
        body = message.body.casefold()
        if not any(s.casefold() in address for s in self.senders if s.strip()):
            return False
        if self.keywords and not any(k.casefold() in body for k in self.keywords):
            return False
        if any(w.casefold() in body for w in self.ignore_words):
            return False
        if self.start is not None and message.timestamp_millis < to_millis(self.start):
            return False
        if self.end is not None and message.timestamp_millis > to_millis(self.end):
            return False
        return True


class MessageStore(Protocol):
    def query(
        self,
        senders: Sequence[str],
        keywords: Sequence[str] | None = None,
        ignore_words: Sequence[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CandidateMessage]: ...

    def has_read_permission(self) -> bool: ...


def _build_filter(
    senders: Sequence[str],
    keywords: Sequence[str] | None,
    ignore_words: Sequence[str] | None,
    start: datetime | None,
    end: datetime | None,
) -> MessageFilter:
    return MessageFilter(
        senders=tuple(senders),
        keywords=tuple(keywords or ()),
        ignore_words=tuple(ignore_words or ()),
        start=start,
        end=end,
    )


class InMemoryMessageStore:
    """A message store over a Python list.

    ``granted`` models the platform read permission; when ``False`` every query
    raises :class:`MessagePermissionError`.
    """

    def __init__(self, messages: Iterable[CandidateMessage] = (), *, granted: bool = True):
        self._messages = list(messages)
        self.granted = granted
        self.queries: list[MessageFilter] = []

    def add(self, message: CandidateMessage) -> None:
        self._messages.append(message)

    def has_read_permission(self) -> bool:
        return self.granted

    def query(
        self,
        senders: Sequence[str],
        keywords: Sequence[str] | None = None,
        ignore_words: Sequence[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CandidateMessage]:
        if not self.granted:
            raise MessagePermissionError("message read permission not granted")
        flt = _build_filter(senders, keywords, ignore_words, start, end)
        self.queries.append(flt)
        hits = [m for m in self._messages if flt.matches(m)]
        hits.sort(key=lambda m: m.timestamp_millis, reverse=True)
        return hits


def _like_any(column, needles: Sequence[str]):
    return or_(*(column.ilike(f"%{n}%") for n in needles))


class SqlMessageStore:
    """Message store over the ``sms_inbox`` table, filtering in SQL."""

    def __init__(self, *, database_url: str | None = None, granted: bool = True) -> None:
        self._database_url = database_url
        self.granted = granted

    def has_read_permission(self) -> bool:
        return self.granted

    def query(
        self,
        senders: Sequence[str],
        keywords: Sequence[str] | None = None,
        ignore_words: Sequence[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CandidateMessage]:
        if not self.granted:
            raise MessagePermissionError("message read permission not granted")
        flt = _build_filter(senders, keywords, ignore_words, start, end)

        clauses = [_like_any(SmsMessageEntity.address, [s for s in flt.senders if s.strip()])]
        if flt.keywords:
            clauses.append(_like_any(SmsMessageEntity.body, flt.keywords))
        for word in flt.ignore_words:
            clauses.append(not_(SmsMessageEntity.body.ilike(f"%{word}%")))
        if flt.start is not None:
            clauses.append(SmsMessageEntity.timestamp_ms >= to_millis(flt.start))
        if flt.end is not None:
            clauses.append(SmsMessageEntity.timestamp_ms <= to_millis(flt.end))

        stmt = (
            select(SmsMessageEntity)
            .where(and_(*clauses))
            .order_by(SmsMessageEntity.timestamp_ms.desc(), SmsMessageEntity.id.desc())
        )
        with session_scope(database_url=self._database_url) as session:
            rows = session.scalars(stmt).all()
            return [
                CandidateMessage(
                    id=r.id, address=r.address, body=r.body, timestamp_millis=int(r.timestamp_ms)
                )
                for r in rows
            ]

    def import_messages(self, messages: Iterable[CandidateMessage]) -> int:
        """Insert messages into the inbox, ignoring ids already present."""

        imported = 0
        with session_scope(database_url=self._database_url) as session:
            dialect = session.get_bind().dialect.name
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            for m in messages:
                stmt = (
                    insert_fn(SmsMessageEntity)
                    .values(
                        id=m.id, address=m.address, body=m.body, timestamp_ms=m.timestamp_millis
                    )
                    .on_conflict_do_nothing(index_elements=[SmsMessageEntity.id])
                )
                imported += session.execute(stmt).rowcount or 0
        _logger.info("messages:import imported=%d", imported)
        return imported


def load_messages_json(path: Path) -> list[CandidateMessage]:
    """Read an exported inbox: a JSON array of ``{id, address, body, date}`` objects.

    ``date`` is epoch milliseconds (``timestamp_millis`` is accepted too). A
    missing ``id`` is derived from address and timestamp.
    """

    with path.open("r", encoding="utf-8") as f:
        data: Any = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON array of messages")
    out: list[CandidateMessage] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise ValueError(f"{path}: item {i} is not an object")
        ts = item.get("date", item.get("timestamp_millis"))
        address = item.get("address")
        body = item.get("body")
        if ts is None or address is None or body is None:
            raise ValueError(f"{path}: item {i} needs address, body and date")
        msg_id = item.get("id")
        out.append(
            CandidateMessage(
                id=str(msg_id) if msg_id is not None else f"{address}:{int(ts)}",
                address=str(address),
                body=str(body),
                timestamp_millis=int(ts),
            )
        )
    return out


__all__ = [
    "InMemoryMessageStore",
    "MessageFilter",
    "MessageStore",
    "SqlMessageStore",
    "load_messages_json",
]
