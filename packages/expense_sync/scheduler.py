"""Named deferred tasks with REPLACE/KEEP collision policies.

The host platform normally owns deferred work; :class:`InMemoryTaskScheduler`
is the in-process implementation used by the CLI and the tests. It stores at
most one pending task per name, which is what makes repeated scheduling calls
idempotent.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from .dates import ensure_aware
from .logging_setup import get_logger
from .models import EnqueuePolicy

_logger = get_logger("expense_sync.scheduler")


@dataclass(frozen=True, slots=True)
class ScheduledTask:
    name: str
    fire_at: datetime
    payload: Any = None


class TaskScheduler(Protocol):
    def enqueue_unique(
        self, name: str, policy: EnqueuePolicy, fire_at: datetime, payload: Any = None
    ) -> bool: ...

    def cancel(self, name: str) -> bool: ...

    def pending(self, name: str) -> ScheduledTask | None: ...


class InMemoryTaskScheduler:
    """Thread-safe dictionary of pending tasks keyed by name."""

    def __init__(self) -> None:
        self._tasks: dict[str, ScheduledTask] = {}
        self._lock = threading.Lock()

    def enqueue_unique(
        self, name: str, policy: EnqueuePolicy, fire_at: datetime, payload: Any = None
    ) -> bool:
        """Enqueue ``name`` for ``fire_at``.

        Returns ``True`` when the task was stored, ``False`` when ``KEEP``
        suppressed it because a task of the same name is still pending.
        """

        task = ScheduledTask(name=name, fire_at=ensure_aware(fire_at), payload=payload)
        with self._lock:
            existing = self._tasks.get(name)
            if existing is not None and policy is EnqueuePolicy.KEEP:
                _logger.debug("scheduler:keep name=%s fire_at=%s", name, existing.fire_at)
                return False
            self._tasks[name] = task
        _logger.info(
            "scheduler:enqueue name=%s policy=%s fire_at=%s replaced=%s",
            name,
            policy.value,
            task.fire_at.isoformat(),
            existing is not None,
        )
        return True

    def cancel(self, name: str) -> bool:
        with self._lock:
            return self._tasks.pop(name, None) is not None

    def pending(self, name: str) -> ScheduledTask | None:
        with self._lock:
            return self._tasks.get(name)

    def all_pending(self) -> list[ScheduledTask]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda t: (t.fire_at, t.name))

    def pop_due(self, now: datetime) -> list[ScheduledTask]:
        """Remove and return every task with ``fire_at <= now``, earliest first."""

        now = ensure_aware(now)
        with self._lock:
            due = [t for t in self._tasks.values() if t.fire_at <= now]
            for t in due:
                del self._tasks[t.name]
        return sorted(due, key=lambda t: (t.fire_at, t.name))


__all__ = ["InMemoryTaskScheduler", "ScheduledTask", "TaskScheduler"]
