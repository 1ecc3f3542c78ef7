"""Bank SMS to expense synchronization.

Public API:
    - :class:`SyncOrchestrator`: one run over the current candidate messages.
    - :class:`SyncManager`: background runner enforcing one active run, with
      wholesale retry of failed runs and cooperative cancellation.
    - :func:`on_inbound_message`: trigger a sync from an incoming bank message.

A run moves ``IDLE -> RUNNING -> COMPLETED | FAILED | CANCELLED``. Candidates are
processed strictly one at a time, oldest first, each gated by the shared rate
limiter plus a fixed pause between consecutive extraction calls. A failure on
one message is logged and skipped; only precondition and credential errors fail
the run.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta

from .budget import BudgetNotifier
from .config import SyncConfig
from .dates import ensure_aware, utc_now
from .errors import (
    AIServiceError,
    ExpenseParseError,
    MessagePermissionError,
    SyncPreconditionError,
    to_ai_error,
)
from .extraction import ExpenseExtractor
from .logging_setup import get_logger
from .messages import MessageStore
from .models import (
    CandidateMessage,
    EnqueuePolicy,
    Expense,
    ExpenseDraft,
    SyncProgress,
    SyncResult,
    SyncState,
)
from .persistence import ExpenseStore
from .rate_limit import SlidingWindowRateLimiter
from .recurring import RecurringDetector

SYNC_WORK_NAME = "expense-sync"

ProgressCallback = Callable[[SyncProgress], None]

_logger = get_logger("expense_sync.sync")


def _progress_message(current: int, total: int) -> str:
    return f"Syncing expenses... {current} / {total}"


class SyncCancelled(Exception):
    """Raised internally when the cancel event is observed mid-item."""


class SyncOrchestrator:
    """Drives one sync run end to end.

    Parameters
    ----------
    messages:
        Source of candidate messages.
    extractor:
        One AI call per message.
    store:
        Expense persistence; deduplicates on the source message id.
    limiter:
        Shared admission gate; ``admit()`` runs before every AI attempt.
    detector / budget:
        Optional post-persist hooks (recurrence and budget warnings).
    clock / sleep:
        Wall clock (aware ``datetime``) and sleep in seconds; injectable for tests.
    """

    def __init__(
        self,
        *,
        messages: MessageStore,
        extractor: ExpenseExtractor,
        store: ExpenseStore,
        limiter: SlidingWindowRateLimiter,
        config: SyncConfig | None = None,
        detector: RecurringDetector | None = None,
        budget: BudgetNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._messages = messages
        self._extractor = extractor
        self._store = store
        self._limiter = limiter
        self._config = config or SyncConfig()
        self._detector = detector
        self._budget = budget
        self._clock = clock
        self._sleep = sleep
        self._run_lock = threading.Lock()
        self.state = SyncState.IDLE
        self.progress = SyncProgress()

    # ---- Candidate selection ---------------------------------------------

    def _start_date(self, now: datetime) -> datetime:
        floor = now - timedelta(days=self._config.lookback_days)
        last = self._store.last_expense_time()
        start = max(ensure_aware(last), floor) if last is not None else floor
        # Strictly after the last synced message.
        return start + timedelta(seconds=1)

    def _candidates(self, start: datetime, now: datetime) -> list[CandidateMessage]:
        if not self._messages.has_read_permission():
            raise MessagePermissionError("message read permission not granted")
        cfg = self._config
        found = self._messages.query(
            list(cfg.bank_names),
            keywords=list(cfg.keywords) or None,
            ignore_words=list(cfg.ignore_words) or None,
            start=start,
            end=now,
        )
        # Stores return newest first. Take the oldest ones so the resume cursor
        # (latest stored payment date) never skips an unprocessed message.
        oldest_first = sorted(found, key=lambda m: m.timestamp_millis)
        return oldest_first[: cfg.max_items_per_run]

    # ---- Per-item work ---------------------------------------------------

    def _extract_with_retry(
        self, message: CandidateMessage, cancel_event: threading.Event
    ) -> ExpenseDraft:
        attempt = 0
        while True:
            self._limiter.admit()
            t0 = time.perf_counter()
            try:
                draft = self._extractor.extract(message)
            except ExpenseParseError:
                raise
            except Exception as e:  # noqa: BLE001 - classified into the taxonomy
                err = to_ai_error(e)
                dt_ms = (time.perf_counter() - t0) * 1000.0
                if err.fatal or not err.retryable or attempt >= self._config.max_retries:
                    if err is e:
                        raise
                    raise err from e
                delay_s = self._config.base_delay_s * (2**attempt)
                _logger.warning(
                    "sync:item_retry message_id=%s kind=%s attempt=%d latency_ms=%.2f "
                    "backoff_s=%.2f",
                    message.id,
                    err.kind.value,
                    attempt + 1,
                    dt_ms,
                    delay_s,
                )
                self._sleep(delay_s)
                if cancel_event.is_set():
                    raise SyncCancelled() from err
                attempt += 1
                continue
            _logger.info(
                "sync:item_extracted message_id=%s latency_ms=%.2f attempts=%d",
                message.id,
                (time.perf_counter() - t0) * 1000.0,
                attempt + 1,
            )
            return draft

    def _after_persist(self, expense: Expense) -> None:
        if self._detector is None:
            return
        try:
            self._detector.on_expense_persisted(expense)
        except Exception as e:  # noqa: BLE001 - the expense itself is already stored
            _logger.error(
                'sync:recurrence_failed merchant="%s" error=%s: %s',
                expense.merchant,
                e.__class__.__name__,
                e,
            )

    def _check_budget(self, now: datetime) -> None:
        if self._budget is None:
            return
        try:
            self._budget.check_month(now)
        except Exception as e:  # noqa: BLE001 - warnings never fail a completed run
            _logger.error("sync:budget_check_failed error=%s: %s", e.__class__.__name__, e)

    # ---- Run -------------------------------------------------------------

    def _emit(self, progress: SyncProgress, on_progress: ProgressCallback | None) -> None:
        self.progress = progress
        if on_progress is not None:
            try:
                on_progress(progress)
            except Exception as e:  # noqa: BLE001 - observers must not break the run
                _logger.warning("sync:progress_observer_failed error=%s", e.__class__.__name__)

    def _finish(
        self,
        state: SyncState,
        persisted: list[Expense],
        error: BaseException | None = None,
    ) -> SyncResult:
        self.state = state
        result = SyncResult(
            state=state, progress=self.progress, persisted=tuple(persisted), error=error
        )
        _logger.info(
            "sync:finished state=%s total=%d current=%d skipped=%d persisted=%d",
            state.value,
            self.progress.total,
            self.progress.current,
            self.progress.skipped,
            len(persisted),
        )
        return result

    def run(
        self,
        *,
        cancel_event: threading.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Execute one run and return its terminal result.

        Never raises for pipeline errors; fatal ones come back as a ``FAILED``
        result carrying ``error``. Raises ``RuntimeError`` if called while
        another run on this orchestrator is active.
        """

        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("a sync run is already active on this orchestrator")
        try:
            return self._run(cancel_event or threading.Event(), on_progress)
        finally:
            self._run_lock.release()

    def _run(
        self, cancel_event: threading.Event, on_progress: ProgressCallback | None
    ) -> SyncResult:
        self.state = SyncState.RUNNING
        self.progress = SyncProgress()
        persisted: list[Expense] = []
        now = ensure_aware(self._clock())
        t_run = time.perf_counter()

        try:
            start = self._start_date(now)
            candidates = self._candidates(start, now)
        except (MessagePermissionError, SyncPreconditionError) as e:
            _logger.error("sync:precondition_failed error=%s", e)
            return self._finish(SyncState.FAILED, persisted, e)

        total = len(candidates)
        _logger.info("sync:start candidates=%d since=%s", total, start.isoformat())
        self._emit(
            SyncProgress(total=total, current=0, message=_progress_message(0, total)), on_progress
        )

        for index, message in enumerate(candidates):
            if cancel_event.is_set():
                return self._finish(SyncState.CANCELLED, persisted)
            if index > 0:
                # Fixed spacing between consecutive extraction calls.
                self._sleep(self._config.base_delay_s)
                if cancel_event.is_set():
                    return self._finish(SyncState.CANCELLED, persisted)

            try:
                draft = self._extract_with_retry(message, cancel_event)
            except SyncCancelled:
                return self._finish(SyncState.CANCELLED, persisted)
            except ExpenseParseError as e:
                _logger.warning(
                    "sync:item_parse_failed index=%d message_id=%s error=%s", index, message.id, e
                )
                self._emit(replace(self.progress, skipped=self.progress.skipped + 1), on_progress)
                continue
            except AIServiceError as e:
                if e.fatal:
                    _logger.error(
                        "sync:fatal index=%d message_id=%s kind=%s", index, message.id, e.kind.value
                    )
                    return self._finish(SyncState.FAILED, persisted, e)
                _logger.warning(
                    "sync:item_failed index=%d message_id=%s kind=%s",
                    index,
                    message.id,
                    e.kind.value,
                )
                self._emit(replace(self.progress, skipped=self.progress.skipped + 1), on_progress)
                continue

            if cancel_event.is_set():
                # Extracted but not stored: the item is dropped and picked up next run.
                return self._finish(SyncState.CANCELLED, persisted)

            try:
                stored = self._store.insert_expense(Expense.from_draft(draft, message))
            except Exception as e:  # noqa: BLE001 - a failed write only loses this item
                _logger.error(
                    "sync:item_persist_failed index=%d message_id=%s error=%s: %s",
                    index,
                    message.id,
                    e.__class__.__name__,
                    e,
                )
                self._emit(replace(self.progress, skipped=self.progress.skipped + 1), on_progress)
                continue

            if stored is None:
                _logger.info("sync:item_duplicate index=%d message_id=%s", index, message.id)
            else:
                persisted.append(stored)
                self._after_persist(stored)

            current = self.progress.current + 1
            self._emit(
                replace(self.progress, current=current, message=_progress_message(current, total)),
                on_progress,
            )

        self._check_budget(now)
        _logger.info("sync:run_done latency_ms=%.2f", (time.perf_counter() - t_run) * 1000.0)
        return self._finish(SyncState.COMPLETED, persisted)


class SyncManager:
    """Runs syncs on a single background worker.

    - ``request_sync(KEEP)`` while a run is active or queued returns that run's
      future instead of starting another one.
    - ``request_sync(REPLACE)`` cancels the active run and queues a fresh one.
    - A ``FAILED`` run is retried wholesale, up to ``config.max_run_attempts``,
      with exponential backoff; precondition failures are not retried.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        config: SyncConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._config = config or SyncConfig()
        self._on_progress = on_progress
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=SYNC_WORK_NAME)
        self._lock = threading.Lock()
        self._future: Future[SyncResult] | None = None
        self._cancel_event = threading.Event()
        self.last_result: SyncResult | None = None

    @property
    def state(self) -> SyncState:
        with self._lock:
            if self._future is not None and not self._future.done():
                return SyncState.RUNNING
        if self.last_result is None:
            return SyncState.IDLE
        return self.last_result.state

    @property
    def progress(self) -> SyncProgress:
        return self._orchestrator.progress

    def request_sync(self, policy: EnqueuePolicy = EnqueuePolicy.KEEP) -> Future[SyncResult]:
        with self._lock:
            active = self._future
            if active is not None and not active.done():
                if policy is EnqueuePolicy.KEEP:
                    _logger.info("sync:request_coalesced name=%s", SYNC_WORK_NAME)
                    return active
                _logger.info("sync:request_replace name=%s", SYNC_WORK_NAME)
                self._cancel_event.set()
                active.cancel()
            cancel_event = threading.Event()
            self._cancel_event = cancel_event
            self._future = self._executor.submit(self._job, cancel_event)
            return self._future

    def cancel(self) -> None:
        with self._lock:
            self._cancel_event.set()

    def wait(self, timeout: float | None = None) -> SyncResult | None:
        with self._lock:
            future = self._future
        if future is None:
            return self.last_result
        return future.result(timeout=timeout)

    def shutdown(self, *, cancel: bool = True) -> None:
        if cancel:
            self.cancel()
        self._executor.shutdown(wait=True)

    def _job(self, cancel_event: threading.Event) -> SyncResult:
        attempts = self._config.max_run_attempts
        result = self._orchestrator.run(cancel_event=cancel_event, on_progress=self._on_progress)
        for attempt in range(1, attempts):
            if result.state is not SyncState.FAILED:
                break
            if isinstance(result.error, (MessagePermissionError, SyncPreconditionError)):
                break
            delay_s = self._config.run_retry_backoff_s * (2 ** (attempt - 1))
            _logger.warning(
                "sync:run_retry attempt=%d backoff_s=%.2f error=%s",
                attempt,
                delay_s,
                result.error.__class__.__name__,
            )
            if cancel_event.wait(delay_s):
                result = SyncResult(state=SyncState.CANCELLED, progress=result.progress)
                break
            result = self._orchestrator.run(
                cancel_event=cancel_event, on_progress=self._on_progress
            )
        self.last_result = result
        return result


def on_inbound_message(
    manager: SyncManager, message: CandidateMessage, *, bank_names: tuple[str, ...]
) -> bool:
    """Request a (coalesced) sync when ``message`` comes from a known bank."""

    address = message.address.casefold()
    if not any(name.casefold() in address for name in bank_names):
        return False
    manager.request_sync(EnqueuePolicy.KEEP)
    return True


__all__ = [
    "SYNC_WORK_NAME",
    "SyncCancelled",
    "SyncManager",
    "SyncOrchestrator",
    "on_inbound_message",
]
