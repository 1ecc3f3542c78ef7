"""Explicit wiring of the pipeline's collaborators.

Hosts (the CLI, tests, an embedding application) call :func:`build_services`
once and pass the returned objects around; nothing in the package keeps a
process-wide singleton except the database engine in ``db.client``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from .ai_service import GenerativeAIService, OpenAIService
from .budget import BudgetNotifier
from .chat import ChatAssistant
from .config import SyncConfig
from .dates import utc_now
from .extraction import ExpenseExtractor
from .messages import MessageStore, SqlMessageStore
from .notifications import LoggingNotificationSink, NotificationSink, ReminderDispatcher
from .persistence import SqlExpenseStore
from .rate_limit import SlidingWindowRateLimiter
from .recurring import RecurringDetector
from .scheduler import InMemoryTaskScheduler
from .sync import SyncManager, SyncOrchestrator


@dataclass(slots=True)
class Services:
    config: SyncConfig
    store: SqlExpenseStore
    messages: MessageStore
    limiter: SlidingWindowRateLimiter
    ai: GenerativeAIService
    scheduler: InMemoryTaskScheduler
    detector: RecurringDetector
    budget: BudgetNotifier
    orchestrator: SyncOrchestrator
    dispatcher: ReminderDispatcher
    chat: ChatAssistant
    # One manager per process so every request joins the same worker.
    sync_manager: SyncManager


def build_services(
    *,
    config: SyncConfig | None = None,
    database_url: str | None = None,
    ai: GenerativeAIService | None = None,
    messages: MessageStore | None = None,
    sink: NotificationSink | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
) -> Services:
    cfg = config or SyncConfig.from_env()
    store = SqlExpenseStore(database_url=database_url)
    msg_store = messages or SqlMessageStore(database_url=database_url)
    limiter = SlidingWindowRateLimiter(cfg.max_requests, cfg.window_ms, sleep=sleep)
    ai_service = ai or OpenAIService(model=cfg.ai_model, temperature=cfg.ai_temperature)
    scheduler = InMemoryTaskScheduler()
    detector = RecurringDetector(store, scheduler, config=cfg, clock=clock)
    budget = BudgetNotifier(scheduler, store=store, clock=clock)
    orchestrator = SyncOrchestrator(
        messages=msg_store,
        extractor=ExpenseExtractor(ai_service),
        store=store,
        limiter=limiter,
        config=cfg,
        detector=detector,
        budget=budget,
        clock=clock,
        sleep=sleep,
    )
    return Services(
        config=cfg,
        store=store,
        messages=msg_store,
        limiter=limiter,
        ai=ai_service,
        scheduler=scheduler,
        detector=detector,
        budget=budget,
        orchestrator=orchestrator,
        dispatcher=ReminderDispatcher(scheduler, sink or LoggingNotificationSink()),
        chat=ChatAssistant(ai_service, store, limiter, config=cfg, clock=clock),
        sync_manager=SyncManager(orchestrator, config=cfg),
    )


__all__ = ["Services", "build_services"]
