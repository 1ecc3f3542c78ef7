# ruff: noqa: E402, I001
from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from expense_sync.config import SyncConfig
from expense_sync.errors import AIErrorKind, AIServiceError, MessagePermissionError
from expense_sync.extraction import ExpenseExtractor
from expense_sync.messages import InMemoryMessageStore
from expense_sync.models import EnqueuePolicy, SyncProgress, SyncState
from expense_sync.persistence import SqlExpenseStore
from expense_sync.rate_limit import SlidingWindowRateLimiter
from expense_sync.services import build_services
from expense_sync.sync import SyncManager, SyncOrchestrator, on_inbound_message

from tests.helpers.db import make_expense, seed_expenses
from tests.helpers.fakes import FakeClock, bank_message
from tests.helpers.openai_stub import ScriptedAIService, expense_json


def _messages(clock: FakeClock, n: int = 3):
    base = clock.now() - timedelta(days=5)
    return [bank_message(f"m{i}", base + timedelta(hours=i)) for i in range(1, n + 1)]


def _build(
    database_url: str,
    clock: FakeClock,
    service: ScriptedAIService,
    messages,
    *,
    config: SyncConfig | None = None,
    granted: bool = True,
):
    cfg = config or SyncConfig()
    store = SqlExpenseStore(database_url=database_url)
    inbox = InMemoryMessageStore(messages, granted=granted)
    limiter = SlidingWindowRateLimiter(
        cfg.max_requests, cfg.window_ms, clock=clock.ms, sleep=clock.sleep
    )
    orch = SyncOrchestrator(
        messages=inbox,
        extractor=ExpenseExtractor(service),
        store=store,
        limiter=limiter,
        config=cfg,
        clock=clock.now,
        sleep=clock.sleep,
    )
    return orch, store, inbox


def _all_expenses(store: SqlExpenseStore, clock: FakeClock):
    return store.list_expenses(clock.now() - timedelta(days=400), clock.now())


# ---- Orchestrator --------------------------------------------------------------


def test_three_valid_messages_are_all_persisted(database_url: str):
    clock = FakeClock()
    msgs = _messages(clock)
    service = ScriptedAIService({m.id: [expense_json(10 * i)] for i, m in enumerate(msgs, 1)})
    orch, store, _ = _build(database_url, clock, service, msgs)
    seen: list[SyncProgress] = []

    result = orch.run(on_progress=seen.append)

    assert result.state is SyncState.COMPLETED
    assert orch.state is SyncState.COMPLETED
    assert [e.amount for e in result.persisted] == [10, 20, 30]
    assert [e.payment_date for e in result.persisted] == [m.sent_at for m in msgs]
    assert [p.current for p in seen] == [0, 1, 2, 3]
    assert {p.total for p in seen} == {3}
    assert result.progress.message == "Syncing expenses... 3 / 3"
    assert len(service.extract_calls) == 3
    # Fixed spacing between consecutive calls only; the limiter never waited.
    assert clock.sleeps == [2.5, 2.5]
    assert len(_all_expenses(store, clock)) == 3


def test_malformed_answer_skips_only_that_message(database_url: str):
    clock = FakeClock()
    msgs = _messages(clock)
    service = ScriptedAIService({"m2": ["the model rambled instead of JSON"]})
    orch, store, _ = _build(database_url, clock, service, msgs)

    result = orch.run()

    assert result.state is SyncState.COMPLETED
    assert [e.source_message_id for e in result.persisted] == ["m1", "m3"]
    assert result.progress.current == 2
    assert result.progress.skipped == 1
    assert len(service.extract_calls) == 3


def test_permission_denied_fails_without_ai_calls(database_url: str):
    clock = FakeClock()
    service = ScriptedAIService()
    orch, _, _ = _build(database_url, clock, service, _messages(clock), granted=False)

    result = orch.run()

    assert result.state is SyncState.FAILED
    assert isinstance(result.error, MessagePermissionError)
    assert service.extract_calls == []


def test_invalid_credentials_fail_the_run_immediately(database_url: str):
    clock = FakeClock()
    service = ScriptedAIService(
        {"m1": [AIServiceError(AIErrorKind.INVALID_CREDENTIALS, "bad key")]}
    )
    orch, store, _ = _build(database_url, clock, service, _messages(clock))

    result = orch.run()

    assert result.state is SyncState.FAILED
    assert isinstance(result.error, AIServiceError)
    assert result.error.kind is AIErrorKind.INVALID_CREDENTIALS
    assert len(service.extract_calls) == 1
    assert _all_expenses(store, clock) == []


def test_quota_error_is_retried_with_backoff(database_url: str):
    clock = FakeClock()
    msgs = _messages(clock, 1)
    service = ScriptedAIService(
        {"m1": [AIServiceError(AIErrorKind.QUOTA_EXCEEDED), expense_json(7)]}
    )
    orch, _, _ = _build(database_url, clock, service, msgs)

    result = orch.run()

    assert result.state is SyncState.COMPLETED
    assert [e.amount for e in result.persisted] == [7]
    assert len(service.extract_calls) == 2
    assert clock.sleeps == [2.5]


def test_retries_are_bounded_then_item_is_skipped(database_url: str):
    clock = FakeClock()
    msgs = _messages(clock, 2)
    service = ScriptedAIService({"m1": [AIServiceError(AIErrorKind.SERVER)]})
    orch, _, _ = _build(database_url, clock, service, msgs)

    result = orch.run()

    assert result.state is SyncState.COMPLETED
    assert result.progress.skipped == 1
    assert [e.source_message_id for e in result.persisted] == ["m2"]
    # 1 attempt + 3 retries for m1, then one call for m2.
    assert len(service.extract_calls) == 5
    assert clock.sleeps == [2.5, 5.0, 10.0, 2.5]


def test_non_retryable_error_skips_without_retry(database_url: str):
    clock = FakeClock()
    service = ScriptedAIService({"m1": [AIServiceError(AIErrorKind.PROMPT_BLOCKED)]})
    orch, _, _ = _build(database_url, clock, service, _messages(clock, 1))

    result = orch.run()

    assert result.state is SyncState.COMPLETED
    assert result.progress.skipped == 1
    assert len(service.extract_calls) == 1


def test_cancel_mid_item_drops_the_unpersisted_result(database_url: str):
    clock = FakeClock()
    cancel = threading.Event()

    def _on_call(msg_id: str) -> None:
        if msg_id == "m2":
            cancel.set()

    service = ScriptedAIService(on_call=_on_call)
    orch, store, _ = _build(database_url, clock, service, _messages(clock))

    result = orch.run(cancel_event=cancel)

    assert result.state is SyncState.CANCELLED
    assert [e.source_message_id for e in result.persisted] == ["m1"]
    assert len(service.extract_calls) == 2
    assert len(_all_expenses(store, clock)) == 1


def test_second_run_resumes_after_last_synced_message(database_url: str):
    clock = FakeClock()
    msgs = _messages(clock)
    service = ScriptedAIService()
    orch, store, inbox = _build(database_url, clock, service, msgs)
    assert orch.run().state is SyncState.COMPLETED

    clock.advance(minutes=5)
    result = orch.run()

    assert result.state is SyncState.COMPLETED
    assert result.progress.total == 0
    assert len(service.extract_calls) == 3
    assert len(_all_expenses(store, clock)) == 3
    assert inbox.queries[-1].start == msgs[-1].sent_at + timedelta(seconds=1)


def test_already_synced_message_is_not_stored_twice(database_url: str):
    clock = FakeClock()
    msgs = _messages(clock, 2)
    # m2 is already stored, but with an older payment date than m1, so the
    # resume cursor still selects it.
    seed_expenses(
        database_url,
        [make_expense(payment_date=msgs[0].sent_at - timedelta(days=1), source_message_id="m2")],
    )
    orch, store, _ = _build(database_url, clock, ScriptedAIService(), msgs)

    result = orch.run()

    assert result.state is SyncState.COMPLETED
    assert [e.source_message_id for e in result.persisted] == ["m1"]
    assert result.progress.current == 2
    assert len(_all_expenses(store, clock)) == 2


def test_candidate_selection_filters_and_caps_oldest_first(database_url: str):
    clock = FakeClock()
    now = clock.now()
    msgs = [
        bank_message("old", now - timedelta(days=45)),
        bank_message("otp", now - timedelta(days=3), text="Your OTP for purchase is 1234"),
        bank_message("other", now - timedelta(days=3), address="Ooredoo"),
        bank_message("a", now - timedelta(days=4)),
        bank_message("b", now - timedelta(days=2)),
        bank_message("c", now - timedelta(days=1)),
    ]
    service = ScriptedAIService()
    orch, _, _ = _build(
        database_url, clock, service, msgs, config=SyncConfig(max_items_per_run=2)
    )

    result = orch.run()

    assert [e.source_message_id for e in result.persisted] == ["a", "b"]
    assert result.progress.total == 2


def test_rate_limiter_gates_every_extraction(database_url: str):
    clock = FakeClock()
    cfg = SyncConfig(max_requests=2, window_ms=60_000, base_delay_ms=0)
    orch, _, _ = _build(database_url, clock, ScriptedAIService(), _messages(clock), config=cfg)

    result = orch.run()

    assert result.state is SyncState.COMPLETED
    assert clock.sleeps == [0.0, 0.0, pytest.approx(60.0)]


def test_run_is_not_reentrant(database_url: str):
    clock = FakeClock()
    inner: list[BaseException] = []
    holder: dict[str, SyncOrchestrator] = {}

    def _on_call(_msg_id: str) -> None:
        try:
            holder["orch"].run()
        except RuntimeError as e:
            inner.append(e)

    orch, _, _ = _build(
        database_url, clock, ScriptedAIService(on_call=_on_call), _messages(clock, 1)
    )
    holder["orch"] = orch

    assert orch.run().state is SyncState.COMPLETED
    assert len(inner) == 1


# ---- Manager -------------------------------------------------------------------


class _GatedService(ScriptedAIService):
    """Blocks the first extraction until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = threading.Event()
        self.entered = threading.Event()

    def extract(self, prompt_text, response_schema):
        self.entered.set()
        assert self.gate.wait(timeout=10)
        return super().extract(prompt_text, response_schema)


def test_keep_policy_coalesces_requests(database_url: str):
    clock = FakeClock()
    service = _GatedService()
    orch, store, _ = _build(database_url, clock, service, _messages(clock))
    manager = SyncManager(orch)
    try:
        first = manager.request_sync()
        assert service.entered.wait(timeout=10)
        assert manager.state is SyncState.RUNNING

        second = manager.request_sync(EnqueuePolicy.KEEP)
        assert second is first

        service.gate.set()
        result = manager.wait(timeout=10)
    finally:
        manager.shutdown(cancel=False)

    assert result is not None and result.state is SyncState.COMPLETED
    assert manager.state is SyncState.COMPLETED
    assert len(service.extract_calls) == 3
    assert len(_all_expenses(store, clock)) == 3


def test_services_share_one_manager_so_requests_join_the_active_run(database_url: str):
    clock = FakeClock()
    service = _GatedService()
    services = build_services(
        config=SyncConfig(),
        database_url=database_url,
        ai=service,
        messages=InMemoryMessageStore(_messages(clock)),
        clock=clock.now,
        sleep=clock.sleep,
    )
    manager = services.sync_manager
    try:
        first = manager.request_sync()
        assert service.entered.wait(timeout=10)

        # A second caller reaching for the manager gets the same worker.
        second = services.sync_manager.request_sync()
        assert second is first

        service.gate.set()
        result = first.result(timeout=10)
    finally:
        manager.shutdown(cancel=False)

    assert result.state is SyncState.COMPLETED
    assert len(service.extract_calls) == 3


def test_replace_policy_cancels_active_run_and_starts_fresh(database_url: str):
    clock = FakeClock()
    service = _GatedService()
    orch, store, _ = _build(database_url, clock, service, _messages(clock))
    manager = SyncManager(orch)
    try:
        first = manager.request_sync()
        assert service.entered.wait(timeout=10)

        second = manager.request_sync(EnqueuePolicy.REPLACE)
        assert second is not first

        service.gate.set()
        first_result = first.result(timeout=10)
        second_result = second.result(timeout=10)
    finally:
        manager.shutdown(cancel=False)

    assert first_result.state is SyncState.CANCELLED
    assert first_result.persisted == ()
    assert second_result.state is SyncState.COMPLETED
    assert len(_all_expenses(store, clock)) == 3


def test_failed_run_is_retried_wholesale(database_url: str):
    clock = FakeClock()
    service = ScriptedAIService(
        {"m1": [AIServiceError(AIErrorKind.INVALID_CREDENTIALS), expense_json(5)]}
    )
    orch, _, _ = _build(database_url, clock, service, _messages(clock, 1))
    manager = SyncManager(orch, config=SyncConfig(run_retry_backoff_s=0.0))
    try:
        manager.request_sync()
        result = manager.wait(timeout=10)
    finally:
        manager.shutdown()

    assert result is not None and result.state is SyncState.COMPLETED
    assert len(service.extract_calls) == 2


def test_wholesale_retries_stop_after_configured_attempts(database_url: str):
    clock = FakeClock()
    service = ScriptedAIService({"m1": [AIServiceError(AIErrorKind.INVALID_CREDENTIALS)]})
    orch, _, _ = _build(database_url, clock, service, _messages(clock, 1))
    cfg = SyncConfig(run_retry_backoff_s=0.0, max_run_attempts=2)
    manager = SyncManager(orch, config=cfg)
    try:
        manager.request_sync()
        result = manager.wait(timeout=10)
    finally:
        manager.shutdown()

    assert result is not None and result.state is SyncState.FAILED
    assert manager.last_result is result
    assert len(service.extract_calls) == 2


def test_permission_failure_is_not_retried(database_url: str):
    clock = FakeClock()
    service = ScriptedAIService()
    orch, _, inbox = _build(database_url, clock, service, _messages(clock), granted=False)
    manager = SyncManager(orch, config=SyncConfig(run_retry_backoff_s=0.0))
    try:
        manager.request_sync()
        result = manager.wait(timeout=10)
    finally:
        manager.shutdown()

    assert result is not None and result.state is SyncState.FAILED
    assert isinstance(result.error, MessagePermissionError)
    assert service.extract_calls == []


def test_inbound_bank_message_triggers_a_coalesced_sync(database_url: str):
    clock = FakeClock()
    orch, _, _ = _build(database_url, clock, ScriptedAIService(), [])
    manager = SyncManager(orch)
    requested: list[EnqueuePolicy] = []
    real = manager.request_sync

    def _spy(policy: EnqueuePolicy = EnqueuePolicy.KEEP):
        requested.append(policy)
        return real(policy)

    manager.request_sync = _spy  # type: ignore[method-assign]
    try:
        banks = ("QNB", "Doha Bank")
        assert on_inbound_message(manager, bank_message("x", clock.now()), bank_names=banks)
        assert not on_inbound_message(
            manager, bank_message("y", clock.now(), address="Ooredoo"), bank_names=banks
        )
        manager.wait(timeout=10)
    finally:
        manager.shutdown()

    assert requested == [EnqueuePolicy.KEEP]


def test_manager_before_any_run_is_idle(database_url: str):
    clock = FakeClock()
    orch, _, _ = _build(database_url, clock, ScriptedAIService(), [])
    manager = SyncManager(orch)
    try:
        assert manager.state is SyncState.IDLE
        assert manager.wait() is None
        assert isinstance(manager.progress, SyncProgress)
    finally:
        manager.shutdown()


