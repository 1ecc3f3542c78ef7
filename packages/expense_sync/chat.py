"""Conversational Q&A over the user's spending.

The assistant shares the AI channel, the rate limiter and the error taxonomy
with extraction. Each exchange is persisted so the conversation survives
restarts; the model sees the last ``chat_history_depth`` messages plus a
context block summarizing the current month.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from .ai_service import GenerativeAIService
from .config import SyncConfig
from .dates import ensure_aware, month_info, month_key, utc_now
from .errors import AIErrorKind, AIServiceError
from .logging_setup import get_logger
from .models import ChatMessage, Expense
from .persistence import ExpenseStore
from .rate_limit import SlidingWindowRateLimiter

_logger = get_logger("expense_sync.chat")

_CONTEXT_HEADER = (
    "For the rest of the conversation, use the context below to answer questions "
    "about the user's spending. Amounts are in the user's local currency."
)


def build_context(
    store: ExpenseStore,
    now: datetime,
    *,
    top_n: int = 10,
    upcoming: list[Expense] | None = None,
) -> str:
    """Summarize the month containing ``now`` as plain text for the model."""

    month = month_info(now)
    total = store.total_spending(month.start, month.end)
    budget = store.get_budget(month_key(now))
    lines = [
        _CONTEXT_HEADER,
        "",
        f"Month: {month.start:%B %Y}",
        f"Total spending: {total:.2f}",
        f"Budget: {budget.amount:.2f}" if budget else "Budget: not set",
    ]
    categories = store.top_categories(month.start, month.end, top_n)
    if categories:
        lines.append("Top categories:")
        lines.extend(f"- {c.key}: {c.total:.2f} ({c.percentage:.1f}%)" for c in categories)
    merchants = store.top_merchants(month.start, month.end, top_n)
    if merchants:
        lines.append("Top merchants:")
        lines.extend(f"- {m.key}: {m.total:.2f} ({m.percentage:.1f}%)" for m in merchants)
    if upcoming:
        lines.append("Upcoming recurring payments:")
        lines.extend(
            f"- {e.merchant}: {e.amount:.2f} {e.currency.value} "
            f"({e.recurring_type.value.lower()}) on {e.next_recurring_date:%Y-%m-%d}"
            for e in upcoming
            if e.next_recurring_date is not None
        )
    return "\n".join(lines)


class ChatAssistant:
    def __init__(
        self,
        service: GenerativeAIService,
        store: ExpenseStore,
        limiter: SlidingWindowRateLimiter,
        *,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._service = service
        self._store = store
        self._limiter = limiter
        self._config = config or SyncConfig()
        self._clock = clock
        self._history: list[ChatMessage] = []
        self._context = ""
        self._initialized = False

    @property
    def history(self) -> list[ChatMessage]:
        return list(self._history)

    def initialize(self, *, upcoming: list[Expense] | None = None) -> list[ChatMessage]:
        """Load stored history and build the spending context. Returns the history."""

        now = ensure_aware(self._clock())
        self._history = self._store.recent_chat_messages(self._config.chat_history_depth)
        self._context = build_context(
            self._store, now, top_n=self._config.chat_top_n, upcoming=upcoming
        )
        self._initialized = True
        _logger.info("chat:initialized history=%d", len(self._history))
        return self.history

    def send_message(self, text: str) -> str:
        """Send one user message and return the assistant's reply.

        The user message is stored before the AI call so a failed call still
        leaves it in the transcript.
        """

        text = text.strip()
        if not text:
            raise ValueError("message must not be empty")
        if not self._initialized:
            self.initialize()

        user_msg = self._store.add_chat_message(
            ChatMessage(text=text, is_from_user=True, timestamp=ensure_aware(self._clock()))
        )
        self._limiter.admit()
        try:
            reply = self._service.chat(self._history, text, self._context).strip()
        finally:
            self._history.append(user_msg)
        if not reply:
            raise AIServiceError(AIErrorKind.INVALID_STATE, "empty reply from assistant")

        bot_msg = self._store.add_chat_message(
            ChatMessage(text=reply, is_from_user=False, timestamp=ensure_aware(self._clock()))
        )
        self._history.append(bot_msg)
        depth = self._config.chat_history_depth
        if len(self._history) > depth:
            self._history = self._history[-depth:]
        return reply


__all__ = ["ChatAssistant", "build_context"]
