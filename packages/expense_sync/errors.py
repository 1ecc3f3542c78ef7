"""Error taxonomy for the sync pipeline.

Provider failures are folded into one exception type, :class:`AIServiceError`,
tagged with an :class:`AIErrorKind`. Callers branch on ``exc.kind`` (or the
``retryable`` / ``fatal`` properties) instead of on SDK exception classes, so
swapping or upgrading the AI client only touches :func:`to_ai_error`.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

import openai


class AIErrorKind(StrEnum):
    SERIALIZATION = "serialization"
    SERVER = "server"
    INVALID_CREDENTIALS = "invalid_credentials"
    PROMPT_BLOCKED = "prompt_blocked"
    UNSUPPORTED_REGION = "unsupported_region"
    INVALID_STATE = "invalid_state"
    RESPONSE_STOPPED = "response_stopped"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"


_RETRYABLE: frozenset[AIErrorKind] = frozenset(
    {
        AIErrorKind.QUOTA_EXCEEDED,
        AIErrorKind.TIMEOUT,
        AIErrorKind.SERVER,
        AIErrorKind.RESPONSE_STOPPED,
    }
)

_FATAL: frozenset[AIErrorKind] = frozenset(
    {
        AIErrorKind.INVALID_CREDENTIALS,
        AIErrorKind.UNSUPPORTED_REGION,
    }
)

# Error codes the provider uses for blocked prompts and geo restrictions.
_BLOCKED_CODES: frozenset[str] = frozenset(
    {"content_policy_violation", "content_filter", "invalid_prompt"}
)
_REGION_CODES: frozenset[str] = frozenset({"unsupported_country_region_territory"})


class AIServiceError(Exception):
    """A classified failure from the generative AI provider."""

    def __init__(self, kind: AIErrorKind, message: str = "", *, status_code: int | None = None):
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE

    @property
    def fatal(self) -> bool:
        return self.kind in _FATAL

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"AIServiceError(kind={self.kind.value!r}, message={str(self)!r})"


class ExpenseParseError(ValueError):
    """The extraction response could not be decoded into an expense."""

    def __init__(self, message: str, *, message_id: str | None = None, raw: str | None = None):
        super().__init__(message)
        self.message_id = message_id
        self.raw = raw


class MessagePermissionError(PermissionError):
    """The message store refused read access."""


class SyncPreconditionError(RuntimeError):
    """A sync cannot start (missing grant, misconfiguration)."""


def _error_code(exc: BaseException) -> str | None:
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict):
            c = inner.get("code") or inner.get("type")
            if isinstance(c, str):
                return c
    return None


def _kind_for_status(status: int, code: str | None) -> AIErrorKind:
    if status == 401:
        return AIErrorKind.INVALID_CREDENTIALS
    if status == 403:
        if code in _REGION_CODES:
            return AIErrorKind.UNSUPPORTED_REGION
        return AIErrorKind.INVALID_CREDENTIALS
    if status == 408:
        return AIErrorKind.TIMEOUT
    if status == 429:
        return AIErrorKind.QUOTA_EXCEEDED
    if 500 <= status < 600:
        return AIErrorKind.SERVER
    if status == 400 and code in _BLOCKED_CODES:
        return AIErrorKind.PROMPT_BLOCKED
    if 400 <= status < 500:
        return AIErrorKind.INVALID_STATE
    return AIErrorKind.UNKNOWN


def to_ai_error(exc: BaseException) -> AIServiceError:
    """Classify any exception raised while talking to the provider.

    Already-classified errors pass through unchanged. SDK exceptions are
    mapped by type first and by HTTP status second; anything carrying a
    ``status_code`` attribute is classified by status even when it is not an
    SDK type.
    """

    if isinstance(exc, AIServiceError):
        return exc
    # APITimeoutError subclasses APIConnectionError; check it first.
    if isinstance(exc, openai.APITimeoutError):
        return AIServiceError(AIErrorKind.TIMEOUT, str(exc))
    if isinstance(exc, openai.APIConnectionError):
        return AIServiceError(AIErrorKind.SERVER, str(exc))
    if isinstance(exc, TimeoutError):
        return AIServiceError(AIErrorKind.TIMEOUT, str(exc))
    if isinstance(exc, (json.JSONDecodeError, openai.APIResponseValidationError)):
        return AIServiceError(AIErrorKind.SERIALIZATION, str(exc))

    status: Any = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return AIServiceError(
            _kind_for_status(status, _error_code(exc)), str(exc), status_code=status
        )
    return AIServiceError(AIErrorKind.UNKNOWN, f"{exc.__class__.__name__}: {exc}")


__all__ = [
    "AIErrorKind",
    "AIServiceError",
    "ExpenseParseError",
    "MessagePermissionError",
    "SyncPreconditionError",
    "to_ai_error",
]
