"""Generative AI channel used by extraction and chat.

:class:`OpenAIService` talks to the OpenAI Responses API. Every SDK failure is
re-raised as :class:`~expense_sync.errors.AIServiceError` so callers only deal
with the closed error taxonomy. Rate limiting is the caller's job; this module
performs exactly one HTTP request per call.
"""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from openai import OpenAI
from openai.types.responses import ResponseTextConfigParam

from .config import DEFAULT_AI_MODEL, DEFAULT_AI_TEMPERATURE
from .errors import AIErrorKind, AIServiceError, to_ai_error
from .logging_setup import get_logger
from .models import ChatMessage

_EXTRACT_INSTRUCTIONS = (
    "You extract a single expense from a bank transaction SMS. Read the sender, body "
    "and date, then fill every field of the JSON schema. Use the currency code printed "
    "in the message. Pick the closest category; use OTHERS when unsure. Mark "
    "recurringType only when the message says the charge is a subscription or "
    "standing order. Output JSON only."
)

_CHAT_INSTRUCTIONS = (
    "You are a personal finance assistant. Answer briefly and concretely using the "
    "user's spending context below. If the context does not contain the answer, say so."
)

_logger = get_logger("expense_sync.ai_service")


class GenerativeAIService(Protocol):
    def extract(self, prompt_text: str, response_schema: Mapping[str, Any]) -> str: ...

    def chat(self, history: Sequence[ChatMessage], message: str, context: str = "") -> str: ...


def _create_client() -> OpenAI:
    return OpenAI()


def _response_text(resp: Any) -> str:
    """Return the text payload of a Responses API result.

    Prefers ``resp.output_text`` and falls back to walking ``resp.output``. An
    incomplete response or a refusal is classified instead of returned.
    """

    status = getattr(resp, "status", None)
    if status == "incomplete":
        details = getattr(resp, "incomplete_details", None)
        reason = getattr(details, "reason", None)
        if reason == "content_filter":
            raise AIServiceError(AIErrorKind.PROMPT_BLOCKED, "response blocked by content filter")
        raise AIServiceError(AIErrorKind.RESPONSE_STOPPED, f"response incomplete: {reason}")
    if status == "failed":
        err = getattr(resp, "error", None)
        raise AIServiceError(AIErrorKind.SERVER, f"response failed: {getattr(err, 'message', err)}")

    text: str | None = getattr(resp, "output_text", None)
    if text:
        return text
    for item in getattr(resp, "output", None) or ():
        for part in getattr(item, "content", None) or ():
            refusal = getattr(part, "refusal", None)
            if isinstance(refusal, str) and refusal:
                raise AIServiceError(AIErrorKind.PROMPT_BLOCKED, refusal)
            txt = getattr(part, "text", None)
            if isinstance(txt, str) and txt:
                return txt
    raise AIServiceError(
        AIErrorKind.SERIALIZATION, "unexpected Responses API shape; no text output"
    )


class OpenAIService:
    """:class:`GenerativeAIService` over ``OpenAI().responses.create``.

    The client is created lazily on first use so that constructing the service
    never reads credentials.
    """

    def __init__(
        self,
        *,
        model: str = DEFAULT_AI_MODEL,
        temperature: float = DEFAULT_AI_TEMPERATURE,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = _create_client()
            except Exception as e:  # noqa: BLE001 - missing key surfaces as OpenAIError
                raise AIServiceError(AIErrorKind.INVALID_CREDENTIALS, str(e)) from e
        return self._client

    def _create(self, *, op: str, **kwargs: Any) -> str:
        client = self._get_client()
        t0 = time.perf_counter()
        try:
            resp = client.responses.create(
                model=self.model, temperature=self.temperature, **kwargs
            )
        except Exception as e:  # noqa: BLE001 - classified below
            err = to_ai_error(e)
            _logger.warning(
                "ai_service:%s_error kind=%s latency_ms=%.2f",
                op,
                err.kind.value,
                (time.perf_counter() - t0) * 1000.0,
            )
            raise err from e
        text = _response_text(resp)
        _logger.debug(
            "ai_service:%s_done latency_ms=%.2f chars=%d",
            op,
            (time.perf_counter() - t0) * 1000.0,
            len(text),
        )
        return text

    def extract(self, prompt_text: str, response_schema: Mapping[str, Any]) -> str:
        fmt: Any = dict(response_schema)
        text_cfg = ResponseTextConfigParam(format=fmt)
        return self._create(
            op="extract",
            instructions=_EXTRACT_INSTRUCTIONS,
            input=prompt_text,
            text=text_cfg,
        )

    def chat(self, history: Sequence[ChatMessage], message: str, context: str = "") -> str:
        turns: list[dict[str, str]] = [
            {"role": "user" if m.is_from_user else "assistant", "content": m.text}
            for m in history
        ]
        turns.append({"role": "user", "content": message})
        instructions = _CHAT_INSTRUCTIONS
        if context:
            instructions = f"{instructions}\n\n{context}"
        return self._create(op="chat", instructions=instructions, input=turns)


__all__ = ["GenerativeAIService", "OpenAIService"]
