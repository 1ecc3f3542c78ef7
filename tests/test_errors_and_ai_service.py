# ruff: noqa: E402, I001
from __future__ import annotations

import json
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import httpx
import openai
import pytest

import expense_sync.ai_service as ai_service_mod
from expense_sync.ai_service import OpenAIService
from expense_sync.config import SyncConfig
from expense_sync.errors import AIErrorKind, AIServiceError, to_ai_error
from expense_sync.extraction import build_response_format
from expense_sync.models import ChatMessage

from tests.helpers.openai_stub import OpenAIStub, expense_json

_REQ = httpx.Request("POST", "https://api.openai.com/v1/responses")


def _status_error(status: int, code: str | None = None) -> openai.APIStatusError:
    body = {"message": "boom", "code": code} if code else None
    resp = httpx.Response(status, request=_REQ)
    cls: Any = {
        400: openai.BadRequestError,
        401: openai.AuthenticationError,
        403: openai.PermissionDeniedError,
        429: openai.RateLimitError,
        500: openai.InternalServerError,
    }.get(status, openai.APIStatusError)
    return cls(f"status {status}", response=resp, body=body)


# ---- Classification ----------------------------------------------------------


@pytest.mark.parametrize(
    "exc,kind",
    [
        (_status_error(401), AIErrorKind.INVALID_CREDENTIALS),
        (_status_error(403), AIErrorKind.INVALID_CREDENTIALS),
        (
            _status_error(403, "unsupported_country_region_territory"),
            AIErrorKind.UNSUPPORTED_REGION,
        ),
        (_status_error(408), AIErrorKind.TIMEOUT),
        (_status_error(429), AIErrorKind.QUOTA_EXCEEDED),
        (_status_error(500), AIErrorKind.SERVER),
        (_status_error(503), AIErrorKind.SERVER),
        (_status_error(400, "content_policy_violation"), AIErrorKind.PROMPT_BLOCKED),
        (_status_error(400), AIErrorKind.INVALID_STATE),
        (_status_error(404), AIErrorKind.INVALID_STATE),
        (openai.APITimeoutError(request=_REQ), AIErrorKind.TIMEOUT),
        (openai.APIConnectionError(request=_REQ), AIErrorKind.SERVER),
        (TimeoutError("slow"), AIErrorKind.TIMEOUT),
        (json.JSONDecodeError("bad", "x", 0), AIErrorKind.SERIALIZATION),
        (RuntimeError("???"), AIErrorKind.UNKNOWN),
    ],
)
def test_to_ai_error_classifies(exc: BaseException, kind: AIErrorKind):
    assert to_ai_error(exc).kind is kind


def test_classified_errors_pass_through_unchanged():
    err = AIServiceError(AIErrorKind.PROMPT_BLOCKED, "nope")

    assert to_ai_error(err) is err


def test_retryable_and_fatal_sets():
    retryable = {k for k in AIErrorKind if AIServiceError(k).retryable}
    fatal = {k for k in AIErrorKind if AIServiceError(k).fatal}

    assert retryable == {
        AIErrorKind.QUOTA_EXCEEDED,
        AIErrorKind.TIMEOUT,
        AIErrorKind.SERVER,
        AIErrorKind.RESPONSE_STOPPED,
    }
    assert fatal == {AIErrorKind.INVALID_CREDENTIALS, AIErrorKind.UNSUPPORTED_REGION}
    assert not retryable & fatal


# ---- OpenAIService -----------------------------------------------------------


def test_extract_calls_responses_api_with_json_schema():
    stub = OpenAIStub(expense_json(10))
    svc = OpenAIService(model="gpt-test", temperature=0.1, client=stub)

    out = svc.extract("Sender: QNB\nBody: hi\nDate: x", build_response_format())

    assert json.loads(out)["amount"] == 10
    (call,) = stub.calls
    assert call["model"] == "gpt-test"
    assert call["temperature"] == 0.1
    assert call["input"] == "Sender: QNB\nBody: hi\nDate: x"
    assert call["text"]["format"]["type"] == "json_schema"
    assert call["text"]["format"]["strict"] is True


def test_chat_maps_history_to_roles_and_appends_context():
    stub = OpenAIStub("Sure.")
    svc = OpenAIService(client=stub)
    ts = datetime(2025, 3, 1, tzinfo=UTC)
    history = [
        ChatMessage(text="hi", is_from_user=True, timestamp=ts),
        ChatMessage(text="hello", is_from_user=False, timestamp=ts),
    ]

    assert svc.chat(history, "how much on food?", "Total spending: 10.00") == "Sure."

    (call,) = stub.calls
    assert [t["role"] for t in call["input"]] == ["user", "assistant", "user"]
    assert call["input"][-1]["content"] == "how much on food?"
    assert call["instructions"].endswith("Total spending: 10.00")
    cfg = SyncConfig()
    assert (call["model"], call["temperature"]) == (cfg.ai_model, cfg.ai_temperature)


def test_sdk_errors_are_reraised_classified():
    def boom(_kwargs):
        raise _status_error(429)

    svc = OpenAIService(client=OpenAIStub(boom))

    with pytest.raises(AIServiceError) as ei:
        svc.extract("x", build_response_format())
    assert ei.value.kind is AIErrorKind.QUOTA_EXCEEDED
    assert ei.value.retryable


def test_missing_credentials_surface_as_invalid_credentials(monkeypatch: pytest.MonkeyPatch):
    def _no_key(*_a, **_kw):
        raise openai.OpenAIError("The api_key client option must be set")

    monkeypatch.setattr(ai_service_mod, "OpenAI", _no_key)

    with pytest.raises(AIServiceError) as ei:
        OpenAIService().extract("x", build_response_format())
    assert ei.value.kind is AIErrorKind.INVALID_CREDENTIALS
    assert ei.value.fatal


def test_client_is_created_lazily_once(monkeypatch: pytest.MonkeyPatch):
    created: list[OpenAIStub] = []

    def _factory(*_a, **_kw):
        stub = OpenAIStub("ok")
        created.append(stub)
        return stub

    monkeypatch.setattr(ai_service_mod, "OpenAI", _factory)
    svc = OpenAIService()
    assert created == []

    svc.chat([], "a")
    svc.chat([], "b")

    assert len(created) == 1
    assert len(created[0].calls) == 2


@pytest.mark.parametrize(
    "resp,kind",
    [
        (
            SimpleNamespace(
                status="incomplete",
                incomplete_details=SimpleNamespace(reason="max_output_tokens"),
                output_text="",
            ),
            AIErrorKind.RESPONSE_STOPPED,
        ),
        (
            SimpleNamespace(
                status="incomplete",
                incomplete_details=SimpleNamespace(reason="content_filter"),
                output_text="",
            ),
            AIErrorKind.PROMPT_BLOCKED,
        ),
        (
            SimpleNamespace(status="failed", error=SimpleNamespace(message="x"), output_text=""),
            AIErrorKind.SERVER,
        ),
        (
            SimpleNamespace(
                status="completed",
                output_text="",
                output=[SimpleNamespace(content=[SimpleNamespace(refusal="I can't help")])],
            ),
            AIErrorKind.PROMPT_BLOCKED,
        ),
        (
            SimpleNamespace(status="completed", output_text="", output=[]),
            AIErrorKind.SERIALIZATION,
        ),
    ],
)
def test_unusable_responses_are_classified(resp: Any, kind: AIErrorKind):
    svc = OpenAIService(client=OpenAIStub(lambda _kw: resp))

    with pytest.raises(AIServiceError) as ei:
        svc.chat([], "hi")
    assert ei.value.kind is kind


def test_text_is_read_from_output_parts_when_output_text_missing():
    resp = SimpleNamespace(
        status="completed",
        output=[SimpleNamespace(content=[SimpleNamespace(refusal=None, text="from parts")])],
    )
    svc = OpenAIService(client=OpenAIStub(lambda _kw: resp))

    assert svc.chat([], "hi") == "from parts"
