"""Expense extraction from one bank message.

This module builds:
- The fixed textual rendering of a :class:`CandidateMessage` sent to the model.
- The strict JSON Schema ``text.format`` object for the Responses API.
- A lenient decoder from the model's JSON to :class:`ExpenseDraft`.

:class:`ExpenseExtractor` ties them to a :class:`GenerativeAIService`. It makes
exactly one AI call per message; retries and throttling belong to the sync
orchestrator.
"""

from __future__ import annotations

import json
from typing import Any

from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)
from pydantic import ValidationError

from .ai_service import GenerativeAIService
from .dates import format_message_date
from .errors import ExpenseParseError
from .models import Category, CandidateMessage, Currency, ExpenseDraft, PaymentStatus, RecurringType

_SCHEMA_NAME = "bank_sms_expense"


def render_message(message: CandidateMessage) -> str:
    """Render a message as ``Sender/Body/Date`` lines."""

    return (
        f"Sender: {message.address}\n"
        f"Body: {message.body}\n"
        f"Date: {format_message_date(message.sent_at)}"
    )


def build_response_format() -> ResponseFormatTextJSONSchemaConfigParam:
    """Return the strict ``json_schema`` format for one expense object.

    Strict mode requires every property to be listed in ``required``; optional
    fields are therefore nullable instead of omitted, and the decoder applies
    defaults for ``null``.
    """

    schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "amount": {"type": "number", "description": "Amount charged, positive"},
            "currency": {"type": "string", "enum": [c.value for c in Currency]},
            "merchant": {
                "type": ["string", "null"],
                "description": "Merchant or payee name as printed in the message",
            },
            "category": {"type": "string", "enum": [c.value for c in Category]},
            "paymentStatus": {
                "type": ["string", "null"],
                "enum": [s.value for s in PaymentStatus] + [None],
            },
            "recurringType": {
                "type": ["string", "null"],
                "enum": [r.value for r in RecurringType] + [None],
            },
            "paymentDate": {
                "type": ["string", "null"],
                "description": "Payment date as ISO-8601 yyyy-MM-dd",
            },
        },
        "required": [
            "amount",
            "currency",
            "merchant",
            "category",
            "paymentStatus",
            "recurringType",
            "paymentDate",
        ],
        "additionalProperties": False,
    }
    return {
        "type": "json_schema",
        "name": _SCHEMA_NAME,
        "schema": schema,
        "strict": True,
    }


def parse_expense_json(raw: str, *, message_id: str | None = None) -> ExpenseDraft:
    """Decode the model output into an :class:`ExpenseDraft`.

    Unknown keys are ignored and out-of-vocabulary values fall back to
    defaults. Raises :class:`ExpenseParseError` when the text is not a JSON
    object or carries no usable amount.
    """

    try:
        decoded = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ExpenseParseError(
            f"model output is not valid JSON: {e}", message_id=message_id, raw=raw
        ) from e
    # Some models wrap the object in a one-element list.
    if isinstance(decoded, list) and len(decoded) == 1:
        decoded = decoded[0]
    if not isinstance(decoded, dict):
        raise ExpenseParseError(
            f"expected a JSON object, got {type(decoded).__name__}",
            message_id=message_id,
            raw=raw,
        )
    try:
        return ExpenseDraft.model_validate(decoded)
    except ValidationError as e:
        raise ExpenseParseError(
            f"invalid expense payload: {e.errors()[0].get('msg', e)}",
            message_id=message_id,
            raw=raw,
        ) from e


class ExpenseExtractor:
    """One message in, one :class:`ExpenseDraft` out."""

    def __init__(self, service: GenerativeAIService) -> None:
        self._service = service
        self._response_format = build_response_format()

    def extract(self, message: CandidateMessage) -> ExpenseDraft:
        """Extract an expense.

        Raises
        ------
        AIServiceError
            The provider call failed (classified).
        ExpenseParseError
            The provider answered but the answer is not a usable expense.
        """

        raw = self._service.extract(render_message(message), self._response_format)
        return parse_expense_json(raw, message_id=message.id)


__all__ = [
    "ExpenseExtractor",
    "build_response_format",
    "parse_expense_json",
    "render_message",
]
