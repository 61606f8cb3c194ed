"""
Turn untrusted classifier output into a fully populated Classification.

The model is a best-effort text generator, so nothing it returns is trusted:
- pull a text payload out of the envelope (or serialize the envelope),
- parse it as one JSON object,
- accept `sentiment` / `theme` only on an exact (stripped) enum match,
- fall back to DEFAULT_SENTIMENT / DEFAULT_THEME field by field.

`normalize()` never raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar, Union

from .classifier import RawResponse
from .schemas import DEFAULT_SENTIMENT, DEFAULT_THEME, Classification, Sentiment, Theme

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

_LOG_PAYLOAD_CHARS = 300


@dataclass(frozen=True)
class Valid:
    classification: Classification


@dataclass(frozen=True)
class Defaulted:
    classification: Classification
    reason: str


NormalizedResult = Union[Valid, Defaulted]


def extract_text(raw: RawResponse) -> str:
    if isinstance(raw, str):
        return raw

    if isinstance(raw, dict):
        # Workers-AI style text models.
        response = raw.get("response")
        if isinstance(response, str):
            return response
        # Ollama /api/chat.
        message = raw.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]

    try:
        return json.dumps(raw)
    except (TypeError, ValueError):
        return str(raw)


def _match(enum_cls: type[E], value: Any) -> E | None:
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    for member in enum_cls:
        if member.value == candidate:
            return member
    return None


def normalize_result(raw: RawResponse) -> NormalizedResult:
    text = extract_text(raw)
    default = Classification(sentiment=DEFAULT_SENTIMENT, theme=DEFAULT_THEME)

    try:
        parsed = json.loads(text)
    except (TypeError, ValueError, RecursionError):
        return Defaulted(default, "unparseable")

    if not isinstance(parsed, dict):
        return Defaulted(default, "not an object")

    sentiment = _match(Sentiment, parsed.get("sentiment"))
    theme = _match(Theme, parsed.get("theme"))
    classification = Classification(
        sentiment=sentiment or DEFAULT_SENTIMENT,
        theme=theme or DEFAULT_THEME,
    )

    problems = []
    if sentiment is None:
        problems.append("invalid sentiment")
    if theme is None:
        problems.append("invalid theme")
    if problems:
        return Defaulted(classification, ", ".join(problems))
    return Valid(classification)


def normalize(raw: RawResponse) -> Classification:
    result = normalize_result(raw)
    if isinstance(result, Defaulted):
        logger.warning(
            "classification_defaulted reason=%s sentiment=%s theme=%s payload=%r",
            result.reason,
            result.classification.sentiment.value,
            result.classification.theme.value,
            extract_text(raw)[:_LOG_PAYLOAD_CHARS],
        )
    return result.classification
