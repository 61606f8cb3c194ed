"""
Feedback data model.

Sentiment and theme are closed enums so classifier output is normalized
before it reaches the `feedback` table.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Sentiment(str, Enum):
    POSITIVE = "Positive"
    NEUTRAL = "Neutral"
    NEGATIVE = "Negative"


class Theme(str, Enum):
    UI_UX = "UI/UX"
    BUG = "Bug"
    PERFORMANCE = "Performance"
    FEATURE_REQUEST = "Feature Request"


# Substituted for any field the classifier did not return cleanly.
DEFAULT_SENTIMENT = Sentiment.NEUTRAL
DEFAULT_THEME = Theme.FEATURE_REQUEST


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"


class IncomingFeedback(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)

    @field_validator("source", "content", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class Classification(BaseModel):
    model_config = ConfigDict(frozen=True)

    sentiment: Sentiment = DEFAULT_SENTIMENT
    theme: Theme = DEFAULT_THEME


@dataclass(frozen=True)
class NewFeedbackRecord:
    """
    A record ready to insert; the store assigns `id`.
    """

    source: str
    content: str
    sentiment: Sentiment
    theme: Theme
    timestamp: str


class FeedbackRecord(BaseModel):
    id: int
    source: str
    content: str
    sentiment: Sentiment
    theme: Theme
    timestamp: str
