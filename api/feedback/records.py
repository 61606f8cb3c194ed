"""
Record assembly for the `feedback` table.
"""

from __future__ import annotations

from datetime import datetime, timezone

from .schemas import Classification, IncomingFeedback, NewFeedbackRecord


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def assemble(item: IncomingFeedback, classification: Classification, now: datetime) -> NewFeedbackRecord:
    """
    Combine an item with its classification. `now` should be taken when the
    record is persisted, not when the batch was submitted.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return NewFeedbackRecord(
        source=item.source,
        content=item.content,
        sentiment=classification.sentiment,
        theme=classification.theme,
        timestamp=now.isoformat(),
    )
