"""
Batch pipeline.

For each item in a batch, in order:
  1. step `classify-<i>-<source>`: call the classifier, normalize its output
  2. step `persist-<i>-<source>`:  assemble the record, insert one row

Both steps go through the run's StepRunner, so completed steps are replayed
from checkpoints on resume instead of being re-executed. Step names carry
the batch index so two items with the same source never share a checkpoint;
the source part is truncated to STEP_LABEL_CHARS.

A malformed item is skipped. An item whose step runs out of retries is
logged and skipped; earlier rows are left in place and the batch continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from pydantic import ValidationError

from core.steps import StepFailedError, StepRunner

from . import classifier, normalizer, records, repository
from .schemas import Classification, IncomingFeedback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchSummary:
    total: int
    persisted: int
    skipped: int
    failed: int


# Keeps (run_id, step_name) well under the btree key size limit.
STEP_LABEL_CHARS = 64


def step_name(kind: str, index: int, item: IncomingFeedback) -> str:
    return f"{kind}-{index}-{item.source[:STEP_LABEL_CHARS]}"


def coerce_item(raw: Any) -> IncomingFeedback | None:
    """
    Re-validate an item pulled from run params. None when malformed.
    """
    if isinstance(raw, IncomingFeedback):
        return raw
    if not isinstance(raw, dict):
        return None
    try:
        return IncomingFeedback.model_validate(raw)
    except ValidationError:
        return None


async def classify_step(item: IncomingFeedback) -> dict[str, str]:
    raw = await classifier.classify(item)
    classification = normalizer.normalize(raw)
    return classification.model_dump(mode="json")


async def persist_step(
    item: IncomingFeedback,
    classification: Classification,
    *,
    run_id: str,
    item_index: int,
) -> dict[str, Any]:
    """
    Insert the row for one item. Keyed on (run_id, item_index), so re-running
    it after a lost checkpoint returns the existing row instead of a duplicate.
    """
    record = records.assemble(item, classification, records.utc_now())
    feedback_id = await repository.insert_feedback(record, run_id=run_id, item_index=item_index)
    return {"id": feedback_id, "timestamp": record.timestamp}


async def run_batch(items: Iterable[Any], *, steps: StepRunner) -> BatchSummary:
    items = list(items or [])
    total = len(items)
    persisted = skipped = failed = 0

    if not items:
        logger.info("batch_empty run_id=%s", steps.run_id)
        return BatchSummary(total=0, persisted=0, skipped=0, failed=0)

    for index, raw_item in enumerate(items):
        item = coerce_item(raw_item)
        if item is None:
            skipped += 1
            logger.warning("item_skipped run_id=%s index=%s reason=malformed", steps.run_id, index)
            continue

        try:
            output = await steps.do(
                step_name("classify", index, item),
                lambda: classify_step(item),
            )
            classification = Classification.model_validate(output)

            await steps.do(
                step_name("persist", index, item),
                lambda: persist_step(item, classification, run_id=steps.run_id, item_index=index),
            )
        except StepFailedError as e:
            failed += 1
            logger.error(
                "item_failed run_id=%s index=%s step=%s phase=%s attempts=%s",
                steps.run_id,
                index,
                e.step_name,
                e.phase,
                e.attempts,
                exc_info=e,
            )
            continue

        persisted += 1

    summary = BatchSummary(total=total, persisted=persisted, skipped=skipped, failed=failed)
    logger.info(
        "batch_complete run_id=%s total=%s persisted=%s skipped=%s failed=%s",
        steps.run_id,
        summary.total,
        summary.persisted,
        summary.skipped,
        summary.failed,
    )
    return summary
