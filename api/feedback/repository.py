"""
Feedback persistence.
This module is where feedback- and run-related SQL lives.

Schema comes from the dbmate migrations in `db/migrations/`:
- feedback(id bigserial, source, content, sentiment, theme, timestamp, run_id, item_index)
- workflow_runs(id uuid, params jsonb, status, item_count, created_at, completed_at,
  claimed_by, claimed_at)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from core import db

from .schemas import NewFeedbackRecord, RunStatus


async def insert_feedback(record: NewFeedbackRecord, *, run_id: str, item_index: int) -> int:
    """
    Append one analyzed feedback row and return its id.

    (run_id, item_index) is unique: inserting the same item of the same run
    again returns the id of the row already there.
    """
    row = await db.fetch_one(
        """
        WITH inserted AS (
          INSERT INTO feedback (source, content, sentiment, theme, timestamp, run_id, item_index)
          VALUES ($1, $2, $3, $4, $5, $6::uuid, $7)
          ON CONFLICT (run_id, item_index) DO NOTHING
          RETURNING id
        )
        SELECT id FROM inserted
        UNION ALL
        SELECT id FROM feedback WHERE run_id = $6::uuid AND item_index = $7
        LIMIT 1
        """,
        record.source,
        record.content,
        record.sentiment.value,
        record.theme.value,
        datetime.fromisoformat(record.timestamp),
        run_id,
        item_index,
    )
    if row is None or "id" not in row:
        raise RuntimeError("Failed to insert feedback.")
    return int(row["id"])


async def list_feedback() -> list[dict[str, Any]]:
    return await db.fetch_all(
        """
        SELECT id, source, content, sentiment, theme, timestamp
        FROM feedback
        ORDER BY timestamp DESC, id DESC
        """
    )


async def create_run(items: list[dict[str, str]]) -> dict[str, Any]:
    row = await db.fetch_one(
        """
        INSERT INTO workflow_runs (params, status, item_count)
        VALUES ($1::jsonb, $2, $3)
        RETURNING id, status, item_count, created_at
        """,
        {"items": items},
        RunStatus.RUNNING.value,
        len(items),
    )
    if row is None or "id" not in row:
        raise RuntimeError("Failed to create workflow run.")
    return row


async def get_run(run_id: str) -> dict[str, Any] | None:
    return await db.fetch_one(
        """
        SELECT id, params, status, item_count, created_at, completed_at
        FROM workflow_runs
        WHERE id = $1::uuid
        LIMIT 1
        """,
        run_id,
    )


async def list_unfinished_runs() -> list[dict[str, Any]]:
    return await db.fetch_all(
        """
        SELECT id, params, status, item_count, created_at
        FROM workflow_runs
        WHERE status = $1
        ORDER BY created_at, id
        """,
        RunStatus.RUNNING.value,
    )


async def mark_run_completed(run_id: str) -> None:
    await db.execute(
        """
        UPDATE workflow_runs
        SET status = $2,
            completed_at = now()
        WHERE id = $1::uuid
          AND completed_at IS NULL
        """,
        run_id,
        RunStatus.COMPLETED.value,
    )


async def claim_run(run_id: str, *, owner: str, lease_s: float) -> bool:
    """
    Take (or re-take) the lease on a running run. False when another owner
    holds a lease that has not expired yet.
    """
    row = await db.fetch_one(
        """
        UPDATE workflow_runs
        SET claimed_by = $2,
            claimed_at = now()
        WHERE id = $1::uuid
          AND status = $3
          AND (
            claimed_at IS NULL
            OR claimed_by = $2
            OR claimed_at < now() - make_interval(secs => $4)
          )
        RETURNING id
        """,
        run_id,
        owner,
        RunStatus.RUNNING.value,
        float(lease_s),
    )
    return row is not None


async def renew_claim(run_id: str, *, owner: str) -> bool:
    row = await db.fetch_one(
        """
        UPDATE workflow_runs
        SET claimed_at = now()
        WHERE id = $1::uuid
          AND claimed_by = $2
        RETURNING id
        """,
        run_id,
        owner,
    )
    return row is not None


async def release_claim(run_id: str, *, owner: str) -> None:
    await db.execute(
        """
        UPDATE workflow_runs
        SET claimed_by = NULL,
            claimed_at = NULL
        WHERE id = $1::uuid
          AND claimed_by = $2
        """,
        run_id,
        owner,
    )
