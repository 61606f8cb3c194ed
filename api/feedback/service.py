"""
Feedback "service layer".

- Validate an /ingest body into a batch of IncomingFeedback
- Create a run row and execute the run (in the background)
- Hold a renewable lease on a run while executing it, so one run never
  executes in two processes at once
- Resume runs left unfinished by a restart
- Read results and run status
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from typing import Any

from fastapi import HTTPException

from core.config import env_float
from core.steps import PostgresCheckpointStore, StepRunner, retry_policy_from_env

from . import pipeline, repository
from .schemas import FeedbackRecord, IncomingFeedback

logger = logging.getLogger(__name__)

# Identifies this process as the owner of the runs it executes.
WORKER_ID = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

# Strong references to resumed runs so they are not garbage-collected mid-flight.
_resumed_tasks: set[asyncio.Task] = set()


def _text_field(entry: Any, name: str) -> str:
    value = entry.get(name) if isinstance(entry, dict) else None
    return "" if value is None else str(value).strip()


def parse_batch(body: Any) -> list[IncomingFeedback]:
    """
    Coerce a decoded JSON body into valid items, dropping the invalid ones.
    """
    if not isinstance(body, list):
        raise HTTPException(
            status_code=400,
            detail=(
                "Expected a JSON array of feedback objects, "
                'e.g. [{ "source": "Discord", "content": "..." }].'
            ),
        )

    items: list[IncomingFeedback] = []
    for entry in body:
        source = _text_field(entry, "source")
        content = _text_field(entry, "content")
        if source and content:
            items.append(IncomingFeedback(source=source, content=content))

    if not items:
        raise HTTPException(
            status_code=400,
            detail=(
                "No valid feedback items found. "
                "Each item must include non-empty `source` and `content` fields."
            ),
        )
    return items


def step_runner(run_id: str) -> StepRunner:
    return StepRunner(run_id, store=PostgresCheckpointStore(), policy=retry_policy_from_env())


def run_lease_s() -> float:
    lease = env_float("RUN_LEASE_S", 60.0)
    return lease if lease > 0 else 60.0


async def submit_batch(items: list[IncomingFeedback]) -> str:
    """
    Persist the batch as a new run and return its id. The caller schedules
    `execute_run` for it.
    """
    try:
        row = await repository.create_run([item.model_dump() for item in items])
    except Exception as exc:
        logger.exception("run_create_failed items=%s", len(items))
        raise HTTPException(
            status_code=503,
            detail="Could not queue the feedback batch. Try again later.",
        ) from exc
    run_id = str(row["id"])
    logger.info("run_created run_id=%s items=%s", run_id, len(items))
    return run_id


async def _keep_claim(run_id: str, owner: str, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            if not await repository.renew_claim(run_id, owner=owner):
                logger.warning("run_claim_lost run_id=%s owner=%s", run_id, owner)
        except Exception:
            logger.exception("run_claim_renew_failed run_id=%s owner=%s", run_id, owner)


async def execute_run(run_id: str, items: list[Any]) -> pipeline.BatchSummary | None:
    """
    Run a batch under a lease on its run row. Returns None without doing any
    work when another process holds the lease.
    """
    lease_s = run_lease_s()
    if not await repository.claim_run(run_id, owner=WORKER_ID, lease_s=lease_s):
        logger.info("run_skipped run_id=%s reason=claimed_elsewhere", run_id)
        return None

    heartbeat = asyncio.create_task(_keep_claim(run_id, WORKER_ID, lease_s / 3))
    completed = False
    try:
        summary = await pipeline.run_batch(items, steps=step_runner(run_id))
        await repository.mark_run_completed(run_id)
        completed = True
        return summary
    finally:
        heartbeat.cancel()
        await asyncio.gather(heartbeat, return_exceptions=True)
        if not completed:
            # Let the next startup (any process) pick the run up without waiting out the lease.
            try:
                await repository.release_claim(run_id, owner=WORKER_ID)
            except Exception:
                logger.warning("run_claim_release_failed run_id=%s", run_id, exc_info=True)


async def execute_run_background(run_id: str, items: list[Any]) -> None:
    """
    Background entrypoint.

    This should never raise to the request path; we just log failures.
    A run that dies here stays `running` and is resumed on next startup.
    """
    try:
        await execute_run(run_id, items)
    except asyncio.CancelledError:
        logger.info("run_interrupted run_id=%s", run_id)
        raise
    except Exception:
        logger.exception("run_failed run_id=%s", run_id)


async def resume_unfinished_runs() -> int:
    rows = await repository.list_unfinished_runs()
    for row in rows:
        run_id = str(row["id"])
        items = (row.get("params") or {}).get("items") or []
        task = asyncio.create_task(execute_run_background(run_id, items))
        _resumed_tasks.add(task)
        task.add_done_callback(_resumed_tasks.discard)
        logger.info("run_resumed run_id=%s items=%s", run_id, len(items))
    return len(rows)


async def cancel_resumed_runs() -> None:
    tasks = list(_resumed_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


async def list_results() -> list[dict[str, Any]]:
    rows = await repository.list_feedback()
    return [
        FeedbackRecord(
            id=int(row["id"]),
            source=row["source"],
            content=row["content"],
            sentiment=row["sentiment"],
            theme=row["theme"],
            timestamp=_iso(row["timestamp"]),
        ).model_dump(mode="json")
        for row in rows
    ]


async def run_status(run_id: str) -> dict[str, Any]:
    try:
        run_key = str(uuid.UUID((run_id or "").strip()))
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Run not found.") from exc

    row = await repository.get_run(run_key)
    if row is None:
        raise HTTPException(status_code=404, detail="Run not found.")

    completed_steps = await PostgresCheckpointStore().count(run_key)
    return {
        "id": str(row["id"]),
        "status": row["status"],
        "item_count": int(row["item_count"]),
        "completed_steps": completed_steps,
        "created_at": _iso(row["created_at"]),
        "completed_at": _iso(row["completed_at"]),
    }
