"""
FastAPI router for feedback endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from . import service

router = APIRouter()


@router.post("/ingest", status_code=202)
async def ingest(request: Request, background_tasks: BackgroundTasks) -> dict:
    """
    Accept a JSON array of `{source, content}` and start one pipeline run.

    Invalid entries are dropped; the request fails only when none are left.
    """
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc

    items = service.parse_batch(body)
    run_id = await service.submit_batch(items)

    # Classification + persistence happen after the 202 is sent.
    background_tasks.add_task(
        service.execute_run_background,
        run_id,
        [item.model_dump() for item in items],
    )

    return {
        "message": "Feedback batch accepted for processing.",
        "workflowInstanceId": run_id,
    }


@router.get("/results")
async def results() -> list[dict]:
    """
    All analyzed feedback, newest first.
    """
    return await service.list_results()


@router.get("/runs/{run_id}")
async def run_status(run_id: str) -> dict:
    return await service.run_status(run_id)
