"""Tests for run execution, resume and result shaping in the service layer."""

import asyncio
from datetime import datetime, timezone

import pytest

from core.steps import StepRunner
from feedback import classifier, pipeline, repository, service

@pytest.fixture
def runs(monkeypatch, checkpoint_store, retry_policy):
    """Fake run rows and leases, and wire service.step_runner to the in-memory checkpoint store."""
    state = {"completed": [], "unfinished": [], "claims": {}}

    async def fake_mark_completed(run_id):
        state["completed"].append(run_id)

    async def fake_list_unfinished():
        return state["unfinished"]

    async def fake_claim(run_id, *, owner, lease_s):
        holder = state["claims"].get(run_id)
        if holder is not None and holder != owner:
            return False
        state["claims"][run_id] = owner
        return True

    async def fake_renew(run_id, *, owner):
        return state["claims"].get(run_id) == owner

    async def fake_release(run_id, *, owner):
        if state["claims"].get(run_id) == owner:
            del state["claims"][run_id]

    monkeypatch.setattr(repository, "mark_run_completed", fake_mark_completed)
    monkeypatch.setattr(repository, "list_unfinished_runs", fake_list_unfinished)
    monkeypatch.setattr(repository, "claim_run", fake_claim)
    monkeypatch.setattr(repository, "renew_claim", fake_renew)
    monkeypatch.setattr(repository, "release_claim", fake_release)
    monkeypatch.setattr(
        service,
        "step_runner",
        lambda run_id: StepRunner(run_id, store=checkpoint_store, policy=retry_policy),
    )
    return state

@pytest.fixture
def fixed_classifier(monkeypatch):
    async def classify(item):
        return {"response": '{"sentiment":"Positive","theme":"UI/UX"}'}

    monkeypatch.setattr(classifier, "classify", classify)

@pytest.mark.asyncio
async def test_execute_run_marks_completed(runs, fixed_classifier, feedback_table):
    summary = await service.execute_run("run-1", [{"source": "Discord", "content": "Nice colors"}])

    assert summary.persisted == 1
    assert runs["completed"] == ["run-1"]

@pytest.mark.asyncio
async def test_run_with_failed_items_still_completes(runs, fixed_classifier, feedback_table):
    feedback_table.fail_contents = {"boom"}

    await service.execute_run("run-1", [{"source": "Discord", "content": "boom"}])

    assert feedback_table.records() == []
    assert runs["completed"] == ["run-1"]

@pytest.mark.asyncio
async def test_background_run_logs_instead_of_raising(monkeypatch, caplog):
    async def broken(run_id, items):
        raise RuntimeError("pool closed")

    monkeypatch.setattr(service, "execute_run", broken)

    await service.execute_run_background("run-9", [])

    assert "run_failed run_id=run-9" in caplog.text

@pytest.mark.asyncio
async def test_resume_unfinished_runs(runs, fixed_classifier, feedback_table):
    runs["unfinished"] = [
        {"id": "run-a", "params": {"items": [{"source": "Email", "content": "first"}]}},
        {"id": "run-b", "params": {"items": [{"source": "Email", "content": "second"}]}},
    ]

    resumed = await service.resume_unfinished_runs()
    await asyncio.gather(*list(service._resumed_tasks))

    assert resumed == 2
    assert sorted(runs["completed"]) == ["run-a", "run-b"]
    assert sorted(r.content for r in feedback_table.records()) == ["first", "second"]

@pytest.mark.asyncio
async def test_resume_skips_run_claimed_by_another_process(runs, fixed_classifier, feedback_table):
    runs["claims"]["run-a"] = "other-host:4242:deadbeef"
    runs["unfinished"] = [
        {"id": "run-a", "params": {"items": [{"source": "Email", "content": "first"}]}},
        {"id": "run-b", "params": {"items": [{"source": "Email", "content": "second"}]}},
    ]

    await service.resume_unfinished_runs()
    await asyncio.gather(*list(service._resumed_tasks))

    assert runs["completed"] == ["run-b"]
    assert [r.content for r in feedback_table.records()] == ["second"]
    assert runs["claims"]["run-a"] == "other-host:4242:deadbeef"

@pytest.mark.asyncio
async def test_same_run_started_twice_executes_once(runs, fixed_classifier, feedback_table):
    items = [{"source": "Discord", "content": "Nice colors"}]

    first, second = await asyncio.gather(
        service.execute_run("run-1", items),
        service.execute_run("run-1", items),
    )

    assert sorted([first is None, second is None]) == [False, True]
    assert feedback_table.calls == 1
    assert runs["completed"] == ["run-1"]

@pytest.mark.asyncio
async def test_claim_is_released_when_run_raises(monkeypatch, runs):
    async def broken(items, *, steps):
        raise RuntimeError("pool closed")

    monkeypatch.setattr(pipeline, "run_batch", broken)

    with pytest.raises(RuntimeError):
        await service.execute_run("run-1", [])

    assert runs["claims"] == {}
    assert runs["completed"] == []

def test_run_lease_from_env(monkeypatch):
    monkeypatch.setenv("RUN_LEASE_S", "15")
    assert service.run_lease_s() == 15.0
    monkeypatch.setenv("RUN_LEASE_S", "-1")
    assert service.run_lease_s() == 60.0

@pytest.mark.asyncio
async def test_list_results_serializes_timestamps(monkeypatch):
    async def fake_list():
        return [
            {
                "id": 1,
                "source": "Discord",
                "content": "App crashes on login",
                "sentiment": "Negative",
                "theme": "Bug",
                "timestamp": datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc),
            }
        ]

    monkeypatch.setattr(repository, "list_feedback", fake_list)

    [row] = await service.list_results()

    assert row["timestamp"] == "2025-03-01T12:30:00+00:00"
    assert row["id"] == 1
