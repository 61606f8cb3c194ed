"""Shared fixtures: an in-memory checkpoint store and a fake feedback table."""

import pytest

from core.steps import RetryPolicy, StepRunner
from feedback import repository
from feedback.schemas import NewFeedbackRecord


class MemoryCheckpointStore:
    """
    Checkpoint store kept in a dict; first write wins, like the Postgres one.

    `failing_loads` / `failing_saves` map a step name to how many more calls
    for it should raise (use a large number for "always").
    """

    def __init__(self):
        self.outputs = {}
        self.attempts = {}
        self.failing_loads = {}
        self.failing_saves = {}

    @staticmethod
    def _maybe_fail(failing, step_name):
        remaining = failing.get(step_name, 0)
        if remaining > 0:
            failing[step_name] = remaining - 1
            raise ConnectionError("checkpoint store unavailable")

    async def load(self, run_id, step_name):
        self._maybe_fail(self.failing_loads, step_name)
        key = (run_id, step_name)
        if key in self.outputs:
            return True, self.outputs[key]
        return False, None

    async def save(self, run_id, step_name, output, *, attempts):
        self._maybe_fail(self.failing_saves, step_name)
        key = (run_id, step_name)
        if key not in self.outputs:
            self.outputs[key] = output
            self.attempts[key] = attempts

    async def count(self, run_id):
        return sum(1 for (rid, _) in self.outputs if rid == run_id)

    def step_names(self, run_id):
        return [name for (rid, name) in self.outputs if rid == run_id]


class FakeFeedbackTable:
    """
    Stands in for `repository.insert_feedback`; can fail for chosen contents.
    Like the real table, (run_id, item_index) is unique.
    """

    def __init__(self):
        self.rows = []
        self.keys = {}
        self.fail_contents = set()
        self.calls = 0

    async def insert(self, record: NewFeedbackRecord, *, run_id, item_index) -> int:
        self.calls += 1
        if record.content in self.fail_contents:
            raise ConnectionError("store unavailable")
        key = (run_id, item_index)
        if key in self.keys:
            return self.keys[key]
        row_id = len(self.rows) + 1
        self.rows.append((row_id, record))
        self.keys[key] = row_id
        return row_id

    def records(self):
        return [record for (_, record) in self.rows]


async def _no_sleep(_delay):
    return None


@pytest.fixture
def checkpoint_store():
    return MemoryCheckpointStore()


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, initial_delay_s=0.0)


@pytest.fixture
def step_runner(checkpoint_store, retry_policy):
    return StepRunner("run-1", store=checkpoint_store, policy=retry_policy, sleep=_no_sleep)


@pytest.fixture
def feedback_table(monkeypatch):
    table = FakeFeedbackTable()
    monkeypatch.setattr(repository, "insert_feedback", table.insert)
    return table
