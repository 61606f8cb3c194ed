"""
Checkpointed step execution for long-running runs.

A run issues named steps through `StepRunner.do(name, fn)`:
- if a checkpoint exists for (run_id, name), its stored output is returned
  and `fn` is not called again,
- otherwise `fn` is awaited, retried under a `RetryPolicy` on failure,
  and its output is checkpointed.

Checkpoint reads and writes are retried under the same policy; every
exhausted retry surfaces as `StepFailedError`, never as a raw store error.

Step outputs must be JSON-serializable (they are stored in jsonb).
Execution is at-least-once: if the checkpoint write never lands, `fn`
runs again on resume, so side-effecting steps must be idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from . import db
from .config import env_float, env_int

logger = logging.getLogger(__name__)

StepFn = Callable[[], Awaitable[Any]]


class StepFailedError(RuntimeError):
    """
    A step kept failing until its retry policy ran out.

    `phase` is where it failed: "load"/"save" (checkpoint store) or "run".
    The last underlying error is chained as `__cause__`.
    """

    def __init__(self, run_id: str, step_name: str, attempts: int, *, phase: str = "run") -> None:
        super().__init__(
            f"Step '{step_name}' of run {run_id} failed during {phase} after {attempts} attempt(s)."
        )
        self.run_id = run_id
        self.step_name = step_name
        self.attempts = attempts
        self.phase = phase


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_s: float = 1.0
    backoff: float = 2.0
    max_delay_s: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """
        Delay before retrying after the given (1-based) failed attempt.
        """
        delay = self.initial_delay_s * (self.backoff ** (attempt - 1))
        return max(0.0, min(delay, self.max_delay_s))


def retry_policy_from_env() -> RetryPolicy:
    defaults = RetryPolicy()
    max_attempts = env_int("STEP_MAX_ATTEMPTS", defaults.max_attempts)
    return RetryPolicy(
        max_attempts=max_attempts if max_attempts > 0 else defaults.max_attempts,
        initial_delay_s=env_float("STEP_RETRY_DELAY_S", defaults.initial_delay_s),
        backoff=env_float("STEP_RETRY_BACKOFF", defaults.backoff),
        max_delay_s=env_float("STEP_RETRY_MAX_DELAY_S", defaults.max_delay_s),
    )


class CheckpointStore(Protocol):
    async def load(self, run_id: str, step_name: str) -> tuple[bool, Any]:
        """
        Return (found, output) for a completed step.
        """
        ...

    async def save(self, run_id: str, step_name: str, output: Any, *, attempts: int) -> None:
        ...

    async def count(self, run_id: str) -> int:
        ...


class PostgresCheckpointStore:
    """
    Checkpoints in the `workflow_steps` table. First write wins.
    """

    async def load(self, run_id: str, step_name: str) -> tuple[bool, Any]:
        row = await db.fetch_one(
            """
            SELECT output
            FROM workflow_steps
            WHERE run_id = $1::uuid
              AND step_name = $2
            LIMIT 1
            """,
            run_id,
            step_name,
        )
        if row is None:
            return False, None
        return True, row["output"]

    async def save(self, run_id: str, step_name: str, output: Any, *, attempts: int) -> None:
        await db.execute(
            """
            INSERT INTO workflow_steps (run_id, step_name, output, attempts)
            VALUES ($1::uuid, $2, $3::jsonb, $4)
            ON CONFLICT (run_id, step_name) DO NOTHING
            """,
            run_id,
            step_name,
            output,
            attempts,
        )

    async def count(self, run_id: str) -> int:
        row = await db.fetch_one(
            "SELECT count(*) AS n FROM workflow_steps WHERE run_id = $1::uuid",
            run_id,
        )
        return int((row or {}).get("n", 0))


class StepRunner:
    def __init__(
        self,
        run_id: str,
        *,
        store: CheckpointStore,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.run_id = run_id
        self.store = store
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def _retrying(self, name: str, phase: str, call: StepFn) -> tuple[Any, int]:
        """
        Await `call` under the retry policy. Returns (result, attempts used).
        """
        max_attempts = max(1, self.policy.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call(), attempt
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt >= max_attempts:
                    raise StepFailedError(self.run_id, name, attempt, phase=phase) from e
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    "step_retry run_id=%s step=%s phase=%s attempt=%s delay_s=%.2f error=%r",
                    self.run_id,
                    name,
                    phase,
                    attempt,
                    delay,
                    e,
                )
                await self._sleep(delay)

    async def do(self, name: str, fn: StepFn) -> Any:
        (found, output), _ = await self._retrying(
            name, "load", lambda: self.store.load(self.run_id, name)
        )
        if found:
            logger.debug("step_replayed run_id=%s step=%s", self.run_id, name)
            return output

        output, attempts = await self._retrying(name, "run", fn)

        # fn already succeeded; only the checkpoint write is retried here.
        await self._retrying(
            name,
            "save",
            lambda: self.store.save(self.run_id, name, output, attempts=attempts),
        )
        return output
