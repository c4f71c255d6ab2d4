"""
Durable step execution for transcription runs.

Each step of a run is executed through :class:`StepExecutor`. A step that
completes has its (JSON) output stored as a checkpoint keyed by run id and
step name; when the same run is re-entered after a crash, completed steps are
replayed from their checkpoints instead of executing again. Steps are retried
a bounded number of times with a fixed backoff; errors whose ``retriable``
flag is false stop on the first attempt.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.transcription.repository import CheckpointRepository

logger = logging.getLogger(__name__)

StepFn = Callable[[], Awaitable[dict[str, Any]]]

class StepExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        run_id: uuid.UUID,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ):
        self.session_factory = session_factory
        self.run_id = run_id
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.replayed: list[str] = []
        self.executed: list[str] = []

    async def _load(self, step_name: str) -> dict | None:
        async with self.session_factory() as session:
            obj = await CheckpointRepository(session).get(self.run_id, step_name)
            return dict(obj.output) if obj is not None else None

    async def _save(self, step_name: str, output: dict, attempts: int) -> None:
        async with self.session_factory() as session:
            await CheckpointRepository(session).save(self.run_id, step_name, output, attempts)
            await session.commit()

    async def run(
        self,
        step_name: str,
        fn: StepFn,
        *,
        max_attempts: int | None = None,
        reuse: Callable[[dict], bool] | None = None,
    ) -> dict:
        checkpoint = await self._load(step_name)
        if checkpoint is not None:
            if reuse is None or reuse(checkpoint):
                logger.info("Run %s: replaying step %s from checkpoint", self.run_id, step_name)
                self.replayed.append(step_name)
                return checkpoint
            logger.info("Run %s: checkpoint for %s is stale; executing again", self.run_id, step_name)

        limit = max_attempts or self.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                output = await fn()
            except Exception as exc:
                retriable = getattr(exc, "retriable", True)
                if not retriable or attempt >= limit:
                    logger.warning(
                        "Run %s: step %s failed after %d attempt(s): %s",
                        self.run_id, step_name, attempt, exc,
                    )
                    raise
                logger.warning(
                    "Run %s: step %s attempt %d/%d failed: %s; retrying in %.1fs",
                    self.run_id, step_name, attempt, limit, exc, self.backoff_seconds,
                )
                await asyncio.sleep(self.backoff_seconds)
                continue
            await self._save(step_name, output, attempt)
            self.executed.append(step_name)
            return output
