import asyncio
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import InvalidArgument
from app.modules.transcription.models import FAILED
from app.modules.transcription.orchestrator import TranscriptionOrchestrator
from app.modules.transcription.repository import RunRepository
from app.modules.transcription.schemas import parse_event

log = logging.getLogger("transcription.worker")

class TranscriptionWorker:
    """
    Background relay that drains the run queue.

    Queued runs are claimed as slots free up, with at most ``max_concurrency``
    executing at once. Runs a previous process left ``running`` are put
    back on the queue at start, keeping their id so their checkpoints replay.
    """
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: TranscriptionOrchestrator,
        *,
        max_concurrency: int = 2,
        poll_interval: float = 1.0,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.max_concurrency = max_concurrency
        self.poll_interval = poll_interval
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None

    def notify(self) -> None:
        """Wake the relay early; a trigger calls this after enqueueing."""
        self._wake.set()

    async def start(self) -> None:
        async with self.session_factory() as session:
            requeued = await RunRepository(session).requeue_interrupted()
            await session.commit()
        if requeued:
            log.info("Re-queued %d interrupted transcription run(s)", requeued)
        self._task = asyncio.create_task(self._relay())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_pending(self) -> int:
        """
        Execute queued runs until none are left; returns how many ran.

        At most ``max_concurrency`` runs are in flight. A slot freed by a
        finished run is refilled straight away, and free slots are re-polled
        every ``poll_interval`` for runs queued in the meantime.
        """
        total = 0
        active: set[asyncio.Task] = set()
        try:
            while True:
                free = self.max_concurrency - len(active)
                if free > 0:
                    for run_id, payload in await self._claim(free):
                        active.add(asyncio.create_task(self._execute(run_id, payload)))
                        total += 1
                if not active:
                    return total
                timeout = self.poll_interval if len(active) < self.max_concurrency else None
                done, active = await asyncio.wait(active, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    task.result()
        except asyncio.CancelledError:
            # interrupted runs stay ``running`` and are re-queued on the next start
            for task in active:
                task.cancel()
            await asyncio.gather(*active, return_exceptions=True)
            raise
        except Exception:
            await asyncio.gather(*active, return_exceptions=True)
            raise

    async def _claim(self, limit: int) -> list[tuple[uuid.UUID, dict]]:
        async with self.session_factory() as session:
            try:
                runs = await RunRepository(session).claim_batch(limit=limit)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            return [(r.id, dict(r.payload)) for r in runs]

    async def _execute(self, run_id: uuid.UUID, payload: dict) -> None:
        try:
            event = parse_event(payload)
        except InvalidArgument as e:
            log.error("Run %s has a malformed event and is dropped: %s", run_id, e)
            await self._finish(run_id, FAILED, str(e))
            return
        try:
            outcome = await self.orchestrator.execute(run_id, event)
        except Exception as e:
            log.exception("Run %s crashed", run_id)
            await self._finish(run_id, FAILED, str(e) or e.__class__.__name__)
            return
        await self._finish(run_id, outcome.status, outcome.error)

    async def _finish(self, run_id: uuid.UUID, status: str, error: str | None) -> None:
        async with self.session_factory() as session:
            await RunRepository(session).finish(run_id, status, error)
            await session.commit()

    async def _relay(self) -> None:
        log.info("Transcription relay started (max_concurrency=%d)", self.max_concurrency)
        try:
            while True:
                self._wake.clear()
                try:
                    ran = await self.run_pending()
                    if ran:
                        log.debug("Relay iteration executed %d run(s)", ran)
                except Exception:
                    log.exception("Transcription relay iteration failed")
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            log.info("Transcription relay cancelled; shutting down")
            raise
