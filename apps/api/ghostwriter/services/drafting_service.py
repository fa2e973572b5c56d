import asyncio
import contextlib
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ghostwriter.schemas.documents import DraftJobOut, DraftOutcome, DraftResponse
from ghostwriter.services.document_service import DocumentService
from ghostwriter.services.drafting_prompt import DraftingInput, build_drafting_prompt
from ghostwriter.services.llm_client import LLMClient
from ghostwriter.services.note_service import NoteService
from ghostwriter.services.project_service import ProjectService
from ghostwriter.services.transcript_service import TranscriptService

logger = structlog.get_logger()


class DraftingService:
    def __init__(self, db: AsyncSession, llm_client: LLMClient) -> None:
        self.db = db
        self.llm_client = llm_client
        self.documents = DocumentService(db)

    async def _prompt_input(self, job: DraftJobOut) -> DraftingInput:
        bundle = await ProjectService(self.db).get_project(job.project_id)
        if bundle is None:
            raise LookupError(f"Project {job.project_id} not found")
        notes = NoteService(self.db)
        return DraftingInput(
            bundle=bundle,
            workspace=await self.documents.get_workspace(job.project_id),
            job=job,
            todos=await notes.list_todos(job.project_id),
            notes=await notes.list_notes(job.project_id, limit=8),
            transcript_items=await TranscriptService(self.db).recent_excerpts(job.project_id),
        )

    async def claim(self, job_id: str) -> DraftJobOut | None:
        claimed = await self.documents.claim_job(job_id)
        return DraftJobOut.model_validate(claimed) if claimed is not None else None

    async def run(self, job: DraftJobOut) -> DraftOutcome:
        """Draft a claimed job and store the result.

        Every failure settles the job: a missing project or unusable edits end
        it as ``error``, anything else re-queues it until attempts run out.
        """
        logger.info("draft_job_started", job_id=job.id, project_id=job.project_id, attempt=job.attempt_count)
        try:
            messages = build_drafting_prompt(await self._prompt_input(job))
            draft = await self.llm_client.complete(messages, schema=DraftResponse)
            await self.documents.apply_edits(
                job.project_id,
                markdown=draft.markdown,
                sections=draft.sections,
                summary=draft.summary,
            )
        except (LookupError, ValueError) as exc:
            return await self._failed(job, exc, retry=False)
        except Exception as exc:
            return await self._failed(job, exc, retry=True)
        await self.documents.finish_job(job.id, status="complete", summary=draft.summary)
        logger.info("draft_job_completed", job_id=job.id, project_id=job.project_id)
        return DraftOutcome(
            processed=True,
            job_id=job.id,
            project_id=job.project_id,
            status="complete",
            summary=draft.summary,
            attempt=job.attempt_count,
        )

    async def _failed(self, job: DraftJobOut, exc: Exception, *, retry: bool) -> DraftOutcome:
        error = str(exc) or exc.__class__.__name__
        logger.error("draft_job_failed", job_id=job.id, attempt=job.attempt_count, error=error)
        await self.db.rollback()
        status = await self.documents.fail_job(job.id, error, retry=retry)
        return DraftOutcome(
            processed=True,
            job_id=job.id,
            project_id=job.project_id,
            status=status or "error",
            error=error,
            attempt=job.attempt_count,
        )

    async def process_next(self, idle_for: timedelta | None = None) -> DraftOutcome:
        """Claim the oldest queued job, draft it and store the result."""
        claimed = await self.documents.claim_next_job(idle_for=idle_for)
        if claimed is None:
            return DraftOutcome(processed=False)
        return await self.run(DraftJobOut.model_validate(claimed))


class DraftQueueWorker:
    """Runs :class:`DraftingService` in its own database session per step."""

    def __init__(self, sessionmaker: async_sessionmaker, llm_client: LLMClient) -> None:
        self._sessionmaker = sessionmaker
        self.llm_client = llm_client

    async def claim_job(self, job_id: str) -> DraftJobOut | None:
        async with self._sessionmaker() as db:
            return await DraftingService(db, self.llm_client).claim(job_id)

    async def run_job(self, job: DraftJobOut) -> DraftOutcome:
        async with self._sessionmaker() as db:
            return await DraftingService(db, self.llm_client).run(job)

    async def process_next(self, idle_for: timedelta | None = None) -> DraftOutcome:
        async with self._sessionmaker() as db:
            return await DraftingService(db, self.llm_client).process_next(idle_for)

    async def process_batch(self, limit: int, idle_for: timedelta | None = None) -> list[DraftOutcome]:
        outcomes: list[DraftOutcome] = []
        for _ in range(limit):
            outcome = await self.process_next(idle_for)
            if not outcome.processed:
                break
            outcomes.append(outcome)
        return outcomes


class DraftQueueSweeper:
    """Periodically drains queued jobs that no live session is driving.

    Covers jobs left behind by a restart, re-queued retries whose session
    ended, and merges into a job that was already running.
    """

    def __init__(self, worker: DraftQueueWorker, *, interval: float, batch_size: int) -> None:
        self.worker = worker
        self.interval = interval
        self.batch_size = batch_size
        # a session retrying its own job touches it well within one interval
        self.idle_for = timedelta(seconds=interval)
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.sweep()

    async def sweep(self) -> list[DraftOutcome]:
        try:
            outcomes = await self.worker.process_batch(self.batch_size, self.idle_for)
        except Exception as exc:
            logger.error("draft_sweep_failed", error=str(exc))
            return []
        if outcomes:
            logger.info(
                "draft_sweep_completed",
                processed=len(outcomes),
                statuses=[outcome.status for outcome in outcomes],
            )
        return outcomes

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
