import asyncio
import time
from collections.abc import Callable, Sequence
from typing import Any

import structlog

from ghostwriter.realtime.coercion import coerce_text
from ghostwriter.realtime.collaborators import DocumentStore, DraftWorker
from ghostwriter.realtime.context import BoundedIdSet, DraftProgress, SessionContext
from ghostwriter.realtime.errors import DraftWorkerFailure, MissingRequiredArgument
from ghostwriter.realtime.modes import DraftUpdate
from ghostwriter.realtime.outbound import OutboundChannel

logger = structlog.get_logger()

DRAFT_TOOL = "queue_draft_update"
PROGRESS_STATUSES = ("queued", "running", "complete", "error")


def progress_key(payload: dict[str, Any]) -> str:
    """Composite dedupe key. A redelivery with a new timestamp counts as new."""
    job_id = payload.get("jobId") or payload.get("job_id") or "unknown"
    status = payload.get("status")
    summary = coerce_text(payload.get("summary")) or ""
    timestamp = payload.get("timestamp", payload.get("createdAt", payload.get("updatedAt")))
    return f"{job_id}:{status}:{summary}:{timestamp}"


class DraftQueueCoordinator:
    """Bridges the queue_draft_update tool call to the background drafting worker.

    The tool call returns as soon as the job is enqueued; worker progress comes
    back later as ``TOOL_PROGRESS`` system messages on the control channel.
    """

    def __init__(
        self,
        context: SessionContext,
        documents: DocumentStore,
        worker: DraftWorker,
        outbound: OutboundChannel,
        on_progress: Callable[[str], None] | None = None,
        retry_delay: float = 0.0,
    ) -> None:
        self.context = context
        self.documents = documents
        self.worker = worker
        self.outbound = outbound
        self.on_progress = on_progress
        self.retry_delay = retry_delay
        self._seen_progress = BoundedIdSet(100)
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> set[asyncio.Task]:
        return {task for task in self._tasks if not task.done()}

    async def queue(
        self,
        *,
        project_id: str,
        tool_call_id: str,
        urgency: str | None = None,
        message_pointers: Sequence[str] = (),
        transcript_anchors: Sequence[str] = (),
        prompt_context: Any = None,
    ) -> dict[str, Any]:
        session_id = self.context.session_id
        if not session_id:
            raise MissingRequiredArgument("sessionId")

        resolved, unresolved = self.context.pointers.partition(list(message_pointers))
        anchors = list(dict.fromkeys([*transcript_anchors, *unresolved]))
        job = await self.documents.enqueue_draft_update(
            project_id,
            session_id=session_id,
            urgency=urgency,
            message_pointers=resolved,
            transcript_anchors=anchors,
            prompt_context=prompt_context,
        )
        accepted_at = time.time()
        logger.info(
            "draft_update_queued",
            project_id=project_id,
            job_id=job.id,
            resolved_pointers=len(resolved),
            anchors=len(anchors),
        )

        task = asyncio.create_task(
            self._run_worker(
                job_id=job.id,
                project_id=project_id,
                tool_call_id=tool_call_id,
                urgency=urgency,
                generation=self.context.generation,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        result: dict[str, Any] = {
            "status": "queued",
            "projectId": project_id,
            "jobId": job.id,
            "acceptedAt": accepted_at,
            "summary": None,
            "urgency": urgency,
        }
        if unresolved:
            result["warnings"] = [
                "Message pointers not persisted yet were kept as transcript anchors: "
                + ", ".join(unresolved)
            ]
        return result

    async def _run_worker(
        self,
        *,
        job_id: str,
        project_id: str,
        tool_call_id: str,
        urgency: str | None,
        generation: str,
    ) -> None:
        """Drive this call's job until it settles or the session ends.

        Only the enqueued job is claimed, so progress never describes another
        project's draft. A job re-queued after a failure is retried here while
        the session lives; otherwise the queue sweeper picks it up.
        """
        base = {"tool": DRAFT_TOOL, "tool_call_id": tool_call_id, "projectId": project_id, "urgency": urgency}
        await self.report(self._progress(base, job_id, "queued"), generation)
        while True:
            try:
                claimed = await self.worker.claim_job(job_id)
                if claimed is None:
                    # already running for an earlier call, or settled
                    logger.info("draft_job_not_claimed", job_id=job_id)
                    return
                base["projectId"] = claimed.project_id
                await self.report(
                    self._progress(base, job_id, "running", attempt=claimed.attempt_count), generation
                )
                outcome = await self.worker.run_job(claimed)
            except Exception as exc:
                failure = DraftWorkerFailure(str(exc))
                logger.error("draft_worker_failed", job_id=job_id, error=str(failure))
                self.context.diagnostics.add(
                    "tool_error", "draft_worker_failed", {"jobId": job_id, "error": str(failure)}
                )
                await self.report(self._progress(base, job_id, "error", error=str(failure)), generation)
                return

            if outcome.job_id != job_id:
                logger.warning("draft_outcome_mismatch", job_id=job_id, outcome_job_id=outcome.job_id)
                return
            await self.report(
                self._progress(
                    base,
                    job_id,
                    outcome.status or "complete",
                    summary=outcome.summary,
                    error=outcome.error,
                    attempt=outcome.attempt,
                ),
                generation,
            )
            if outcome.status != "queued" or generation != self.context.generation:
                return
            await asyncio.sleep(self.retry_delay)
            if generation != self.context.generation:
                return

    @staticmethod
    def _progress(base: dict[str, Any], job_id: str, status: str, **fields: Any) -> dict[str, Any]:
        payload = {**base, "status": status, "jobId": job_id, "summary": None, "timestamp": time.time()}
        payload.update(fields)
        return payload

    async def report(self, payload: dict[str, Any], generation: str) -> bool:
        """Apply progress locally and inject it into the conversation.

        Dropped when the session generation that queued the job has ended.
        """
        if generation != self.context.generation or self.outbound.closed:
            logger.info("draft_progress_dropped", job_id=payload.get("jobId"), status=payload.get("status"))
            return False
        self.handle_progress(payload)
        return await self.outbound.inject_progress(payload)

    def handle_progress(self, payload: dict[str, Any]) -> bool:
        """Route a TOOL_PROGRESS payload into the instruction context.

        Returns False for foreign tools and for exact redeliveries.
        """
        if payload.get("tool") != DRAFT_TOOL:
            return False
        status = payload.get("status")
        if status not in PROGRESS_STATUSES:
            status = "queued"
        key = progress_key({**payload, "status": status})
        if key in self._seen_progress:
            return False
        self._seen_progress.add(key)

        timestamp = payload.get("timestamp")
        if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
            updated_at = float(timestamp)
        else:
            updated_at = time.time()
        summary = coerce_text(payload.get("summary"))
        self.context.draft_progress = DraftProgress(
            status=status,
            job_id=coerce_text(payload.get("jobId") or payload.get("job_id")),
            summary=summary,
            error=coerce_text(payload.get("error")),
            updated_at=updated_at,
        )
        self.context.instruction_context = self.context.instruction_context.replace(
            latest_draft_update=DraftUpdate(status=status, summary=summary, updated_at=updated_at)
        )
        if self.on_progress is not None:
            self.on_progress(status)
        return True

    def cancel_pending(self) -> None:
        for task in list(self._tasks):
            task.cancel()
