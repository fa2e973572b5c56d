import re
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ghostwriter.config import settings
from ghostwriter.models.document import Document, DocumentSection, DraftJob
from ghostwriter.models.project import Project
from ghostwriter.models.session import utcnow
from ghostwriter.schemas.documents import (
    DocumentOut,
    DraftJobOut,
    OutlineOperation,
    SectionInput,
    SectionOut,
    SectionProgress,
    Workspace,
    WorkspaceProgress,
)
from ghostwriter.services.project_service import ProjectNotFound

logger = structlog.get_logger()

ACTIVE_JOB_STATUSES = ("queued", "running")


class OutlineError(ValueError):
    pass


def normalize_heading(heading: str) -> str:
    return " ".join(heading.split()).lower()


def normalize_summary(summary: str | None) -> str:
    return " ".join((summary or "").split()).lower()


def word_count(text: str | None) -> int:
    return len(re.findall(r"\S+", text or ""))


def render_markdown(sections: Sequence[DocumentSection]) -> str:
    blocks = []
    for section in sections:
        content = (section.content or "").strip()
        blocks.append(f"# {section.heading}\n\n{content}" if content else f"# {section.heading}")
    return "\n\n".join(blocks)


def derive_document_status(sections: Sequence[DocumentSection]) -> str:
    if sections and all(section.status == "complete" for section in sections):
        return "complete"
    if any(section.status == "needs_detail" for section in sections):
        return "needs_detail"
    return "drafting"


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _union(existing: Sequence[str] | None, incoming: Sequence[str]) -> list[str]:
    merged = list(existing or [])
    for value in incoming:
        if value not in merged:
            merged.append(value)
    return merged


def _section_out(section: DocumentSection) -> SectionOut:
    return SectionOut(
        id=section.id,
        heading=section.heading,
        content=section.content or "",
        order=section.position,
        status=section.status,
        version=section.version,
    )


class DocumentService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _document(self, project_id: str, create: bool = False) -> Document | None:
        result = await self.db.execute(select(Document).where(Document.project_id == project_id))
        document = result.scalar_one_or_none()
        if document is None and create:
            if await self.db.get(Project, project_id) is None:
                raise ProjectNotFound(project_id)
            document = Document(project_id=project_id, latest_draft_markdown="", status="drafting")
            self.db.add(document)
            await self.db.flush()
        return document

    async def _sections(self, document: Document | None) -> list[DocumentSection]:
        if document is None:
            return []
        result = await self.db.execute(
            select(DocumentSection)
            .where(DocumentSection.document_id == document.id)
            .order_by(DocumentSection.position.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    def _workspace(document: Document | None, sections: Sequence[DocumentSection]) -> Workspace:
        markdown = document.latest_draft_markdown if document is not None else ""
        return Workspace(
            document=DocumentOut.model_validate(document) if document is not None else None,
            sections=[_section_out(section) for section in sections],
            progress=WorkspaceProgress(
                word_count=word_count(markdown),
                section_statuses=[
                    SectionProgress(heading=section.heading, status=section.status) for section in sections
                ],
            ),
        )

    async def get_workspace(self, project_id: str) -> Workspace:
        document = await self._document(project_id)
        return self._workspace(document, await self._sections(document))

    async def apply_edits(
        self,
        project_id: str,
        *,
        markdown: str,
        sections: Sequence[SectionInput],
        summary: str | None = None,
    ) -> Workspace:
        """Replace the whole draft; sections are matched by heading, case-insensitively."""
        document = await self._document(project_id, create=True)
        existing = {normalize_heading(section.heading): section for section in await self._sections(document)}
        now = utcnow()
        kept: list[DocumentSection] = []
        for index, incoming in enumerate(sections):
            key = normalize_heading(incoming.heading)
            position = incoming.order if incoming.order is not None else index
            section = existing.pop(key, None)
            if section is None:
                section = DocumentSection(
                    document_id=document.id,
                    heading=incoming.heading.strip(),
                    content=incoming.content,
                    position=position,
                    status=incoming.status or "drafting",
                    version=1,
                    updated_at=now,
                )
                self.db.add(section)
            else:
                status = incoming.status or section.status
                if section.content != incoming.content or section.status != status:
                    section.version += 1
                    section.updated_at = now
                section.heading = incoming.heading.strip()
                section.content = incoming.content
                section.status = status
                section.position = position
            kept.append(section)
        for stale in existing.values():
            await self.db.delete(stale)

        kept.sort(key=lambda section: section.position)
        for index, section in enumerate(kept):
            section.position = index
        document.latest_draft_markdown = markdown
        if summary is not None:
            document.summary = summary
        document.status = derive_document_status(kept)
        document.updated_at = now
        await self.db.commit()
        return self._workspace(document, kept)

    async def manage_outline(self, project_id: str, operations: Sequence[OutlineOperation]) -> Workspace:
        document = await self._document(project_id, create=True)
        sections = await self._sections(document)
        now = utcnow()

        def find(heading: str) -> DocumentSection:
            key = normalize_heading(heading)
            for section in sections:
                if normalize_heading(section.heading) == key:
                    return section
            raise OutlineError(f'Section "{heading}" not found')

        for operation in operations:
            if operation.action == "add":
                if any(normalize_heading(s.heading) == normalize_heading(operation.heading) for s in sections):
                    continue
                section = DocumentSection(
                    document_id=document.id,
                    heading=operation.heading.strip(),
                    content="",
                    status=operation.status or "drafting",
                    version=1,
                    updated_at=now,
                )
                self.db.add(section)
                position = len(sections) if operation.position is None else max(0, operation.position)
                sections.insert(min(position, len(sections)), section)
            elif operation.action == "rename":
                if not operation.new_heading:
                    raise OutlineError("newHeading is required to rename a section")
                section = find(operation.heading)
                section.heading = operation.new_heading.strip()
                section.version += 1
                section.updated_at = now
            elif operation.action == "reorder":
                if operation.position is None:
                    raise OutlineError("position is required to reorder a section")
                section = find(operation.heading)
                sections.remove(section)
                sections.insert(min(max(0, operation.position), len(sections)), section)
            elif operation.action == "remove":
                section = find(operation.heading)
                sections.remove(section)
                await self.db.delete(section)
            if operation.status and operation.action in ("rename", "reorder"):
                find(operation.new_heading or operation.heading).status = operation.status

        for index, section in enumerate(sections):
            section.position = index
        document.latest_draft_markdown = render_markdown(sections)
        document.status = derive_document_status(sections)
        document.updated_at = now
        await self.db.commit()
        return self._workspace(document, sections)

    async def enqueue_draft_update(
        self,
        project_id: str,
        *,
        session_id: str | None,
        urgency: str | None = None,
        summary: str | None = None,
        message_pointers: Sequence[str] = (),
        transcript_anchors: Sequence[str] = (),
        prompt_context: Any = None,
    ) -> DraftJobOut:
        if await self.db.get(Project, project_id) is None:
            raise ProjectNotFound(project_id)
        now = utcnow()
        jobs = (
            await self.db.execute(
                select(DraftJob).where(DraftJob.project_id == project_id).order_by(DraftJob.created_at.desc())
            )
        ).scalars().all()

        active = next((job for job in jobs if job.status in ACTIVE_JOB_STATUSES), None)
        if active is not None:
            self._merge(active, summary, urgency, message_pointers, transcript_anchors, prompt_context, now)
            await self.db.commit()
            logger.info("draft_job_merged", job_id=active.id, project_id=project_id)
            return DraftJobOut.model_validate(active)

        normalized = normalize_summary(summary)
        if normalized:
            window = timedelta(seconds=settings.draft_dedupe_window_seconds)
            duplicate = next(
                (
                    job
                    for job in jobs
                    if normalize_summary(job.summary) == normalized and now - _aware(job.created_at) <= window
                ),
                None,
            )
            if duplicate is not None:
                if urgency and urgency != (duplicate.urgency or ""):
                    self._merge(duplicate, None, urgency, message_pointers, transcript_anchors, prompt_context, now)
                    await self.db.commit()
                logger.info("draft_job_deduplicated", job_id=duplicate.id, project_id=project_id)
                return DraftJobOut.model_validate(duplicate)

        job = DraftJob(
            project_id=project_id,
            session_id=session_id,
            status="queued",
            summary=summary,
            urgency=urgency,
            message_pointers=list(message_pointers),
            transcript_anchors=list(transcript_anchors),
            prompt_context=prompt_context,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        await self.db.commit()
        logger.info("draft_job_queued", job_id=job.id, project_id=project_id)
        return DraftJobOut.model_validate(job)

    @staticmethod
    def _merge(
        job: DraftJob,
        summary: str | None,
        urgency: str | None,
        message_pointers: Sequence[str],
        transcript_anchors: Sequence[str],
        prompt_context: Any,
        now: datetime,
    ) -> None:
        if summary:
            job.summary = summary
        if urgency:
            job.urgency = urgency
        job.message_pointers = _union(job.message_pointers, message_pointers)
        job.transcript_anchors = _union(job.transcript_anchors, transcript_anchors)
        if prompt_context is not None:
            job.prompt_context = prompt_context
        job.updated_at = now

    async def claim_job(self, job_id: str) -> DraftJob | None:
        """Move one queued job to running. None when it is not queued any more."""
        result = await self.db.execute(
            update(DraftJob)
            .where(DraftJob.id == job_id, DraftJob.status == "queued")
            .values(status="running", attempt_count=DraftJob.attempt_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            return None
        return await self.db.get(DraftJob, job_id, populate_existing=True)

    async def claim_next_job(self, *, idle_for: timedelta | None = None) -> DraftJob | None:
        """Claim the oldest queued job, optionally only one untouched for ``idle_for``."""
        query = select(DraftJob.id).where(DraftJob.status == "queued")
        if idle_for is not None:
            query = query.where(DraftJob.updated_at <= utcnow() - idle_for)
        candidates = (await self.db.execute(query.order_by(DraftJob.created_at.asc()).limit(5))).scalars().all()
        for job_id in candidates:
            job = await self.claim_job(job_id)
            if job is not None:
                return job
        return None

    async def fail_job(self, job_id: str, error: str, *, retry: bool = True) -> str | None:
        """Re-queue a failed job while attempts remain, else mark it ``error``."""
        job = await self.db.get(DraftJob, job_id, populate_existing=True)
        if job is None:
            return None
        retrying = retry and (job.attempt_count or 0) < settings.draft_max_attempts
        job.status = "queued" if retrying else "error"
        job.error = error
        job.updated_at = utcnow()
        await self.db.commit()
        logger.info(
            "draft_job_requeued" if retrying else "draft_job_errored",
            job_id=job_id,
            attempt=job.attempt_count,
        )
        return job.status

    async def finish_job(self, job_id: str, *, status: str, summary: str | None = None, error: str | None = None) -> None:
        job = await self.db.get(DraftJob, job_id)
        if job is None:
            return
        job.status = status
        if summary is not None:
            job.summary = summary
        job.error = error
        job.updated_at = utcnow()
        await self.db.commit()
