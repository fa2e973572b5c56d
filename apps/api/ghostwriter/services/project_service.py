from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ghostwriter.models.project import Project, ProjectBlueprint
from ghostwriter.models.session import utcnow
from ghostwriter.schemas.projects import (
    BLUEPRINT_FIELDS,
    BlueprintOut,
    ProjectBundle,
    ProjectOut,
    VoiceGuardrails,
    blueprint_attribute,
)

PROJECT_STATUSES = ("draft", "active", "archived", "intake")


class ProjectNotFound(LookupError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class ProjectService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _load(self, project_id: str) -> Project:
        project = await self.db.get(Project, project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project

    async def _blueprint(self, project_id: str) -> ProjectBlueprint | None:
        result = await self.db.execute(
            select(ProjectBlueprint).where(ProjectBlueprint.project_id == project_id)
        )
        return result.scalar_one_or_none()

    async def _ensure_blueprint(self, project_id: str) -> ProjectBlueprint:
        blueprint = await self._blueprint(project_id)
        if blueprint is None:
            blueprint = ProjectBlueprint(project_id=project_id, status="draft")
            self.db.add(blueprint)
        return blueprint

    @staticmethod
    def bundle(project: Project, blueprint: ProjectBlueprint | None) -> ProjectBundle:
        return ProjectBundle.build(
            ProjectOut.model_validate(project),
            BlueprintOut.model_validate(blueprint) if blueprint is not None else None,
        )

    async def list_projects(self, limit: int = 20) -> list[ProjectBundle]:
        projects = (
            await self.db.execute(select(Project).order_by(Project.updated_at.desc()).limit(limit))
        ).scalars().all()
        if not projects:
            return []
        blueprints = (
            await self.db.execute(
                select(ProjectBlueprint).where(
                    ProjectBlueprint.project_id.in_([project.id for project in projects])
                )
            )
        ).scalars().all()
        by_project = {blueprint.project_id: blueprint for blueprint in blueprints}
        return [self.bundle(project, by_project.get(project.id)) for project in projects]

    async def get_project(self, project_id: str) -> ProjectBundle | None:
        project = await self.db.get(Project, project_id)
        if project is None:
            return None
        return self.bundle(project, await self._blueprint(project_id))

    async def create_project(
        self, *, title: str, content_type: str, goal: str | None = None
    ) -> ProjectBundle:
        project = Project(title=title.strip(), content_type=content_type.strip(), goal=goal, status="intake")
        self.db.add(project)
        await self.db.flush()
        blueprint = ProjectBlueprint(project_id=project.id, status="draft")
        self.db.add(blueprint)
        await self.db.commit()
        return self.bundle(project, blueprint)

    async def update_project_metadata(
        self,
        project_id: str,
        *,
        title: str | None = None,
        content_type: str | None = None,
        goal: str | None = None,
        status: str | None = None,
    ) -> ProjectBundle:
        if status is not None and status not in PROJECT_STATUSES:
            raise ValueError(f"Unsupported project status {status!r}")
        project = await self._load(project_id)
        if title:
            project.title = title.strip()
        if content_type:
            project.content_type = content_type.strip()
        if goal is not None:
            project.goal = goal
        if status is not None:
            project.status = status
        project.updated_at = utcnow()
        await self.db.commit()
        return self.bundle(project, await self._blueprint(project_id))

    async def sync_blueprint_field(
        self,
        project_id: str,
        *,
        field: str,
        value: str | VoiceGuardrails | None,
        session_id: str | None = None,
        message_id: str | None = None,
    ) -> ProjectBundle:
        if field not in BLUEPRINT_FIELDS:
            raise ValueError(f"Unknown blueprint field {field!r}")
        project = await self._load(project_id)
        blueprint = await self._ensure_blueprint(project_id)
        if isinstance(value, VoiceGuardrails):
            stored = value.model_dump(exclude_none=True) or None
        else:
            stored = value
        setattr(blueprint, blueprint_attribute(field), stored)
        blueprint.status = "draft"
        if session_id:
            blueprint.intake_session_id = session_id
        if message_id:
            blueprint.intake_message_id = message_id
        blueprint.updated_at = utcnow()
        project.updated_at = blueprint.updated_at
        await self.db.commit()
        return self.bundle(project, blueprint)

    async def commit_blueprint(self, project_id: str, *, session_id: str | None = None) -> ProjectBundle:
        project = await self._load(project_id)
        blueprint = await self._ensure_blueprint(project_id)
        blueprint.status = "committed"
        if session_id:
            blueprint.intake_session_id = session_id
        blueprint.updated_at = utcnow()
        project.status = "active"
        if not (project.goal or "").strip() and blueprint.desired_outcome:
            project.goal = blueprint.desired_outcome
        project.updated_at = blueprint.updated_at
        await self.db.commit()
        return self.bundle(project, blueprint)

    async def record_transcript_pointer(
        self,
        project_id: str,
        *,
        session_id: str,
        message_id: str | None = None,
        item_id: str | None = None,
    ) -> ProjectBundle:
        project = await self._load(project_id)
        blueprint = await self._ensure_blueprint(project_id)
        blueprint.intake_session_id = session_id
        if message_id:
            blueprint.intake_message_id = message_id
        if item_id:
            blueprint.intake_item_id = item_id
        blueprint.updated_at = utcnow()
        await self.db.commit()
        return self.bundle(project, blueprint)
