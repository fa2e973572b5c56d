from sqlalchemy.ext.asyncio import AsyncSession

from ghostwriter.models.session import RealtimeSession, utcnow
from ghostwriter.realtime.presets import DEFAULT_LANGUAGE, DEFAULT_NOISE_PROFILE


class SessionNotFound(LookupError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _load(self, session_id: str) -> RealtimeSession:
        session = await self.db.get(RealtimeSession, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def create_session(
        self,
        *,
        project_id: str | None,
        noise_profile: str = DEFAULT_NOISE_PROFILE,
        language: str = DEFAULT_LANGUAGE,
        defer_project: bool = False,
    ) -> str:
        session = RealtimeSession(
            project_id=project_id,
            noise_profile=noise_profile or DEFAULT_NOISE_PROFILE,
            language=language or DEFAULT_LANGUAGE,
            defer_project=defer_project,
            status="active",
        )
        self.db.add(session)
        await self.db.commit()
        return session.id

    async def update_realtime_id(self, session_id: str, realtime_session_id: str) -> None:
        session = await self._load(session_id)
        session.realtime_session_id = realtime_session_id
        await self.db.commit()

    async def complete_session(self, session_id: str) -> None:
        session = await self._load(session_id)
        if session.status == "completed":
            return
        session.status = "completed"
        session.ended_at = utcnow()
        await self.db.commit()

    async def set_noise_profile(self, session_id: str, noise_profile: str) -> None:
        session = await self._load(session_id)
        session.noise_profile = noise_profile
        await self.db.commit()

    async def assign_project(self, session_id: str, project_id: str) -> None:
        session = await self._load(session_id)
        session.project_id = project_id
        session.defer_project = False
        await self.db.commit()

    async def set_language(self, session_id: str, language: str) -> None:
        session = await self._load(session_id)
        session.language = language
        await self.db.commit()
