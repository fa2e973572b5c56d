from typing import Annotated

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ghostwriter.db import get_db

router = APIRouter()


@router.get("/health")
async def health(request: Request, db: Annotated[AsyncSession, Depends(get_db)]):
    active_sessions = len(request.app.state.registry)
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ok", "db": "connected", "active_sessions": active_sessions}
    except Exception:
        return {"status": "degraded", "db": "disconnected", "active_sessions": active_sessions}
