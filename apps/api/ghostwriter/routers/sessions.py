from fastapi import APIRouter, HTTPException, Request

from ghostwriter.realtime.lifecycle import RealtimeSessionController, StartOptions
from ghostwriter.realtime.registry import SessionRegistry
from ghostwriter.schemas.projects import ProjectBundle
from ghostwriter.schemas.sessions import (
    AssignProject,
    SessionContextUpdate,
    SessionHandleResponse,
    SessionSettings,
    SessionSnapshot,
    SessionStart,
    TextMessage,
)

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _controller(request: Request, handle: str) -> RealtimeSessionController:
    controller = _registry(request).get(handle)
    if controller is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return controller


@router.post("", response_model=SessionHandleResponse, status_code=201)
async def start_session(body: SessionStart, request: Request):
    registry = _registry(request)
    controller = registry.create()
    registry.start(
        controller,
        StartOptions(
            project_id=body.project_id,
            defer_project=body.defer_project,
            language=body.language,
            noise_profile=body.noise_profile,
            turn_detection=body.turn_detection,
            bypass_blueprint=body.bypass_blueprint,
        ),
    )
    return SessionHandleResponse(handle=controller.handle, status=controller.status.value)


@router.get("/{handle}", response_model=SessionSnapshot)
async def get_session(handle: str, request: Request):
    return SessionSnapshot(**_controller(request, handle).snapshot())


@router.post("/{handle}/stop", response_model=SessionHandleResponse)
async def stop_session(handle: str, request: Request):
    controller = _controller(request, handle)
    await controller.stop("Stopped by user")
    _registry(request).remove(handle)
    return SessionHandleResponse(handle=handle, status=controller.status.value)


@router.post("/{handle}/project")
async def assign_project(handle: str, body: AssignProject, request: Request) -> dict:
    controller = _controller(request, handle)
    try:
        bundle: ProjectBundle = await controller.assign_project(body.project_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return bundle.to_wire()


@router.post("/{handle}/messages", status_code=202)
async def send_message(handle: str, body: TextMessage, request: Request) -> dict:
    controller = _controller(request, handle)
    if not await controller.send_text(body.text):
        raise HTTPException(status_code=409, detail="Session is not connected")
    return {"sent": True}


@router.patch("/{handle}/settings", response_model=SessionSnapshot)
async def update_settings(handle: str, body: SessionSettings, request: Request):
    controller = _controller(request, handle)
    if body.language is not None:
        await controller.set_language(body.language)
    if body.noise_profile is not None:
        await controller.set_noise_profile(body.noise_profile)
    if body.turn_detection is not None:
        controller.set_turn_detection(body.turn_detection)
    return SessionSnapshot(**controller.snapshot())


@router.patch("/{handle}/context", response_model=SessionSnapshot)
async def update_context(handle: str, body: SessionContextUpdate, request: Request):
    controller = _controller(request, handle)
    try:
        await controller.set_context(mode=body.mode, bypass_blueprint=body.bypass_blueprint)
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return SessionSnapshot(**controller.snapshot())
