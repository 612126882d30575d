"""API module: REST routes for the DJ and the `/ws` real-time channel.

`create_app` builds a FastAPI application around one `Orchestrator`, the
object that owns all in-memory state. Routes reach it through
`app.state.orchestrator`; nothing here keeps state of its own.

Errors from the core are rendered as ``{"error": <message>}`` with the
status code the error type carries.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional
from fastapi import APIRouter, Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .orchestrator import Orchestrator
from .errors import InvalidCredentials, NotFound, SyncError, UpstreamError, status_for_upstream
from .models import (
    LoginRequest,
    LoginResponse,
    PendingCancelRequest,
    PlaybackControlRequest,
    QueueAddRequest,
    QueueRemoveRequest,
    SkipRequest,
)
from . import config

logger = logging.getLogger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_ws_orchestrator(websocket: WebSocket) -> Orchestrator:
    return websocket.app.state.orchestrator


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise InvalidCredentials("No authorization header")
    if authorization.lower().startswith("bearer "):
        return authorization.split(None, 1)[1].strip()
    return authorization.strip()


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.post("/auth/dj-login")
async def dj_login(body: LoginRequest, orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    session = orchestrator.login(body.username, body.password)
    return LoginResponse(token=session.token, username=session.username).to_wire()


@router.get("/auth/me")
async def whoami(authorization: Optional[str] = Header(None), orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    token = _bearer_token(authorization)
    try:
        session = orchestrator.whoami(token)
    except NotFound as e:
        # token validation answers 401, not 404
        raise InvalidCredentials(e.message) from None
    return {"username": session.username}


@router.post("/auth/logout")
async def logout(authorization: Optional[str] = Header(None), orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    token = _bearer_token(authorization)
    try:
        orchestrator.logout(token)
    except NotFound as e:
        raise InvalidCredentials(e.message) from None
    return {"success": True}


@router.post("/spotify/queue")
async def add_to_queue(body: QueueAddRequest, orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    resp = await orchestrator.add_track(body)
    return resp.to_wire()


@router.delete("/spotify/queue")
async def remove_from_queue(body: QueueRemoveRequest, orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    return orchestrator.remove_track(body.dj_token, body.index).to_wire()


@router.delete("/spotify/pending")
async def cancel_pending(body: PendingCancelRequest, orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    pending = orchestrator.cancel_submission(body.dj_token, body.submission_id)
    return {"success": True, "pending": [p.to_wire() for p in pending]}


@router.post("/spotify/skip")
async def skip(body: SkipRequest, orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    await orchestrator.skip(body)
    return {"success": True}


@router.put("/spotify/playback")
async def playback(body: PlaybackControlRequest, orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    action = await orchestrator.control_playback(body)
    return {"success": True, "action": action.value}


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, username: Optional[str] = None, orchestrator: Orchestrator = Depends(get_ws_orchestrator)):
    """WebSocket endpoint for DJ and listener clients.

    Anyone may connect; `username` (query parameter) is only a display
    name. Authority is proven per message with the DJ token, never by the
    connection itself. On connect the client receives the queue, pending
    submissions and playback snapshot so it can resync immediately.
    """
    await websocket.accept()
    conn = await orchestrator.connect(websocket, username)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                logger.info("Dropping non-JSON frame from %s", conn.connection_id)
                continue
            logger.debug("Received from %s: %s", conn.connection_id, data)
            await orchestrator.handle_message(conn, data)
    except WebSocketDisconnect:
        logger.info("Websocket %s disconnected", conn.connection_id)
    finally:
        await orchestrator.disconnect(conn.connection_id)


async def _sync_error(request: Request, exc: SyncError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def _upstream_error(request: Request, exc: UpstreamError) -> JSONResponse:
    logger.warning("Platform call failed for %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_for_upstream(exc), content={"error": str(exc)})


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    return JSONResponse(status_code=400, content={"error": f"Missing or invalid fields ({', '.join(fields)})"})


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """Build the application around `orchestrator` (a fresh one by default)."""
    if orchestrator is None:
        orchestrator = Orchestrator(config.get_settings())
    settings = orchestrator.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.start_background_tasks()
        yield
        await orchestrator.stop_background_tasks()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(SyncError, _sync_error)
    app.add_exception_handler(UpstreamError, _upstream_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.include_router(router)
    return app


# one orchestrator for the process lifetime; uvicorn serves this app
app = create_app()
