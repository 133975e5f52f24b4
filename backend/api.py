from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from broadcaster import QueueBroadcaster
from meeting_store import (
    InvalidMeetingCodeError,
    MeetingCodeTakenError,
    MeetingStore,
    new_participant_id,
)
from persistence import PersistenceGateway
from phase_timer import AsyncioScheduler
from schemas import CreatedMeeting, CreateWithIdInput, IdentityOutput, dump_wire
from session_engine import ClientSession, SessionEngine, cookie_name
from settings import Settings, load_settings

logger = logging.getLogger(__name__)

COOKIE_MAX_AGE = 31_536_000


def _created(meeting_id: str, admin_token: str) -> dict:
    return dump_wire(
        CreatedMeeting(
            meeting_id=meeting_id,
            admin_token=admin_token,
            board_url=f"/board/{meeting_id}",
            join_url=f"/join/{meeting_id}",
            admin_url=f"/admin/{meeting_id}",
        )
    )


async def _drain(websocket: WebSocket, queue: asyncio.Queue) -> None:
    try:
        while True:
            frame = await queue.get()
            await websocket.send_json(frame)
    except (WebSocketDisconnect, RuntimeError):
        return


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    cfg = settings or load_settings()
    logging.basicConfig(level=getattr(logging, cfg.log_level, logging.INFO))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = MeetingStore(cfg)
        broadcaster = QueueBroadcaster()
        engine = SessionEngine(
            store,
            broadcaster,
            AsyncioScheduler(asyncio.get_running_loop()),
            gateway=PersistenceGateway(cfg.state_file),
        )
        engine.restore()
        app.state.engine = engine
        app.state.broadcaster = broadcaster
        try:
            yield
        finally:
            engine.shutdown()

    app = FastAPI(title="Lean Coffee API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    def health():
        return {"ok": True}

    @app.get("/healthz")
    def healthz():
        return Response(content="ok", media_type="text/plain")

    @app.post("/api/create")
    def post_create(request: Request):
        meeting, admin_token = request.app.state.engine.create_meeting()
        return _created(meeting.id, admin_token)

    @app.post("/api/create-with-id")
    def post_create_with_id(payload: CreateWithIdInput, request: Request):
        try:
            meeting, admin_token = request.app.state.engine.create_meeting(payload.meeting_id or "")
        except InvalidMeetingCodeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except MeetingCodeTakenError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _created(meeting.id, admin_token)

    @app.get("/api/meetings/{meeting_id}")
    def get_meeting(meeting_id: str, request: Request):
        view = request.app.state.engine.view(meeting_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Meeting not found")
        return view

    @app.get("/api/join/{meeting_id}")
    def get_identity(meeting_id: str, request: Request, response: Response):
        mid = meeting_id.upper()
        if request.app.state.engine.view(mid) is None:
            raise HTTPException(status_code=404, detail="Meeting not found")
        name = cookie_name(mid)
        participant_id = request.cookies.get(name)
        if not participant_id:
            participant_id = new_participant_id()
            response.set_cookie(name, participant_id, max_age=COOKIE_MAX_AGE, path="/", samesite="lax")
        return dump_wire(IdentityOutput(meeting_id=mid, participant_id=participant_id))

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        engine: SessionEngine = websocket.app.state.engine
        broadcaster: QueueBroadcaster = websocket.app.state.broadcaster
        await websocket.accept()
        session = ClientSession(client_id=uuid4().hex, cookies=dict(websocket.cookies))
        queue = broadcaster.connect(session.client_id)
        writer = asyncio.create_task(_drain(websocket, queue))
        try:
            while True:
                try:
                    message: Any = await websocket.receive_json()
                except (ValueError, KeyError):
                    logger.debug("ignoring non-JSON frame from %s", session.client_id)
                    continue
                if not isinstance(message, dict):
                    continue
                engine.dispatch(session, message.get("event"), message.get("data"))
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(session.client_id)
            writer.cancel()

    return app


app = create_app()
