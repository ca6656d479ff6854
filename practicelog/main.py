from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from . import config
from .config import DEFAULT_TIMING, SessionTiming
from .identity import get_user_by_id, resolve_user_id, session_user_id
from .ledger import LedgerUnavailableError, ProgressLedger
from .listen_ws import websocket_listen
from .models import init_db
from .progress_client import LedgerProgressClient
from .schemas import CompletionEventOut, MeOut, ProgressCreated, UserOut

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    db_path: Optional[str] = None,
    *,
    content_path: Optional[str] = None,
    auth_enabled: Optional[bool] = None,
    timing: SessionTiming = DEFAULT_TIMING,
) -> FastAPI:
    db_path = db_path or config.DATABASE_PATH
    content_path = content_path or config.CONTENT_PATH
    auth_enabled = config.AUTH_ENABLED if auth_enabled is None else auth_enabled
    ledger = ProgressLedger(db_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(db_path)
        logger.info("Database initialized")
        if not auth_enabled:
            logger.warning("OAuth credentials not found - running in DEV mode without authentication")
        yield

    app = FastAPI(title="Practice listening tracker", lifespan=lifespan)
    app.state.ledger = ledger

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=config.SESSION_SECRET,
        https_only=config.IS_PRODUCTION,
    )

    def _user_id(request) -> Optional[int]:
        return resolve_user_id(
            request, auth_enabled=auth_enabled, default_user_id=config.DEFAULT_USER_ID
        )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/content")
    async def get_content():
        """Catalog of categories and practices, served verbatim."""
        try:
            with open(content_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load content from {content_path}: {e}")
            return JSONResponse({"error": "Failed to load content"}, status_code=500)

    @app.get("/api/me")
    async def get_me(request: Request) -> MeOut:
        user_id = session_user_id(request)
        if user_id is None:
            raise HTTPException(401, "Unauthorized")
        user = await get_user_by_id(user_id, db_path)
        if not user:
            raise HTTPException(401, "User not found")
        return MeOut(user=UserOut(
            id=user["id"], provider=user["provider"],
            email=user["email"], created_at=user["created_at"],
        ))

    @app.post("/auth/logout")
    async def logout(request: Request):
        request.session.clear()
        return {"success": True}

    @app.get("/api/progress")
    async def get_progress(request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return {}
        logger.info(f"GET /api/progress - userId: {user_id}")
        try:
            return await ledger.aggregate(user_id)
        except LedgerUnavailableError:
            return JSONResponse({"error": "Failed to get progress"}, status_code=500)

    @app.post("/api/progress", status_code=201)
    async def add_progress(request: Request):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None
        practice_id = body.get("practice_id") if isinstance(body, dict) else None
        if not practice_id or not isinstance(practice_id, str):
            logger.warning(f"Invalid practice_id received: {body!r}")
            return JSONResponse({"error": "practice_id is required"}, status_code=400)

        user_id = _user_id(request)
        if user_id is None:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        logger.info(f"POST /api/progress - userId: {user_id}, practice_id: {practice_id}")
        try:
            event_id = await ledger.append(user_id, practice_id)
        except LedgerUnavailableError:
            return JSONResponse({"error": "Failed to add progress"}, status_code=500)
        return ProgressCreated(id=event_id)

    @app.get("/api/progress/history")
    async def get_history(request: Request, practice_id: Optional[str] = None) -> list[CompletionEventOut]:
        user_id = _user_id(request)
        if user_id is None:
            return []
        try:
            rows = await ledger.events(user_id, practice_id)
        except LedgerUnavailableError:
            raise HTTPException(500, "Failed to get progress history")
        return [
            CompletionEventOut(id=r["id"], practice_id=r["practice_id"], occurred_at=r["occurred_at"])
            for r in rows
        ]

    @app.websocket("/ws/listen/{practice_id}")
    async def ws_listen(websocket: WebSocket, practice_id: str):
        """Listening session for an open practice page."""
        user_id = _user_id(websocket)
        client = LedgerProgressClient(ledger, user_id) if user_id is not None else None
        await websocket_listen(websocket, practice_id, client, timing=timing)

    return app


app = create_app()
