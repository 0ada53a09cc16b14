"""
api/app.py — FastAPI app instance + session middleware + expired-session cleanup
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
import api.session as session
from config import QUOTA_STORE_PATH, SESSION_TTL
from exam_practice.services.ai_client import TextGenerationClient
from exam_practice.services.ledger import FreeQuotaStore

SESSION_COOKIE = "practice_session"

logger = logging.getLogger(__name__)


async def _cleanup_loop(interval: float = 300) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = session.cleanup_expired()
        for state in removed:
            await session.close_state(state)
        if removed:
            logger.info(f"Cleaned up {len(removed)} expired sessions")


def create_app(
    *,
    ai: Optional[TextGenerationClient] = None,
    quota_store: Optional[FreeQuotaStore] = None,
    backend_transport: Optional[httpx.AsyncBaseTransport] = None,
    live_clock: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup = asyncio.create_task(_cleanup_loop())
        try:
            yield
        finally:
            cleanup.cancel()

    app = FastAPI(title="Exam Practice CBT", docs_url=None, redoc_url=None, lifespan=lifespan)

    app.state.ai = ai or TextGenerationClient()
    app.state.quota_store = quota_store or FreeQuotaStore(QUOTA_STORE_PATH)
    app.state.backend_transport = backend_transport
    app.state.live_clock = live_clock

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Session middleware: read the session id from the cookie, issue one if missing
    @app.middleware("http")
    async def session_middleware(request: Request, call_next):
        sid = request.cookies.get(SESSION_COOKIE)
        if not sid or session.get_session(sid) is None:
            sid = session.create_session()

        request.state.session_id = sid
        response: Response = await call_next(request)
        response.set_cookie(
            key=SESSION_COOKIE,
            value=sid,
            httponly=True,
            samesite="lax",
            max_age=SESSION_TTL,
        )
        return response

    app.include_router(router)
    return app
