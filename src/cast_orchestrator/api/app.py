"""FastAPI application factory."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from cast_orchestrator.api.admin import router as admin_router
from cast_orchestrator.api.models import (
    CreateSessionRequest,
    SessionListResponse,
    SessionResponse,
)
from cast_orchestrator.app_logging import configure_logging
from cast_orchestrator.containers import AppContainer
from cast_orchestrator.domain.errors import (
    CastError,
    InvalidInput,
    SessionConflict,
    SessionNotFound,
    StoreError,
)

_ERROR_STATUS_CODES: dict[type[CastError], int] = {
    InvalidInput: 422,
    SessionNotFound: 404,
    SessionConflict: 409,
    StoreError: 503,
}


def create_app(container: AppContainer) -> FastAPI:
    """Create a FastAPI app configured with dependencies."""
    configure_logging()
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        state_container: AppContainer = app.state.container
        sweep_task = asyncio.create_task(
            state_container.sweeper.run_forever(
                state_container.settings.sweep_interval_seconds
            ),
            name="orphan-sweeper",
        )
        logger.info(
            "Cast orchestrator started (%s)", state_container.settings.environment
        )
        yield
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
        await state_container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    app.include_router(admin_router)

    @app.exception_handler(CastError)
    async def cast_error_handler(request: Request, exc: CastError) -> JSONResponse:
        status_code = _status_code_for(exc)
        if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.error("Request %s failed: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.post(
        "/sessions",
        status_code=status.HTTP_201_CREATED,
        response_model=SessionResponse,
    )
    async def create_session(
        payload: CreateSessionRequest, request: Request
    ) -> SessionResponse:
        """Create a cast session and start provisioning its renderer."""
        state_container: AppContainer = request.app.state.container
        session = state_container.coordinator.create_session(
            game_url=payload.game_url, session_data=payload.session_data
        )
        return SessionResponse.from_session(session)

    @app.get("/sessions", response_model=SessionListResponse)
    async def list_sessions(request: Request) -> SessionListResponse:
        """Return sessions that have not reached a terminal status."""
        state_container: AppContainer = request.app.state.container
        sessions = state_container.coordinator.list_active_sessions()
        return SessionListResponse(
            sessions=[SessionResponse.from_session(session) for session in sessions]
        )

    @app.get("/sessions/{session_id}", response_model=SessionResponse)
    async def get_session(session_id: UUID, request: Request) -> SessionResponse:
        """Return a session by id."""
        state_container: AppContainer = request.app.state.container
        session = state_container.coordinator.get_session(session_id)
        return SessionResponse.from_session(session)

    @app.post(
        "/sessions/{session_id}/terminate",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=SessionResponse,
    )
    async def terminate_session(
        session_id: UUID, request: Request
    ) -> SessionResponse:
        """Request termination; teardown completes asynchronously."""
        state_container: AppContainer = request.app.state.container
        session = state_container.coordinator.terminate_session(session_id)
        return SessionResponse.from_session(session)

    return app


def _status_code_for(exc: CastError) -> int:
    for error_type, status_code in _ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR
