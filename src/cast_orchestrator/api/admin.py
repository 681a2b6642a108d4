"""Admin API endpoints with simple token auth."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID  # noqa: TC003

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status

if TYPE_CHECKING:
    from cast_orchestrator.containers import AppContainer

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_admin_token(request: Request) -> str:
    container: AppContainer = request.app.state.container
    return container.settings.admin_token


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    admin_token: str = Depends(_get_admin_token),
) -> None:
    """Ensure requests include a valid admin token."""
    if not x_admin_token or x_admin_token != admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get("/health", dependencies=[Depends(require_admin)])
async def admin_health(request: Request) -> dict[str, object]:
    """Admin health check with the number of live workflows."""
    container: AppContainer = request.app.state.container
    return {
        "status": "ok",
        "running_workflows": len(container.workflow_engine.running_sessions()),
    }


@router.post("/sweep", dependencies=[Depends(require_admin)])
async def run_sweep(request: Request) -> dict[str, object]:
    """Run one orphan sweep immediately."""
    container: AppContainer = request.app.state.container
    resumed = container.sweeper.sweep()
    return {"resumed": [str(session_id) for session_id in resumed]}


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
async def delete_session(session_id: UUID, request: Request) -> Response:
    """Delete a terminated or failed session record."""
    container: AppContainer = request.app.state.container
    container.coordinator.delete_session(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
