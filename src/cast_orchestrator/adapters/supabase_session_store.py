"""Supabase-backed session store."""

from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from cast_orchestrator.domain.errors import SessionConflict, SessionNotFound, StoreError
from cast_orchestrator.domain.sessions import (
    ACTIVE_STATUSES,
    CastSession,
    SessionStatus,
)
from cast_orchestrator.services.sessions import SessionStore

_TABLE = "cast_sessions"
_COLUMNS = (
    "session_id, status, game_url, session_data, renderer_instance_id, "
    "created_at, updated_at, error, terminate_requested_at, "
    "workflow_owner, workflow_heartbeat_at"
)


@dataclass
class SupabaseSessionStore(SessionStore):
    """Supabase implementation for cast sessions."""

    client: Client

    def save(self, session: CastSession) -> None:
        """Insert a session row."""
        response = _execute(
            self.client.table(_TABLE).insert(_to_row(session)),
            f"create session {session.session_id}",
        )
        if not response.data:
            raise StoreError(f"Failed to create session {session.session_id}")

    def get(self, session_id: UUID) -> CastSession | None:
        """Return a session by id, if present."""
        response = _execute(
            self.client.table(_TABLE)
            .select(_COLUMNS)
            .eq("session_id", str(session_id))
            .limit(1),
            f"load session {session_id}",
        )
        if not response.data:
            return None
        return _from_row(response.data[0])

    def update(
        self,
        session_id: UUID,
        changes: dict[str, object],
        expected_statuses: Collection[SessionStatus] | None = None,
        expected_fields: dict[str, object] | None = None,
    ) -> CastSession:
        """Update the given columns in a single row-level statement."""
        query = (
            self.client.table(_TABLE)
            .update(_serialize_changes(changes))
            .eq("session_id", str(session_id))
        )
        if expected_statuses is not None:
            query = query.in_("status", [str(status) for status in expected_statuses])
        for column, expected in (expected_fields or {}).items():
            if expected is None:
                query = query.is_(column, "null")
            else:
                query = query.eq(column, _serialize(expected))
        response = _execute(query, f"update session {session_id}")
        if response.data:
            return _from_row(response.data[0])
        current = self.get(session_id)
        if current is None:
            raise SessionNotFound(str(session_id))
        raise SessionConflict(
            f"Session {session_id} ({current.status}) did not match "
            f"statuses {sorted(expected_statuses or [])} "
            f"and fields {sorted(expected_fields or {})}"
        )

    def delete(self, session_id: UUID) -> None:
        """Delete a session row."""
        _execute(
            self.client.table(_TABLE).delete().eq("session_id", str(session_id)),
            f"delete session {session_id}",
        )

    def list_active(self) -> list[CastSession]:
        """Return all non-terminal sessions, oldest update first."""
        response = _execute(
            self.client.table(_TABLE)
            .select(_COLUMNS)
            .in_("status", [str(status) for status in ACTIVE_STATUSES])
            .order("updated_at"),
            "list active sessions",
        )
        return [_from_row(row) for row in response.data or []]


def _execute(query: Any, action: str) -> Any:
    try:
        return query.execute()
    except (APIError, httpx.HTTPError) as exc:
        raise StoreError(f"Failed to {action}: {exc}") from exc


def _to_row(session: CastSession) -> dict[str, object]:
    return {
        "session_id": str(session.session_id),
        "status": str(session.status),
        "game_url": session.game_url,
        "session_data": session.session_data,
        "renderer_instance_id": session.renderer_instance_id,
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
        "error": session.error,
        "terminate_requested_at": _isoformat(session.terminate_requested_at),
        "workflow_owner": session.workflow_owner,
        "workflow_heartbeat_at": _isoformat(session.workflow_heartbeat_at),
    }


def _serialize_changes(changes: dict[str, object]) -> dict[str, object]:
    return {key: _serialize(value) for key, value in changes.items()}


def _serialize(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, SessionStatus):
        return str(value)
    return value


def _from_row(row: dict[str, object]) -> CastSession:
    return CastSession(
        session_id=UUID(str(row["session_id"])),
        status=SessionStatus(row["status"]),
        game_url=str(row["game_url"]),
        session_data=row.get("session_data") or {},
        renderer_instance_id=row.get("renderer_instance_id"),
        created_at=datetime.fromisoformat(str(row["created_at"])),
        updated_at=datetime.fromisoformat(str(row["updated_at"])),
        error=row.get("error"),
        terminate_requested_at=_parse_optional(row.get("terminate_requested_at")),
        workflow_owner=row.get("workflow_owner"),
        workflow_heartbeat_at=_parse_optional(row.get("workflow_heartbeat_at")),
    )


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_optional(value: object) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value))
