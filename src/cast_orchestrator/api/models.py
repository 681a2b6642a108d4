"""Pydantic models for the session HTTP surface."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cast_orchestrator.domain.sessions import CastSession, SessionStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionRequest(_CamelModel):
    """Payload for starting a cast session."""

    game_url: str
    session_data: dict[str, object] = Field(default_factory=dict)


class SessionResponse(_CamelModel):
    """Session as returned to clients."""

    session_id: UUID
    status: SessionStatus
    game_url: str
    session_data: dict[str, object]
    renderer_instance_id: str | None = None
    created_at: datetime
    updated_at: datetime
    error: str | None = None
    terminate_requested: bool = False

    @classmethod
    def from_session(cls, session: CastSession) -> "SessionResponse":
        """Build a response from a domain record."""
        return cls(
            session_id=session.session_id,
            status=session.status,
            game_url=session.game_url,
            session_data=session.session_data,
            renderer_instance_id=session.renderer_instance_id,
            created_at=session.created_at,
            updated_at=session.updated_at,
            error=session.error,
            terminate_requested=session.terminate_requested_at is not None,
        )


class SessionListResponse(_CamelModel):
    """List of active sessions."""

    sessions: list[SessionResponse]
