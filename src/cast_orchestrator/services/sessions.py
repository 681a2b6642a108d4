"""Session coordinator: the request-facing side of cast orchestration."""

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID, uuid4

from pydantic import AnyUrl, TypeAdapter, ValidationError

from cast_orchestrator.domain.errors import (
    InvalidInput,
    SessionConflict,
    SessionNotFound,
)
from cast_orchestrator.domain.sessions import (
    ACTIVE_STATUSES,
    CastSession,
    SessionStatus,
)

logger = logging.getLogger(__name__)

_URL_ADAPTER = TypeAdapter(AnyUrl)


class SessionStore(Protocol):
    """Persistence interface for cast sessions."""

    def save(self, session: CastSession) -> None:
        """Insert a new session record."""

    def get(self, session_id: UUID) -> CastSession | None:
        """Return a session by id, or None when it does not exist."""

    def update(
        self,
        session_id: UUID,
        changes: dict[str, object],
        expected_statuses: Collection[SessionStatus] | None = None,
        expected_fields: dict[str, object] | None = None,
    ) -> CastSession:
        """Apply field changes atomically and return the updated session.

        Raises SessionNotFound for unknown ids and SessionConflict when
        expected_statuses is given and the current status is not among them,
        or when a field named in expected_fields holds a different value.
        """

    def delete(self, session_id: UUID) -> None:
        """Delete a session record."""

    def list_active(self) -> list[CastSession]:
        """Return sessions whose status is created, connecting or active."""


class WorkflowLauncher(Protocol):
    """Interface for starting and signalling session workflows."""

    def start(self, session_id: UUID) -> bool:
        """Start the workflow for a session; False if one is already running."""

    def signal_terminate(self, session_id: UUID) -> bool:
        """Deliver the terminate signal; False if no workflow is running."""

    def is_running(self, session_id: UUID) -> bool:
        """Return whether a live workflow owns the session."""


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def validate_game_url(raw: str) -> str:
    """Return the game URL if it is absolute and well-formed."""
    candidate = raw.strip() if isinstance(raw, str) else ""
    if not candidate:
        raise InvalidInput("gameUrl is required")
    try:
        url = _URL_ADAPTER.validate_python(candidate)
    except ValidationError as exc:
        raise InvalidInput(f"gameUrl is not a valid absolute URL: {raw!r}") from exc
    if not url.host:
        raise InvalidInput(f"gameUrl must include a host: {raw!r}")
    return candidate


@dataclass
class SessionCoordinator:
    """Validates requests, persists sessions and drives their workflows."""

    store: SessionStore
    workflows: WorkflowLauncher
    clock: Callable[[], datetime] = field(default=_utcnow)

    def create_session(
        self, game_url: str, session_data: dict[str, object] | None = None
    ) -> CastSession:
        """Persist a new session and start its workflow."""
        validated_url = validate_game_url(game_url)
        now = self.clock()
        session = CastSession(
            session_id=uuid4(),
            status=SessionStatus.CREATED,
            game_url=validated_url,
            session_data=dict(session_data or {}),
            created_at=now,
            updated_at=now,
        )
        self.store.save(session)
        logger.info("Created session %s for %s", session.session_id, validated_url)
        try:
            self.workflows.start(session.session_id)
        except RuntimeError:
            # The created record stays behind for the orphan sweep.
            logger.exception(
                "Failed to start workflow for session %s", session.session_id
            )
        return session

    def get_session(self, session_id: UUID) -> CastSession:
        """Return a session or raise SessionNotFound."""
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(str(session_id))
        return session

    def terminate_session(self, session_id: UUID) -> CastSession:
        """Durably record a terminate request and signal the workflow.

        Returns as soon as the request is stored; teardown runs in the
        workflow and is observed through get_session.
        """
        session = self.get_session(session_id)
        if session.status.is_terminal:
            return session
        if session.terminate_requested_at is None:
            try:
                session = self.store.update(
                    session_id,
                    {"terminate_requested_at": self.clock()},
                    expected_statuses=ACTIVE_STATUSES,
                )
            except SessionConflict:
                # Reached a terminal status between the read and the write.
                return self.get_session(session_id)
            logger.info("Terminate requested for session %s", session_id)
        self.workflows.signal_terminate(session_id)
        return session

    def list_active_sessions(self) -> list[CastSession]:
        """Return all sessions that have not reached a terminal status."""
        return self.store.list_active()

    def delete_session(self, session_id: UUID) -> None:
        """Delete a session record once it is terminal."""
        session = self.get_session(session_id)
        if not session.status.is_terminal:
            raise InvalidInput(
                f"Session {session_id} is still {session.status}; terminate it first"
            )
        self.store.delete(session_id)
        logger.info("Deleted session %s", session_id)
