"""Domain models for cast sessions."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from uuid import UUID


class SessionStatus(StrEnum):
    """Session-visible lifecycle status."""

    CREATED = "created"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ERROR = "error"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class WorkflowPhase(StrEnum):
    """Internal phase of a session workflow."""

    INIT = "init"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    TERMINATING = "terminating"
    FAILED = "failed"
    DONE = "done"


class RendererHealth(StrEnum):
    """Health reported by a renderer instance."""

    PROVISIONING = "provisioning"
    STREAMING = "streaming"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset(
    {SessionStatus.CREATED, SessionStatus.CONNECTING, SessionStatus.ACTIVE}
)
TERMINAL_STATUSES = frozenset({SessionStatus.ERROR, SessionStatus.TERMINATED})

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset(
        {SessionStatus.CONNECTING, SessionStatus.ERROR, SessionStatus.TERMINATED}
    ),
    SessionStatus.CONNECTING: frozenset(
        {SessionStatus.ACTIVE, SessionStatus.ERROR, SessionStatus.TERMINATED}
    ),
    SessionStatus.ACTIVE: frozenset({SessionStatus.TERMINATED}),
    SessionStatus.ERROR: frozenset(),
    SessionStatus.TERMINATED: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """Return whether the state machine allows moving from current to target."""
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class CastSession:
    """Represents a persisted cast session.

    ``workflow_owner`` and ``workflow_heartbeat_at`` form the lease of the
    workflow driving the session; a lease whose heartbeat is older than the
    staleness window may be claimed by another process.
    """

    session_id: UUID
    status: SessionStatus
    game_url: str
    session_data: dict[str, object]
    created_at: datetime
    updated_at: datetime
    renderer_instance_id: str | None = None
    error: str | None = None
    terminate_requested_at: datetime | None = None
    workflow_owner: str | None = None
    workflow_heartbeat_at: datetime | None = None

    @property
    def last_seen_at(self) -> datetime:
        """Latest sign of life from whichever workflow drives the session."""
        return self.workflow_heartbeat_at or self.updated_at


def phase_for(session: CastSession) -> WorkflowPhase:
    """Derive the workflow phase from a persisted session record.

    FAILED is never derived: a failure that was not yet persisted is
    rediscovered by the fresh health check or the provisioning deadline.
    """
    if session.status.is_terminal:
        return WorkflowPhase.DONE
    if session.terminate_requested_at is not None:
        return WorkflowPhase.TERMINATING
    if session.status is SessionStatus.CREATED:
        return WorkflowPhase.INIT
    if session.status is SessionStatus.CONNECTING:
        return WorkflowPhase.PROVISIONING
    return WorkflowPhase.ACTIVE
