"""In-process session store for local runs and tests."""

import threading
from collections.abc import Collection
from dataclasses import dataclass, field, fields, replace
from uuid import UUID

from cast_orchestrator.domain.errors import SessionConflict, SessionNotFound, StoreError
from cast_orchestrator.domain.sessions import (
    ACTIVE_STATUSES,
    CastSession,
    SessionStatus,
)
from cast_orchestrator.services.sessions import SessionStore

_FIELD_NAMES = frozenset(item.name for item in fields(CastSession))


@dataclass
class InMemorySessionStore(SessionStore):
    """Dict-backed store; each call holds a lock so updates are atomic."""

    sessions: dict[UUID, CastSession] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def save(self, session: CastSession) -> None:
        with self._lock:
            if session.session_id in self.sessions:
                raise StoreError(f"Session {session.session_id} already exists")
            self.sessions[session.session_id] = session

    def get(self, session_id: UUID) -> CastSession | None:
        with self._lock:
            return self.sessions.get(session_id)

    def update(
        self,
        session_id: UUID,
        changes: dict[str, object],
        expected_statuses: Collection[SessionStatus] | None = None,
        expected_fields: dict[str, object] | None = None,
    ) -> CastSession:
        expected_fields = expected_fields or {}
        unknown = (set(changes) | set(expected_fields)) - _FIELD_NAMES
        if unknown:
            raise StoreError(f"Unknown session fields: {sorted(unknown)}")
        with self._lock:
            current = self.sessions.get(session_id)
            if current is None:
                raise SessionNotFound(str(session_id))
            if (
                expected_statuses is not None
                and current.status not in expected_statuses
            ):
                raise SessionConflict(
                    f"Session {session_id} is {current.status}, "
                    f"expected one of {sorted(expected_statuses)}"
                )
            for name, expected in expected_fields.items():
                actual = getattr(current, name)
                if actual != expected:
                    raise SessionConflict(
                        f"Session {session_id} has {name}={actual!r}, "
                        f"expected {expected!r}"
                    )
            updated = replace(current, **changes)
            self.sessions[session_id] = updated
            return updated

    def delete(self, session_id: UUID) -> None:
        with self._lock:
            self.sessions.pop(session_id, None)

    def list_active(self) -> list[CastSession]:
        with self._lock:
            active = [
                session
                for session in self.sessions.values()
                if session.status in ACTIVE_STATUSES
            ]
        return sorted(active, key=lambda session: session.updated_at)
