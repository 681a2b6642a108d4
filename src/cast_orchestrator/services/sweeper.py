"""Periodic reconciliation for sessions that lost their workflow."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from cast_orchestrator.domain.errors import StoreError
from cast_orchestrator.services.sessions import SessionStore, WorkflowLauncher

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class OrphanSweeper:
    """Restarts workflows for stale sessions nobody is driving.

    A session is stale once its workflow lease has not been renewed within
    ``staleness``. The restarted workflow claims the lease before acting and
    re-derives its phase from the record, so the same restart either
    finishes a recorded terminate request or resumes provisioning and
    monitoring where the lost workflow left off.
    """

    store: SessionStore
    workflows: WorkflowLauncher
    staleness: timedelta
    clock: Callable[[], datetime] = field(default=_utcnow)

    def sweep(self) -> list[UUID]:
        """Run one reconciliation pass and return the resumed session ids."""
        now = self.clock()
        resumed: list[UUID] = []
        for session in self.store.list_active():
            if self.workflows.is_running(session.session_id):
                continue
            if now - session.last_seen_at < self.staleness:
                continue
            action = "terminate" if session.terminate_requested_at else "resume"
            logger.warning(
                "Orphaned session %s (%s, last seen %s); restarting workflow to %s",
                session.session_id,
                session.status,
                session.last_seen_at.isoformat(),
                action,
            )
            if self.workflows.start(session.session_id):
                resumed.append(session.session_id)
        return resumed

    async def run_forever(self, interval: float) -> None:
        """Sweep every ``interval`` seconds until cancelled."""
        while True:
            try:
                resumed = self.sweep()
            except StoreError:
                logger.exception("Orphan sweep failed")
            else:
                if resumed:
                    logger.info("Orphan sweep resumed %d sessions", len(resumed))
            await asyncio.sleep(interval)
