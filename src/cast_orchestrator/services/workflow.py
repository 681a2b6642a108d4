"""Resumable per-session workflow driving the renderer lifecycle.

Every run starts from the persisted session record. Nothing the workflow
keeps in memory is needed to resume: the phase comes from ``status``,
``renderer_instance_id`` and ``terminate_requested_at``, the provisioning
deadline from the ``updated_at`` of the ``connecting`` transition, and the
renderer's condition from a fresh health check. Terminal statuses are only
written after the renderer instance has been released.

A workflow drives a session only while it holds the session's lease
(``workflow_owner``). The lease is renewed on every poll and every status
write is conditional on it, so a workflow that lost its lease stops
instead of racing the new owner.
"""

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import TypeVar
from uuid import UUID, uuid4

from cast_orchestrator.adapters.renderer_client import RendererClient
from cast_orchestrator.config import Settings
from cast_orchestrator.domain.errors import (
    InvalidTransition,
    LeaseHeld,
    ProvisioningTimeout,
    RendererError,
    RendererTimeout,
    RendererUnreachable,
    SessionConflict,
    SessionNotFound,
)
from cast_orchestrator.domain.sessions import (
    ACTIVE_STATUSES,
    CastSession,
    RendererHealth,
    SessionStatus,
    WorkflowPhase,
    can_transition,
    phase_for,
)
from cast_orchestrator.services.sessions import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _new_owner_id() -> str:
    return f"workflow-{uuid4().hex}"


@dataclass(frozen=True)
class WorkflowPolicy:
    """Timing and retry budget for session workflows."""

    provisioning_timeout: timedelta = timedelta(seconds=45)
    poll_interval: float = 3.0
    poll_jitter: float = 1.0
    renderer_call_timeout: float = 10.0
    max_attempts: int = 4
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    lease_timeout: timedelta = timedelta(seconds=120)

    def __post_init__(self) -> None:
        if not 0 <= self.poll_jitter < self.poll_interval:
            raise ValueError(
                f"poll_jitter ({self.poll_jitter}) must be non-negative and "
                f"smaller than poll_interval ({self.poll_interval})"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkflowPolicy":
        """Build the policy from application settings."""
        return cls(
            provisioning_timeout=timedelta(
                seconds=settings.provisioning_timeout_seconds
            ),
            poll_interval=settings.health_poll_interval_seconds,
            poll_jitter=settings.health_poll_jitter_seconds,
            renderer_call_timeout=settings.renderer_call_timeout_seconds,
            max_attempts=max(1, settings.renderer_max_attempts),
            backoff_base=settings.retry_backoff_base_seconds,
            backoff_max=settings.retry_backoff_max_seconds,
            lease_timeout=timedelta(seconds=settings.orphan_staleness_seconds),
        )

    def backoff(self, attempt: int) -> float:
        """Return the delay before retry number ``attempt`` (1-based)."""
        return min(self.backoff_max, self.backoff_base * 2 ** (attempt - 1))

    def poll_delay(self, rng: random.Random) -> float:
        """Return the next poll delay, spread by up to ``poll_jitter`` either way."""
        return self.poll_interval + rng.uniform(-self.poll_jitter, self.poll_jitter)


@dataclass
class SessionWorkflow:
    """State machine for one session, from provisioning to teardown."""

    session_id: UUID
    store: SessionStore
    renderer: RendererClient
    policy: WorkflowPolicy
    terminate_signal: asyncio.Event = field(default_factory=asyncio.Event)
    clock: Callable[[], datetime] = field(default=_utcnow)
    rng: random.Random = field(default_factory=random.Random)
    owner: str = field(default_factory=_new_owner_id)

    async def run(self) -> SessionStatus | None:
        """Drive the session to a terminal status and return it.

        Returns None when the session does not exist or another live
        workflow holds its lease.
        """
        session = self.store.get(self.session_id)
        if session is None:
            logger.warning("Workflow for unknown session %s", self.session_id)
            return None
        while True:
            phase = self._phase(session)
            if phase is WorkflowPhase.DONE:
                logger.info(
                    "Workflow for session %s finished: %s",
                    self.session_id,
                    session.status,
                )
                return session.status
            try:
                session = await self._step(self._claim(session), phase)
            except LeaseHeld as exc:
                logger.info("Leaving session %s alone: %s", self.session_id, exc)
                return None
            except SessionNotFound:
                logger.warning("Session %s was deleted mid-workflow", self.session_id)
                return None
            except SessionConflict:
                logger.warning(
                    "Session %s changed underneath its workflow; reloading",
                    self.session_id,
                )
                reloaded = self.store.get(self.session_id)
                if reloaded is None:
                    return None
                session = reloaded

    def _phase(self, session: CastSession) -> WorkflowPhase:
        phase = phase_for(session)
        if self.terminate_signal.is_set() and phase in {
            WorkflowPhase.INIT,
            WorkflowPhase.PROVISIONING,
            WorkflowPhase.ACTIVE,
        }:
            return WorkflowPhase.TERMINATING
        return phase

    async def _step(self, session: CastSession, phase: WorkflowPhase) -> CastSession:
        if phase is WorkflowPhase.INIT:
            return await self._provision(session)
        if phase is WorkflowPhase.PROVISIONING:
            return await self._await_streaming(session)
        if phase is WorkflowPhase.ACTIVE:
            return await self._monitor(session)
        return await self._teardown(session)

    async def _provision(self, session: CastSession) -> CastSession:
        # Never retried: a lost response could leave a second instance behind.
        try:
            instance_id = await self._call(
                self.renderer.provision(session.session_id, session.game_url)
            )
        except RendererError as exc:
            logger.warning(
                "Provisioning failed for session %s: %s", session.session_id, exc
            )
            return self._transition(
                session, SessionStatus.ERROR, error=_describe(exc)
            )
        return self._transition(
            session, SessionStatus.CONNECTING, renderer_instance_id=instance_id
        )

    async def _await_streaming(self, session: CastSession) -> CastSession:
        deadline = session.updated_at + self.policy.provisioning_timeout
        while True:
            latest = self._refresh(session)
            if self.terminate_signal.is_set() or latest.status is not session.status:
                return latest
            session = latest
            health = await self._check_health(session)
            if health is None:
                continue
            if health is RendererHealth.STREAMING:
                return self._transition(session, SessionStatus.ACTIVE)
            if health is RendererHealth.FAILED:
                return await self._fail(
                    session, "renderer reported failure during provisioning"
                )
            if self.clock() >= deadline:
                budget = self.policy.provisioning_timeout.total_seconds()
                return await self._fail(
                    session,
                    _describe(
                        ProvisioningTimeout(
                            f"renderer did not start streaming within {budget:g}s"
                        )
                    ),
                )
            await self._pause()

    async def _monitor(self, session: CastSession) -> CastSession:
        while True:
            latest = self._refresh(session)
            if self.terminate_signal.is_set() or latest.status is not session.status:
                return latest
            session = latest
            health = await self._check_health(session)
            if health is RendererHealth.FAILED:
                logger.warning(
                    "Renderer %s for session %s failed while streaming",
                    session.renderer_instance_id,
                    session.session_id,
                )
                return await self._teardown(session)
            await self._pause()

    async def _fail(self, session: CastSession, reason: str) -> CastSession:
        await self._release(session)
        return self._transition(session, SessionStatus.ERROR, error=reason)

    async def _teardown(self, session: CastSession) -> CastSession:
        await self._release(session)
        return self._transition(session, SessionStatus.TERMINATED)

    def _claim(self, session: CastSession) -> CastSession:
        """Take the session's lease unless another live workflow holds it."""
        if session.workflow_owner == self.owner:
            return session
        if session.workflow_owner is not None:
            idle = self.clock() - session.last_seen_at
            if idle < self.policy.lease_timeout:
                raise LeaseHeld(
                    f"owned by {session.workflow_owner}, "
                    f"last seen {idle.total_seconds():.0f}s ago"
                )
        claimed = self.store.update(
            session.session_id,
            {"workflow_owner": self.owner, "workflow_heartbeat_at": self.clock()},
            expected_statuses=ACTIVE_STATUSES,
            expected_fields={
                "workflow_owner": session.workflow_owner,
                "workflow_heartbeat_at": session.workflow_heartbeat_at,
            },
        )
        if session.workflow_owner is not None:
            logger.warning(
                "Workflow %s took over session %s from %s",
                self.owner,
                session.session_id,
                session.workflow_owner,
            )
        return claimed

    def _refresh(self, session: CastSession) -> CastSession:
        """Renew the lease and pick up terminate requests from other processes."""
        latest = self.store.update(
            session.session_id,
            {"workflow_heartbeat_at": self.clock()},
            expected_statuses=ACTIVE_STATUSES,
            expected_fields={"workflow_owner": self.owner},
        )
        if latest.terminate_requested_at is not None:
            self.terminate_signal.set()
        return latest

    async def _check_health(self, session: CastSession) -> RendererHealth | None:
        """Poll health, retrying transport failures; None if terminate arrived."""
        instance_id = session.renderer_instance_id
        if instance_id is None:
            return RendererHealth.FAILED
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._call(self.renderer.check_health(instance_id))
            except RendererUnreachable as exc:
                if attempt >= self.policy.max_attempts:
                    logger.warning(
                        "Health check for %s gave up after %d attempts: %s",
                        instance_id,
                        attempt,
                        exc,
                    )
                    return RendererHealth.FAILED
                logger.warning(
                    "Health check for %s failed (attempt %d): %s",
                    instance_id,
                    attempt,
                    exc,
                )
                await self._wait(self.policy.backoff(attempt))
                if self.terminate_signal.is_set():
                    return None

    async def _release(self, session: CastSession) -> None:
        instance_id = session.renderer_instance_id
        if instance_id is None:
            return
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._call(self.renderer.terminate(instance_id))
            except RendererUnreachable as exc:
                if attempt >= self.policy.max_attempts:
                    logger.error(
                        "Could not tear down renderer %s for session %s: %s",
                        instance_id,
                        session.session_id,
                        exc,
                    )
                    return
                await asyncio.sleep(self.policy.backoff(attempt))
            else:
                logger.info(
                    "Released renderer %s for session %s",
                    instance_id,
                    session.session_id,
                )
                return

    async def _call(self, call: Awaitable[T]) -> T:
        try:
            async with asyncio.timeout(self.policy.renderer_call_timeout):
                return await call
        except TimeoutError as exc:
            raise RendererTimeout(
                f"renderer call exceeded {self.policy.renderer_call_timeout:g}s"
            ) from exc

    async def _pause(self) -> None:
        await self._wait(self.policy.poll_delay(self.rng))

    async def _wait(self, delay: float) -> None:
        """Sleep for ``delay`` seconds or until terminate is signalled."""
        with contextlib.suppress(TimeoutError):
            async with asyncio.timeout(delay):
                await self.terminate_signal.wait()

    def _transition(
        self, session: CastSession, status: SessionStatus, **changes: object
    ) -> CastSession:
        if not can_transition(session.status, status):
            raise InvalidTransition(
                f"Session {session.session_id}: {session.status} -> {status}"
            )
        now = self.clock()
        updated = self.store.update(
            session.session_id,
            {
                "status": status,
                "updated_at": now,
                "workflow_heartbeat_at": now,
                **changes,
            },
            expected_statuses={session.status},
            expected_fields={"workflow_owner": self.owner},
        )
        logger.info(
            "Session %s: %s -> %s", session.session_id, session.status, status
        )
        return updated


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


@dataclass
class _WorkflowRun:
    task: asyncio.Task
    terminate_signal: asyncio.Event


@dataclass
class WorkflowEngine:
    """Runs one workflow task per session and routes terminate signals."""

    store: SessionStore
    renderer: RendererClient
    policy: WorkflowPolicy
    clock: Callable[[], datetime] = field(default=_utcnow)
    owner_id: str = field(default_factory=_new_owner_id)
    shutdown_grace: float = 5.0
    _runs: dict[UUID, _WorkflowRun] = field(default_factory=dict, init=False)

    def start(self, session_id: UUID) -> bool:
        """Start the workflow for a session unless one is already running.

        Must be called from within a running event loop.
        """
        if session_id in self._runs:
            return False
        loop = asyncio.get_running_loop()
        terminate_signal = asyncio.Event()
        workflow = SessionWorkflow(
            session_id=session_id,
            store=self.store,
            renderer=self.renderer,
            policy=self.policy,
            terminate_signal=terminate_signal,
            clock=self.clock,
            owner=self.owner_id,
        )
        task = loop.create_task(workflow.run(), name=f"cast-workflow-{session_id}")
        self._runs[session_id] = _WorkflowRun(task, terminate_signal)
        task.add_done_callback(partial(self._finished, session_id))
        return True

    def signal_terminate(self, session_id: UUID) -> bool:
        """Deliver the terminate signal to a running workflow."""
        run = self._runs.get(session_id)
        if run is None:
            return False
        run.terminate_signal.set()
        return True

    def is_running(self, session_id: UUID) -> bool:
        """Return whether this engine has a live workflow for the session."""
        return session_id in self._runs

    def running_sessions(self) -> list[UUID]:
        """Return ids of sessions with a live workflow."""
        return list(self._runs)

    async def wait(self, session_id: UUID) -> None:
        """Wait for a session's workflow to finish, if one is running."""
        run = self._runs.get(session_id)
        if run is not None:
            await asyncio.wait({run.task})

    async def shutdown(self) -> None:
        """Cancel every running workflow; sessions resume on next start."""
        tasks = [run.task for run in self._runs.values()]
        self._runs.clear()
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace)
        if pending:
            logger.error(
                "%d workflows did not stop within %gs of shutdown",
                len(pending),
                self.shutdown_grace,
            )

    def _finished(self, session_id: UUID, task: asyncio.Task) -> None:
        run = self._runs.get(session_id)
        if run is not None and run.task is task:
            del self._runs[session_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Workflow for session %s crashed; left for the orphan sweep",
                session_id,
                exc_info=exc,
            )
