"""Shared test fixtures."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest

from cast_orchestrator.adapters.memory_session_store import InMemorySessionStore
from cast_orchestrator.adapters.renderer_client import RendererClient
from cast_orchestrator.config import Settings
from cast_orchestrator.containers import AppContainer
from cast_orchestrator.domain.sessions import RendererHealth, SessionStatus
from cast_orchestrator.services.sessions import SessionCoordinator
from cast_orchestrator.services.sweeper import OrphanSweeper
from cast_orchestrator.services.workflow import WorkflowEngine, WorkflowPolicy

HealthStep = RendererHealth | Exception


@dataclass
class FakeRendererClient(RendererClient):
    """Scripted renderer that records every call.

    ``health_script`` is consumed one step per health check; the last step
    repeats forever. Calls named in ``hanging_calls`` never return.
    """

    health_script: list[HealthStep] = field(
        default_factory=lambda: [RendererHealth.STREAMING]
    )
    provision_error: Exception | None = None
    terminate_errors: list[Exception] = field(default_factory=list)
    provisioned: list[tuple[UUID, str]] = field(default_factory=list)
    health_checks: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    hanging_calls: set[str] = field(default_factory=set)
    provision_attempts: int = 0

    async def provision(self, session_id: UUID, game_url: str) -> str:
        self.provision_attempts += 1
        await self._maybe_hang("provision")
        if self.provision_error is not None:
            raise self.provision_error
        self.provisioned.append((session_id, game_url))
        return f"renderer-{len(self.provisioned)}"

    async def check_health(self, instance_id: str) -> RendererHealth:
        self.health_checks.append(instance_id)
        await self._maybe_hang("check_health")
        step = (
            self.health_script.pop(0)
            if len(self.health_script) > 1
            else self.health_script[0]
        )
        if isinstance(step, Exception):
            raise step
        return step

    async def terminate(self, instance_id: str) -> None:
        self.terminated.append(instance_id)
        await self._maybe_hang("terminate")
        if self.terminate_errors:
            raise self.terminate_errors.pop(0)

    async def _maybe_hang(self, call: str) -> None:
        if call in self.hanging_calls:
            await asyncio.Event().wait()


@dataclass
class RecordingSessionStore(InMemorySessionStore):
    """In-memory store that keeps the status history of every session."""

    history: dict[UUID, list[SessionStatus]] = field(default_factory=dict)

    def save(self, session) -> None:  # type: ignore[no-untyped-def]
        super().save(session)
        self.history[session.session_id] = [session.status]

    def update(self, session_id, changes, *args, **kwargs):  # type: ignore[no-untyped-def]
        updated = super().update(session_id, changes, *args, **kwargs)
        if "status" in changes:
            self.history.setdefault(session_id, []).append(updated.status)
        return updated


def fast_policy(**overrides: object) -> WorkflowPolicy:
    """Policy with near-zero waits so workflows finish quickly in tests."""
    values: dict[str, object] = {
        "provisioning_timeout": timedelta(seconds=5),
        "poll_interval": 0.005,
        "poll_jitter": 0.0,
        "renderer_call_timeout": 1.0,
        "max_attempts": 3,
        "backoff_base": 0.001,
        "backoff_max": 0.005,
    }
    values.update(overrides)
    return WorkflowPolicy(**values)  # type: ignore[arg-type]


async def wait_for_status(
    store: InMemorySessionStore,
    session_id: UUID,
    expected: set[SessionStatus],
    timeout: float = 2.0,
) -> SessionStatus:
    """Poll the store until the session reaches one of the expected statuses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        session = store.get(session_id)
        if session is not None and session.status in expected:
            return session.status
        if loop.time() >= deadline:
            current = session.status if session else None
            raise AssertionError(f"Session stayed {current}, expected {expected}")
        await asyncio.sleep(0.002)


def utc(minutes_ago: float = 0) -> datetime:
    return datetime.now(tz=UTC) - timedelta(minutes=minutes_ago)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        admin_token="admin-token",
        renderer_base_url="https://renderer.test",
        session_store_backend="memory",
        sweep_interval_seconds=3600,
    )


@pytest.fixture
def store() -> RecordingSessionStore:
    return RecordingSessionStore()


@pytest.fixture
def renderer() -> FakeRendererClient:
    return FakeRendererClient()


@pytest.fixture
def engine(
    store: RecordingSessionStore, renderer: FakeRendererClient
) -> WorkflowEngine:
    return WorkflowEngine(store=store, renderer=renderer, policy=fast_policy())


@pytest.fixture
def coordinator(
    store: RecordingSessionStore, engine: WorkflowEngine
) -> SessionCoordinator:
    return SessionCoordinator(store=store, workflows=engine)


@pytest.fixture
def container(
    settings: Settings,
    store: RecordingSessionStore,
    renderer: FakeRendererClient,
    engine: WorkflowEngine,
    coordinator: SessionCoordinator,
) -> AppContainer:
    sweeper = OrphanSweeper(
        store=store,
        workflows=engine,
        staleness=timedelta(seconds=settings.orphan_staleness_seconds),
    )

    async def close_resources() -> None:
        await engine.shutdown()

    return AppContainer(
        settings=settings,
        session_store=store,
        renderer_client=renderer,
        workflow_engine=engine,
        coordinator=coordinator,
        sweeper=sweeper,
        close_resources=close_resources,
    )
