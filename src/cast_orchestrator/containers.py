"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

from supabase import create_client

from cast_orchestrator.adapters.memory_session_store import InMemorySessionStore
from cast_orchestrator.adapters.renderer_client import (
    HttpxRendererClient,
    RendererClient,
)
from cast_orchestrator.adapters.supabase_session_store import SupabaseSessionStore
from cast_orchestrator.config import Settings
from cast_orchestrator.services.sessions import SessionCoordinator, SessionStore
from cast_orchestrator.services.sweeper import OrphanSweeper
from cast_orchestrator.services.workflow import WorkflowEngine, WorkflowPolicy


@dataclass
class AppContainer:
    """Holds application-wide dependencies, built once per process."""

    settings: Settings
    session_store: SessionStore
    renderer_client: RendererClient
    workflow_engine: WorkflowEngine
    coordinator: SessionCoordinator
    sweeper: OrphanSweeper
    close_resources: Callable[[], Awaitable[None]]


def build_session_store(settings: Settings) -> SessionStore:
    """Create the configured session store."""
    if settings.session_store_backend == "memory":
        return InMemorySessionStore()
    if not settings.supabase_url or not settings.supabase_service_key:
        raise ValueError(
            "SUPABASE_URL and SUPABASE_SERVICE_KEY are required for the "
            "supabase session store"
        )
    return SupabaseSessionStore(
        create_client(settings.supabase_url, settings.supabase_service_key)
    )


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    session_store = build_session_store(resolved_settings)
    renderer_client = HttpxRendererClient.create(
        base_url=resolved_settings.renderer_base_url,
        api_key=resolved_settings.renderer_api_key,
        timeout=resolved_settings.renderer_call_timeout_seconds,
    )
    workflow_engine = WorkflowEngine(
        store=session_store,
        renderer=renderer_client,
        policy=WorkflowPolicy.from_settings(resolved_settings),
    )
    coordinator = SessionCoordinator(store=session_store, workflows=workflow_engine)
    sweeper = OrphanSweeper(
        store=session_store,
        workflows=workflow_engine,
        staleness=timedelta(seconds=resolved_settings.orphan_staleness_seconds),
    )

    async def close_resources() -> None:
        await workflow_engine.shutdown()
        await renderer_client.close()

    return AppContainer(
        settings=resolved_settings,
        session_store=session_store,
        renderer_client=renderer_client,
        workflow_engine=workflow_engine,
        coordinator=coordinator,
        sweeper=sweeper,
        close_resources=close_resources,
    )
