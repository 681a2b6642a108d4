"""ASGI entrypoint for the cast orchestrator API."""

from cast_orchestrator.api.app import create_app
from cast_orchestrator.containers import build_container

app = create_app(build_container())
