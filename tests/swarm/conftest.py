"""Fixtures shared by swarm tests."""

from typing import Any, Dict, Optional
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from doubles import FakeDecomposer, make_agents, make_escalation
from src.swarm.config import SwarmSettings
from src.swarm.events.metrics import SwarmMetrics
from src.swarm.orchestrator import Orchestrator


@pytest.fixture
def swarm_settings(tmp_path) -> SwarmSettings:
    return SwarmSettings(runtime_dir=str(tmp_path / "metrics"), max_retries=3)


@pytest.fixture
def metrics() -> SwarmMetrics:
    return SwarmMetrics(registry=CollectorRegistry())


@pytest.fixture
def build_orchestrator(swarm_settings, metrics):
    """Factory building an orchestrator over fake agents.

    Must be called inside the event loop that will run it.
    """

    def _build(
        agents: Optional[Dict[Any, Any]] = None,
        decomposer: Optional[FakeDecomposer] = None,
        settings: Optional[SwarmSettings] = None,
        escalation: Optional[Any] = None,
        sleep: Optional[AsyncMock] = None,
        event_emitter: Optional[Any] = None,
    ) -> Orchestrator:
        return Orchestrator(
            agents=agents or make_agents(),
            decomposer=decomposer or FakeDecomposer(),
            settings=settings or swarm_settings,
            metrics=metrics,
            escalation=escalation or make_escalation(),
            sleep=sleep or AsyncMock(),
            event_emitter=event_emitter,
        )

    return _build
