"""FastAPI application entry point for the swarm orchestrator.

This module exposes the orchestrator as a small HTTP service: callers
submit tasks, poll execution state, and scrape Prometheus metrics. Agents
and the task decomposer are loaded from the import paths configured in
SwarmSettings; without them the service starts but refuses executions.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set

from fastapi import FastAPI, HTTPException, Response
from fastapi.encoders import jsonable_encoder
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from src.swarm.agents.factory import load_agents, load_decomposer
from src.swarm.config import SwarmSettings, get_settings
from src.swarm.events.metrics import generate_metrics_output
from src.swarm.orchestrator import Orchestrator
from src.swarm.state.machine import ExecutionNotFoundError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: SwarmSettings
orchestrator: Optional[Orchestrator] = None
_background_tasks: Set[asyncio.Task] = set()


class ExecutionRequest(BaseModel):
    """Body of ``POST /executions``."""

    task: Any
    options: Dict[str, Any] = Field(default_factory=dict)


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: SwarmSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Swarm configuration:")
    logger.info(f"  Max Agents: {settings.max_agents}")
    logger.info(f"  Parallel Execution: {settings.parallel_execution}")
    logger.info(f"  Performance Mode: {settings.performance_mode}")
    logger.info(f"  Auto Retry: {settings.auto_retry}")
    logger.info(f"  Max Retries: {settings.max_retries}")
    logger.info(f"  Coverage Target: {settings.coverage_target}")
    logger.info(f"  GitHub Enabled: {settings.github_enabled}")
    logger.info(f"  GitHub Repository: {settings.github_repository}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(f"  Auto Create Issues: {settings.github_auto_create_issues}")
    logger.info(f"  Notifications Enabled: {settings.notifications_enabled}")
    logger.info(
        f"  Blocked Webhook URL: {_redact_secret(settings.blocked_webhook_url, 12)}"
    )
    logger.info(f"  Runtime Dir: {settings.runtime_dir}")
    logger.info(f"  Agent Factory: {settings.agent_factory}")
    logger.info(f"  Decomposer Factory: {settings.decomposer_factory}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


def _build_orchestrator(cfg: SwarmSettings) -> Optional[Orchestrator]:
    """Wire the orchestrator from the configured factories.

    Returns:
        The orchestrator, or None when no agent or decomposer factory is set.
    """
    if not cfg.agent_factory or not cfg.decomposer_factory:
        logger.warning(
            "Agent or decomposer factory not configured; executions disabled"
        )
        return None

    return Orchestrator(
        agents=load_agents(cfg.agent_factory, cfg),
        decomposer=load_decomposer(cfg.decomposer_factory, cfg),
        settings=cfg,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Agent loading and orchestrator wiring
    - Orchestrator shutdown (agents, router, metrics snapshot)
    """
    global settings, orchestrator

    logger.info("Swarm orchestrator starting up...")

    settings = get_settings()
    _log_configuration(settings)

    orchestrator = _build_orchestrator(settings)
    if orchestrator is not None:
        await orchestrator.start()

    logger.info("Swarm orchestrator started successfully")

    yield

    logger.info("Swarm orchestrator shutting down...")

    if orchestrator is not None:
        snapshot = await orchestrator.shutdown()
        logger.info("Metrics snapshot saved", extra={"path": snapshot})
        orchestrator = None

    logger.info("Swarm orchestrator shutdown complete")


app = FastAPI(
    title="Swarm Orchestrator",
    description="Multi-agent development pipeline coordination",
    version="1.0.0",
    lifespan=lifespan,
)


def _require_orchestrator() -> Orchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not configured")
    return orchestrator


async def _run_in_background(target: Orchestrator, execution_id: str) -> None:
    try:
        await target.run_execution(execution_id)
    except Exception:
        # Already recorded on the execution and emitted as an event
        logger.info(
            "Background execution ended in failure",
            extra={"execution_id": execution_id},
        )


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/status")
async def status():
    """Agent, execution and metrics snapshot."""
    target = _require_orchestrator()
    return jsonable_encoder(await target.get_status())


@app.post("/executions", status_code=202)
async def create_execution(request: ExecutionRequest):
    """Start an execution in the background and return its id."""
    target = _require_orchestrator()
    execution = await target.submit(request.task, request.options)

    task = asyncio.create_task(_run_in_background(target, execution.execution_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    return {"status": "accepted", "execution_id": execution.execution_id}


@app.get("/executions/{execution_id}")
async def get_execution(execution_id: str):
    """Current state of one execution."""
    target = _require_orchestrator()
    execution = await target.get_execution(execution_id)
    if execution is None:
        raise HTTPException(
            status_code=404,
            detail=str(ExecutionNotFoundError(execution_id)),
        )
    return jsonable_encoder(execution)


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    registry = orchestrator.metrics.registry if orchestrator is not None else None
    return Response(
        content=generate_metrics_output(registry),
        media_type=CONTENT_TYPE_LATEST,
    )


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.swarm.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
    )
