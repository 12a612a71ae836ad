"""Swarm orchestrator driving agents through the development pipeline.

One call to ``execute`` runs one Execution:

    decompose → research → specification
    → {development ∥ qa_preparation} → quality_assurance → integration

The stage order is not written out here: the orchestrator walks
PIPELINE_TOPOLOGY, entering each target stage and running the phases the
flow names (concurrently when there is more than one), so the documented
topology and the executed order are the same definition.

Any phase raising fails the attempt. The failure is recorded on the
Execution, and the whole pipeline is retried from scratch with backoff
until retries are exhausted; the original exception then reaches the
caller unwrapped. QA test failures that survive the single
fix-and-retest are escalated to a human and returned, not raised.

The orchestrator delegates all work to the agents and uses the state
machine for bookkeeping and the event emitter for observability.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from pydantic import BaseModel

from src.swarm.agents.handle import AgentHandle, AgentConfig, default_agent_configs
from src.swarm.agents.protocols import (
    AgentRole,
    TaskDecomposer,
    get_field,
    resolve,
    validate_agents,
)
from src.swarm.config import SwarmSettings
from src.swarm.errors import SpecificationValidationError
from src.swarm.escalation.adapter import EscalationAdapter
from src.swarm.events.emitter import EventEmitter, EventSinkType, create_event_emitter
from src.swarm.events.metrics import SwarmMetrics, get_metrics, write_metrics_snapshot
from src.swarm.events.models import EventType, SwarmEvent
from src.swarm.execution.limiter import ConcurrencyLimiter, compute_max_concurrent
from src.swarm.execution.retry import RetryController, RetryPolicy, SleepFunc
from src.swarm.routing.router import MessageRouter
from src.swarm.state.machine import ExecutionStateMachine
from src.swarm.state.models import (
    Execution,
    ExecutionResult,
    PhaseFailure,
    PipelinePhase,
    PipelineStage,
    ResultMetrics,
    TaskDecomposition,
    TopologyFlow,
    next_flow,
)


logger = logging.getLogger(__name__)


QA_FAILED_REASON = "QA Failed"
DECOMPOSITION = "decomposition"


@dataclass
class AttemptContext:
    """State of one pipeline attempt.

    Attributes:
        execution_id: The execution being run.
        task: The caller's task.
        attempt: 1-based attempt number.
        decomposition: Decomposer output for this attempt.
        outputs: Phase → output for phases completed in this attempt.
        fixed_code: Code returned by a successful QA fix, if any.
        failed_phase: First phase that raised in this attempt.
    """

    execution_id: str
    task: Any
    attempt: int
    decomposition: Optional[TaskDecomposition] = None
    outputs: Dict[PipelinePhase, Any] = field(default_factory=dict)
    fixed_code: Any = None
    failed_phase: Optional[str] = None


def _as_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, Mapping):
        return dict(value)
    return {"artifacts": value}


class Orchestrator:
    """Runs pipeline executions over one set of long-lived agents.

    Attributes:
        settings: Swarm configuration.
        handles: Role → agent handle.
        decomposer: Task decomposer.
        metrics: Process-wide metrics.
        event_emitter: Emits swarm events for observability.
        state_machine: Owns every Execution record.
        router: Message router connecting the agents.
        escalation: Escalation adapter used when QA stays red.
        retry: Whole-pipeline retry controller.

    Example:
        >>> orchestrator = Orchestrator(agents, decomposer, settings)
        >>> result = await orchestrator.execute("Build a todo API")
        >>> await orchestrator.shutdown()
    """

    def __init__(
        self,
        agents: Mapping[Any, Any],
        decomposer: TaskDecomposer,
        settings: Optional[SwarmSettings] = None,
        event_emitter: Optional[EventEmitter] = None,
        metrics: Optional[SwarmMetrics] = None,
        state_machine: Optional[ExecutionStateMachine] = None,
        router: Optional[MessageRouter] = None,
        escalation: Optional[EscalationAdapter] = None,
        agent_configs: Optional[Mapping[AgentRole, AgentConfig]] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        self.settings = settings or SwarmSettings()
        self.decomposer = decomposer
        self.metrics = metrics or get_metrics()
        self.event_emitter = event_emitter or create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.METRICS],
            metrics=self.metrics,
        )
        self.state_machine = state_machine or ExecutionStateMachine()

        configs = dict(
            default_agent_configs(
                research_concurrency=self.settings.research_concurrency,
                development_concurrency=self.settings.development_concurrency,
                auto_recover=self.settings.auto_retry,
            )
        )
        configs.update(agent_configs or {})
        self.handles: Dict[AgentRole, AgentHandle] = {
            role: AgentHandle(role=role, agent=agent, config=configs[role])
            for role, agent in validate_agents(agents).items()
        }

        self.router = router or MessageRouter(
            self.metrics,
            self.event_emitter,
            auto_recover=self.settings.auto_retry,
        )
        for handle in self.handles.values():
            self.router.register(handle)

        self.escalation = escalation or EscalationAdapter.from_settings(
            self.settings,
            self.event_emitter,
        )
        self.retry = RetryController(
            RetryPolicy(
                max_retries=self.settings.max_retries,
                base_delay_ms=self.settings.retry_base_delay_ms,
                max_delay_ms=self.settings.retry_max_delay_ms,
            ),
            self.state_machine,
            self.event_emitter,
            sleep=sleep,
            enabled=self.settings.auto_retry,
        )

        self._phase_handlers: Dict[
            PipelinePhase, Callable[[AttemptContext], Awaitable[Any]]
        ] = {
            PipelinePhase.RESEARCH: self._run_research,
            PipelinePhase.SPECIFICATION: self._run_specification,
            PipelinePhase.DEVELOPMENT: self._run_development,
            PipelinePhase.QA_PREPARATION: self._run_qa_preparation,
            PipelinePhase.QUALITY_ASSURANCE: self._run_quality_assurance,
            PipelinePhase.INTEGRATION: self._run_integration,
        }

        if self.settings.performance_mode:
            self._enable_performance_mode()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the message router. Safe to call more than once."""
        await self.router.start()

    async def shutdown(self) -> Optional[str]:
        """Shut down agents and the router, then persist the metrics snapshot.

        Executions still in progress are not drained.

        Returns:
            Path of the written metrics snapshot, or None if writing failed.
        """
        await self._emit(EventType.SHUTDOWN_START)

        results = await asyncio.gather(
            *(handle.shutdown() for handle in self.handles.values()),
            return_exceptions=True,
        )
        for handle, outcome in zip(self.handles.values(), results):
            if isinstance(outcome, Exception):
                logger.error(
                    "Agent shutdown failed: %s",
                    str(outcome),
                    extra={"agent": handle.role.value},
                )

        await self.router.close()
        await self.escalation.close()

        path: Optional[str] = None
        try:
            written = await asyncio.to_thread(
                write_metrics_snapshot,
                self.metrics.snapshot(),
                self.settings.runtime_dir,
            )
            path = str(written)
        except OSError as e:
            logger.error(
                "Failed to write metrics snapshot: %s",
                str(e),
                extra={"runtime_dir": self.settings.runtime_dir},
            )

        await self._emit(EventType.SHUTDOWN_COMPLETE, details={"snapshot": path})
        await self.event_emitter.close()
        return path

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        task: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Run the pipeline for ``task`` until it completes or retries run out."""
        execution = await self.state_machine.create(task, options)
        return await self.run_execution(execution.execution_id)

    async def submit(
        self,
        task: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        """Create an execution for a caller that runs it later.

        Used by the HTTP service, which must return the id before the
        pipeline finishes. Run it with ``run_execution``.
        """
        return await self.state_machine.create(task, options)

    async def run_execution(self, execution_id: str) -> ExecutionResult:
        """Run a created execution with whole-pipeline retry.

        Raises:
            Exception: The last attempt's original exception once retries
                are exhausted (or when retry is disabled).
        """
        await self.start()
        execution = await self.state_machine.get(execution_id)
        await self._emit(
            EventType.EXECUTION_START,
            execution_id,
            {"task": str(execution.task)[:200] if execution else None},
        )

        while True:
            execution = await self.state_machine.start_attempt(execution_id)
            ctx = AttemptContext(
                execution_id=execution_id,
                task=execution.task,
                attempt=execution.retries + 1,
            )
            started = time.monotonic()

            try:
                result = await self._run_attempt(ctx, started)
            except Exception as exc:
                duration_ms = (time.monotonic() - started) * 1000.0
                self.metrics.record_execution_time(duration_ms, success=False)
                failed = await self._record_failure(ctx, exc)

                if self.retry.should_retry(failed):
                    await self.retry.backoff(execution_id)
                    continue

                self.metrics.record_execution_failed()
                logger.error(
                    "Execution failed after all retries",
                    extra={
                        "execution_id": execution_id,
                        "retries": failed.retries,
                        "phase": ctx.failed_phase,
                    },
                )
                raise

            duration_ms = (time.monotonic() - started) * 1000.0
            self.metrics.record_execution_time(duration_ms, success=True)
            self.metrics.record_execution_completed()
            await self._emit(
                EventType.EXECUTION_COMPLETE,
                execution_id,
                {"attempt": ctx.attempt, "duration_ms": duration_ms},
            )
            logger.info(
                "Execution completed",
                extra={
                    "execution_id": execution_id,
                    "attempt": ctx.attempt,
                    "duration_ms": duration_ms,
                },
            )
            return result

    async def _run_attempt(
        self,
        ctx: AttemptContext,
        started: float,
    ) -> ExecutionResult:
        """Decompose, then walk the topology from PENDING to COMPLETED."""
        ctx.decomposition = await self._decompose(ctx)

        flow = next_flow(PipelineStage.PENDING)
        while flow.target != PipelineStage.COMPLETED:
            await self._enter(ctx, flow)
            await self._run_flow_phases(ctx, flow)
            flow = next_flow(flow.target)

        result = self._build_result(ctx, started)
        await self.state_machine.record_phase_result(
            ctx.execution_id, "result", result
        )
        await self._enter(ctx, flow)
        return result

    async def _decompose(self, ctx: AttemptContext) -> TaskDecomposition:
        try:
            raw = await resolve(self.decomposer.decompose(ctx.task))
            decomposition = (
                raw
                if isinstance(raw, TaskDecomposition)
                else TaskDecomposition.model_validate(_as_dict(raw))
            )
        except Exception:
            ctx.failed_phase = DECOMPOSITION
            raise
        await self.state_machine.set_decomposition(ctx.execution_id, decomposition)
        return decomposition

    async def _enter(self, ctx: AttemptContext, flow: TopologyFlow) -> None:
        await self.state_machine.transition(
            ctx.execution_id,
            flow.target,
            {"condition": flow.condition, "attempt": ctx.attempt},
        )
        await self._emit(
            EventType.STATE_TRANSITION,
            ctx.execution_id,
            {
                "from_stage": flow.source.value,
                "to_stage": flow.target.value,
                "condition": flow.condition,
            },
        )

    async def _run_flow_phases(self, ctx: AttemptContext, flow: TopologyFlow) -> None:
        """Run the phases of a flow, concurrently when allowed.

        Concurrent phases form a barrier: both must finish before the
        next flow. If one fails, the others are cancelled and the failure
        propagates.
        """
        if len(flow.phases) == 1 or not self.settings.parallel_execution:
            for phase in flow.phases:
                await self._run_phase(ctx, phase)
            return

        tasks = [
            asyncio.ensure_future(self._run_phase(ctx, phase))
            for phase in flow.phases
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_phase(self, ctx: AttemptContext, phase: PipelinePhase) -> Any:
        await self._emit(
            EventType.PHASE_START,
            ctx.execution_id,
            {"phase": phase.value, "attempt": ctx.attempt},
        )
        started = time.monotonic()

        try:
            output = await self._phase_handlers[phase](ctx)
        except Exception:
            if ctx.failed_phase is None:
                ctx.failed_phase = phase.value
            raise

        duration_ms = (time.monotonic() - started) * 1000.0
        ctx.outputs[phase] = output
        await self.state_machine.record_phase_result(
            ctx.execution_id, phase.value, output
        )
        await self._emit(
            EventType.PHASE_COMPLETE,
            ctx.execution_id,
            {"phase": phase.value, "duration_ms": duration_ms},
        )
        return output

    async def _record_failure(self, ctx: AttemptContext, exc: Exception) -> Execution:
        failure = PhaseFailure(
            phase=ctx.failed_phase or "unknown",
            message=str(exc),
            error_type=type(exc).__name__,
        )
        logger.warning(
            "Pipeline attempt failed",
            extra={
                "execution_id": ctx.execution_id,
                "attempt": ctx.attempt,
                "phase": failure.phase,
                "error_type": failure.error_type,
                "error": failure.message,
            },
        )
        failed = await self.state_machine.fail(ctx.execution_id, failure)
        await self._emit(
            EventType.EXECUTION_FAILED,
            ctx.execution_id,
            {
                "phase": failure.phase,
                "error_message": failure.message,
                "error_type": failure.error_type,
                "attempt": ctx.attempt,
            },
        )
        return failed

    def _build_result(self, ctx: AttemptContext, started: float) -> ExecutionResult:
        development = ctx.outputs.get(PipelinePhase.DEVELOPMENT)
        integration = ctx.outputs.get(PipelinePhase.INTEGRATION)
        code = (
            ctx.fixed_code
            if ctx.fixed_code is not None
            else get_field(development, "code", development)
        )
        return ExecutionResult(
            execution_id=ctx.execution_id,
            task=ctx.task,
            spec=ctx.outputs.get(PipelinePhase.SPECIFICATION),
            code=code,
            tests=ctx.outputs.get(PipelinePhase.QUALITY_ASSURANCE),
            documentation=get_field(integration, "documentation"),
            deployment=get_field(integration, "deployment"),
            metrics=ResultMetrics(
                execution_time_ms=(time.monotonic() - started) * 1000.0,
                agent_metrics=self.collect_agent_metrics(),
            ),
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _call(self, role: AgentRole, method: str, *args: Any) -> Any:
        """Invoke an agent method, tracking it on the role's handle."""
        handle = self.handles[role]
        async with handle.activity() as agent:
            return await resolve(getattr(agent, method)(*args))

    def _limiter(self, role: AgentRole) -> ConcurrencyLimiter:
        return ConcurrencyLimiter(
            compute_max_concurrent(
                self.handles[role].config.concurrency_fraction,
                self.settings.max_agents,
            )
        )

    async def _run_research(self, ctx: AttemptContext) -> Any:
        # The research agent manages its own concurrency share.
        results = await asyncio.gather(
            *(
                self._call(AgentRole.RESEARCH, "execute", subtask)
                for subtask in ctx.decomposition.research
            )
        )
        return await self._call(AgentRole.RESEARCH, "consolidate", results)

    async def _run_specification(self, ctx: AttemptContext) -> Any:
        spec = await self._call(
            AgentRole.SPEC,
            "generate",
            {
                "research": ctx.outputs.get(PipelinePhase.RESEARCH),
                "requirements": ctx.decomposition.requirements,
                "compliance": list(self.settings.compliance),
                "domain": self.settings.domain,
            },
        )

        validation = await self._call(AgentRole.SPEC, "validate", spec)
        if not get_field(validation, "valid", False):
            errors = get_field(validation, "errors") or []
            raise SpecificationValidationError([str(error) for error in errors])
        return spec

    async def _run_development(self, ctx: AttemptContext) -> Any:
        spec = ctx.outputs[PipelinePhase.SPECIFICATION]
        subtasks = await self._call(AgentRole.DEV, "plan_implementation", spec)

        limiter = self._limiter(AgentRole.DEV)
        implementations = await limiter.run(
            subtasks,
            lambda subtask: self._call(AgentRole.DEV, "execute", subtask),
        )
        logger.debug(
            "Implementation subtasks complete",
            extra={
                "execution_id": ctx.execution_id,
                "subtasks": len(implementations),
                "peak_in_flight": limiter.peak_in_flight,
            },
        )
        return await self._call(AgentRole.DEV, "integrate", implementations)

    async def _run_qa_preparation(self, ctx: AttemptContext) -> Any:
        spec = ctx.outputs[PipelinePhase.SPECIFICATION]
        return await self._call(AgentRole.QA, "prepare_test_suite", spec)

    async def _run_tests(self, code: Any, test_suite: Any) -> Any:
        return await self._call(
            AgentRole.QA,
            "execute",
            {
                "code": code,
                "test_suite": test_suite,
                "coverage": self.settings.coverage_target,
            },
        )

    async def _run_quality_assurance(self, ctx: AttemptContext) -> Any:
        development = ctx.outputs[PipelinePhase.DEVELOPMENT]
        test_suite = ctx.outputs[PipelinePhase.QA_PREPARATION]

        results = await self._run_tests(
            get_field(development, "code", development),
            test_suite,
        )
        if not _failed_count(results):
            return results

        logger.info(
            "Tests failing, attempting fix",
            extra={"execution_id": ctx.execution_id, "failed": _failed_count(results)},
        )
        fix = await self._call(AgentRole.DEV, "fix_failing_tests", results)

        if get_field(fix, "success", False):
            fixed_code = get_field(fix, "code")
            retest = await self._run_tests(fixed_code, test_suite)
            if not _failed_count(retest):
                ctx.fixed_code = fixed_code
                return retest
            results = retest

        await self.escalation.escalate(
            QA_FAILED_REASON,
            results,
            execution_id=ctx.execution_id,
        )
        return results

    async def _run_integration(self, ctx: AttemptContext) -> Any:
        integration = await self._call(
            AgentRole.INTEGRATION,
            "process",
            {
                "spec": ctx.outputs.get(PipelinePhase.SPECIFICATION),
                "development": ctx.outputs.get(PipelinePhase.DEVELOPMENT),
                "qa": ctx.outputs.get(PipelinePhase.QUALITY_ASSURANCE),
            },
        )

        if self.settings.github_enabled:
            await self._best_effort(
                ctx,
                "create_github_artifacts",
                {
                    **_as_dict(integration),
                    "repository": self.settings.github_repository,
                    "branch": self.settings.github_branch,
                },
            )

        if self.settings.notifications_enabled:
            await self._best_effort(
                ctx,
                "send_notifications",
                {
                    "type": "completion",
                    "artifacts": integration,
                    "channels": list(self.settings.notification_channels),
                },
            )

        return integration

    async def _best_effort(self, ctx: AttemptContext, method: str, payload: Any) -> None:
        """Call an optional integration-agent method; never raises."""
        agent = self.handles[AgentRole.INTEGRATION].agent
        if not callable(getattr(agent, method, None)):
            logger.debug(
                "Integration agent does not support %s, skipping",
                method,
                extra={"execution_id": ctx.execution_id},
            )
            return

        try:
            await self._call(AgentRole.INTEGRATION, method, payload)
        except Exception as e:
            logger.warning(
                "Integration action %s failed: %s",
                method,
                str(e),
                extra={"execution_id": ctx.execution_id},
            )
            await self._emit(
                EventType.INTEGRATION_ACTION_FAILED,
                ctx.execution_id,
                {"action": method, "error": str(e)},
            )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def collect_agent_metrics(self) -> Dict[str, Any]:
        """Role → ``agent.get_metrics()`` at this instant."""
        return {
            role.value: handle.agent.get_metrics()
            for role, handle in self.handles.items()
        }

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        return await self.state_machine.get(execution_id)

    async def get_status(self) -> Dict[str, Any]:
        """Snapshot of agents, executions and metrics."""
        executions = await self.state_machine.list_all()
        return {
            "agents": {
                role.value: handle.status()
                for role, handle in self.handles.items()
            },
            "executions": [
                {
                    "id": execution.execution_id,
                    "status": execution.status.value,
                    "stage": execution.current_stage.value,
                    "task": execution.task,
                    "start_time": execution.start_time.isoformat(),
                    "retries": execution.retries,
                }
                for execution in executions
            ],
            "metrics": self.metrics.snapshot().model_dump(),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enable_performance_mode(self) -> None:
        for handle in self.handles.values():
            enable = getattr(handle.agent, "enable_performance_mode", None)
            if callable(enable):
                enable()
        logger.info("Performance mode enabled")

    async def _emit(
        self,
        event_type: EventType,
        execution_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self.event_emitter.emit(
                SwarmEvent(
                    event_type=event_type,
                    execution_id=execution_id,
                    details=details or {},
                )
            )
        except Exception as e:
            logger.error("Failed to emit %s event: %s", event_type.value, str(e))


def _failed_count(results: Any) -> int:
    return int(get_field(results, "failed", 0) or 0)
