"""Execution state machine models.

This module defines the data models for the execution state machine, including:
- ExecutionStatus: Coarse lifecycle status of an execution
- PipelinePhase: The units of work run by agents
- PipelineStage: The states of the pipeline state machine
- TopologyFlow / PIPELINE_TOPOLOGY: The declarative flow table
- VALID_TRANSITIONS: Map of allowed stage transitions, derived from the table
- Execution: Complete state of one pipeline run
- ExecutionResult: The value returned to the caller of ``execute``

PIPELINE_TOPOLOGY is the single definition of the pipeline. The
orchestrator walks it to decide which phases to run next, and the state
machine derives its transition map from it, so the documented flow and
the executed order cannot drift apart.

The models use Pydantic for validation, consistent with the rest of the
package.
"""

import random
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ExecutionStatus(str, Enum):
    """Lifecycle status of an execution.

    Status is monotonic: pending → in_progress → completed | failed.
    A whole-pipeline retry moves failed back to in_progress before the
    caller has observed the outcome.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelinePhase(str, Enum):
    """Named units of work executed by agents.

    Attributes:
        RESEARCH: Research subtasks handed to the research agent.
        SPECIFICATION: Spec generation and validation.
        DEVELOPMENT: Planned implementation subtasks and integration.
        QA_PREPARATION: Test-suite preparation from the generated specification alone.
        QUALITY_ASSURANCE: Test run with one fix-and-retest attempt.
        INTEGRATION: Documentation and deployment artifacts.
    """

    RESEARCH = "research"
    SPECIFICATION = "specification"
    DEVELOPMENT = "development"
    QA_PREPARATION = "qa_preparation"
    QUALITY_ASSURANCE = "quality_assurance"
    INTEGRATION = "integration"


class PipelineStage(str, Enum):
    """States of the execution state machine.

    Stage Flow:
        pending → research → specification
        → development (development ∥ qa_preparation)
        → quality_assurance → integration → completed

    Any non-terminal stage can transition to 'failed'. The 'failed' stage
    transitions back to 'pending' when the pipeline is retried.
    """

    PENDING = "pending"
    RESEARCH = "research"
    SPECIFICATION = "specification"
    DEVELOPMENT = "development"
    QUALITY_ASSURANCE = "quality_assurance"
    INTEGRATION = "integration"
    COMPLETED = "completed"
    FAILED = "failed"


class TopologyFlow(BaseModel):
    """One edge of the pipeline topology.

    Attributes:
        source: Stage the flow leaves.
        target: Stage the flow enters.
        phases: Phases run concurrently when entering the target stage.
        condition: Condition under which the flow is taken.
    """

    model_config = ConfigDict(frozen=True)

    source: PipelineStage
    target: PipelineStage
    phases: Tuple[PipelinePhase, ...] = ()
    condition: str


FAILURE_CONDITION = "blocked"
RETRY_CONDITION = "retry"

PIPELINE_TOPOLOGY: List[TopologyFlow] = [
    TopologyFlow(
        source=PipelineStage.PENDING,
        target=PipelineStage.RESEARCH,
        phases=(PipelinePhase.RESEARCH,),
        condition="always",
    ),
    TopologyFlow(
        source=PipelineStage.RESEARCH,
        target=PipelineStage.SPECIFICATION,
        phases=(PipelinePhase.SPECIFICATION,),
        condition="data_gathered",
    ),
    TopologyFlow(
        source=PipelineStage.SPECIFICATION,
        target=PipelineStage.DEVELOPMENT,
        phases=(PipelinePhase.DEVELOPMENT, PipelinePhase.QA_PREPARATION),
        condition="spec_complete",
    ),
    TopologyFlow(
        source=PipelineStage.DEVELOPMENT,
        target=PipelineStage.QUALITY_ASSURANCE,
        phases=(PipelinePhase.QUALITY_ASSURANCE,),
        condition="code_complete",
    ),
    TopologyFlow(
        source=PipelineStage.QUALITY_ASSURANCE,
        target=PipelineStage.INTEGRATION,
        phases=(PipelinePhase.INTEGRATION,),
        condition="tests_evaluated",
    ),
    TopologyFlow(
        source=PipelineStage.INTEGRATION,
        target=PipelineStage.COMPLETED,
        condition="artifacts_published",
    ),
]


def _build_transitions(
    topology: List[TopologyFlow],
) -> Dict[PipelineStage, List[PipelineStage]]:
    """Derive the transition map from the flow table.

    Every flow contributes its edge. Every stage other than COMPLETED and
    FAILED may additionally fail, and FAILED may restart at PENDING.
    """
    transitions: Dict[PipelineStage, List[PipelineStage]] = {
        stage: [] for stage in PipelineStage
    }
    for flow in topology:
        transitions[flow.source].append(flow.target)
    for stage in PipelineStage:
        if stage not in (PipelineStage.COMPLETED, PipelineStage.FAILED):
            transitions[stage].append(PipelineStage.FAILED)
    transitions[PipelineStage.FAILED].append(PipelineStage.PENDING)
    return transitions


VALID_TRANSITIONS: Dict[PipelineStage, List[PipelineStage]] = _build_transitions(
    PIPELINE_TOPOLOGY
)


def next_flow(stage: PipelineStage) -> Optional[TopologyFlow]:
    """Return the flow leaving ``stage`` on success, or None at the end.

    Example:
        >>> next_flow(PipelineStage.SPECIFICATION).phases
        (<PipelinePhase.DEVELOPMENT: 'development'>, <PipelinePhase.QA_PREPARATION: 'qa_preparation'>)
    """
    for flow in PIPELINE_TOPOLOGY:
        if flow.source == stage:
            return flow
    return None


def is_valid_transition(from_stage: PipelineStage, to_stage: PipelineStage) -> bool:
    """Check if a stage transition is allowed.

    Example:
        >>> is_valid_transition(PipelineStage.PENDING, PipelineStage.RESEARCH)
        True
        >>> is_valid_transition(PipelineStage.COMPLETED, PipelineStage.PENDING)
        False
    """
    return to_stage in VALID_TRANSITIONS.get(from_stage, [])


def is_terminal_stage(stage: PipelineStage) -> bool:
    """Check if a stage has no outgoing transitions."""
    return len(VALID_TRANSITIONS.get(stage, [])) == 0


def generate_execution_id() -> str:
    """Generate a unique execution id like ``exec_1718000000000_k3j9x0a2b``."""
    suffix = "".join(
        random.choices(string.ascii_lowercase + string.digits, k=9)
    )
    return f"exec_{int(time.time() * 1000)}_{suffix}"


class StageTransition(BaseModel):
    """Record of a stage transition.

    Attributes:
        from_stage: The stage before the transition.
        to_stage: The stage after the transition.
        timestamp: When the transition occurred (UTC).
        details: Optional metadata (error info, attempt number).
    """

    from_stage: PipelineStage
    to_stage: PipelineStage
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    details: Dict[str, Any] = Field(default_factory=dict)


class TaskDecomposition(BaseModel):
    """Output of the task decomposer.

    Attributes:
        research: Research subtasks, handed individually to the research agent.
        requirements: Requirement set handed to the spec agent.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    research: List[Any] = Field(default_factory=list)
    requirements: Any = None


class PhaseFailure(BaseModel):
    """Last failure cause of an execution.

    Attributes:
        phase: Phase (or "decomposition") that raised.
        message: String form of the exception.
        error_type: Exception class name.
    """

    phase: str
    message: str
    error_type: str


class Execution(BaseModel):
    """Complete state of one pipeline run.

    Attributes:
        execution_id: Unique id generated when the execution starts.
        task: Caller-supplied opaque task description.
        options: Caller-supplied options, reused unchanged on retry.
        decomposition: Decomposer output for the current attempt.
        status: Coarse lifecycle status.
        current_stage: Current state machine stage.
        stage_history: Ordered list of stage transitions across attempts.
        results: Phase name → phase output for the current attempt.
        retries: Whole-pipeline retries attempted so far.
        error: Last failure cause, present only while status is failed.
        start_time: When the execution was created (UTC).
        updated_at: When the execution was last updated (UTC).
    """

    execution_id: str = Field(..., min_length=1)
    task: Any = None
    options: Dict[str, Any] = Field(default_factory=dict)
    decomposition: Optional[TaskDecomposition] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_stage: PipelineStage = PipelineStage.PENDING
    stage_history: List[StageTransition] = Field(default_factory=list)
    results: Dict[str, Any] = Field(default_factory=dict)
    retries: int = Field(default=0, ge=0)
    error: Optional[PhaseFailure] = None
    start_time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class ResultMetrics(BaseModel):
    """Metrics attached to a successful execution result.

    Attributes:
        execution_time_ms: Wall-clock time of the successful attempt.
        agent_metrics: Role → ``agent.get_metrics()`` at completion.
    """

    execution_time_ms: float
    agent_metrics: Dict[str, Any] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Final result of a successful execution."""

    execution_id: str
    task: Any = None
    spec: Any = None
    code: Any = None
    tests: Any = None
    documentation: Any = None
    deployment: Any = None
    metrics: ResultMetrics
