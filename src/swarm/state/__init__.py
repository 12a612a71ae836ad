"""Execution state machine and registry.

This module manages an execution's progression through pipeline stages:
- pending → research → specification → development (∥ qa_preparation)
- → quality_assurance → integration → completed

The flow table, PIPELINE_TOPOLOGY, is the single definition of the
pipeline; the transition map is derived from it. Executions are kept in
an in-memory registry for the process lifetime.
"""

from src.swarm.state.models import (
    PIPELINE_TOPOLOGY,
    VALID_TRANSITIONS,
    Execution,
    ExecutionResult,
    ExecutionStatus,
    PhaseFailure,
    PipelinePhase,
    PipelineStage,
    ResultMetrics,
    StageTransition,
    TaskDecomposition,
    TopologyFlow,
    generate_execution_id,
    is_terminal_stage,
    is_valid_transition,
    next_flow,
)
from src.swarm.state.machine import (
    ExecutionNotFoundError,
    ExecutionRegistry,
    ExecutionStateMachine,
    InMemoryExecutionRegistry,
    InvalidTransitionError,
)

__all__ = [
    # Models
    "Execution",
    "ExecutionResult",
    "ExecutionStatus",
    "PhaseFailure",
    "PipelinePhase",
    "PipelineStage",
    "ResultMetrics",
    "StageTransition",
    "TaskDecomposition",
    # Topology
    "PIPELINE_TOPOLOGY",
    "TopologyFlow",
    "VALID_TRANSITIONS",
    "generate_execution_id",
    "is_terminal_stage",
    "is_valid_transition",
    "next_flow",
    # State machine
    "ExecutionNotFoundError",
    "ExecutionRegistry",
    "ExecutionStateMachine",
    "InMemoryExecutionRegistry",
    "InvalidTransitionError",
]
