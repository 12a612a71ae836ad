"""Execution state machine implementation.

This module implements the ExecutionStateMachine class that manages an
execution's progression through pipeline stages with validation,
timestamp recording, and failure bookkeeping.

The state machine is the only writer of Execution records. Every
read-modify-write goes through a single asyncio lock so that the two
concurrent phases of the development stage, the retry controller and
status readers never lose updates.

The state machine depends on an ExecutionRegistry for storage. The core
keeps executions in memory for the process lifetime; the registry
protocol exists so tests can observe every write.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from src.swarm.state.models import (
    Execution,
    ExecutionStatus,
    PhaseFailure,
    PipelineStage,
    StageTransition,
    TaskDecomposition,
    generate_execution_id,
    is_valid_transition,
)


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid stage transition is attempted.

    Attributes:
        from_stage: The current stage.
        to_stage: The attempted target stage.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_stage: PipelineStage,
        to_stage: PipelineStage,
        message: Optional[str] = None,
    ):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.message = message or (
            f"Invalid transition from {from_stage.value} to {to_stage.value}"
        )
        super().__init__(self.message)


class ExecutionNotFoundError(Exception):
    """Raised when an execution id is not in the registry.

    Attributes:
        execution_id: The execution id that was not found.
    """

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


@runtime_checkable
class ExecutionRegistry(Protocol):
    """Protocol defining the storage used by the state machine."""

    async def save(self, execution: Execution) -> None:
        """Save or replace an execution."""
        ...

    async def get(self, execution_id: str) -> Optional[Execution]:
        """Get an execution by id, or None."""
        ...

    async def list_all(self) -> List[Execution]:
        """List every execution in creation order."""
        ...


class InMemoryExecutionRegistry:
    """Execution registry retained in memory for the process lifetime."""

    def __init__(self) -> None:
        self._executions: Dict[str, Execution] = {}

    async def save(self, execution: Execution) -> None:
        self._executions[execution.execution_id] = execution

    async def get(self, execution_id: str) -> Optional[Execution]:
        return self._executions.get(execution_id)

    async def list_all(self) -> List[Execution]:
        return list(self._executions.values())

    def __len__(self) -> int:
        return len(self._executions)


class ExecutionStateMachine:
    """State machine for managing execution progression.

    The state machine enforces the following invariants:
    - Exactly one Execution exists per id
    - Only transitions derived from PIPELINE_TOPOLOGY are allowed
    - Every transition is recorded with a timestamp in stage_history
    - Transitions to FAILED store a PhaseFailure and set status failed
    - A new attempt discards the previous attempt's decomposition and results

    Attributes:
        registry: The execution registry for storage.

    Example:
        >>> machine = ExecutionStateMachine(InMemoryExecutionRegistry())
        >>> execution = await machine.create("Build a todo API")
        >>> execution = await machine.start_attempt(execution.execution_id)
        >>> execution = await machine.transition(
        ...     execution.execution_id, PipelineStage.RESEARCH
        ... )
    """

    def __init__(self, registry: Optional[ExecutionRegistry] = None):
        self.registry = registry if registry is not None else InMemoryExecutionRegistry()
        self._lock = asyncio.Lock()

    async def create(
        self,
        task: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        """Create a new execution in the PENDING stage.

        Args:
            task: Caller-supplied task description.
            options: Caller-supplied options.

        Returns:
            The newly created execution.
        """
        async with self._lock:
            execution_id = generate_execution_id()
            while await self.registry.get(execution_id) is not None:
                execution_id = generate_execution_id()

            execution = Execution(
                execution_id=execution_id,
                task=task,
                options=dict(options or {}),
            )

            logger.info(
                "Creating execution",
                extra={"execution_id": execution_id},
            )

            await self.registry.save(execution)
            return execution

    async def start_attempt(self, execution_id: str) -> Execution:
        """Begin a pipeline attempt.

        The first attempt moves the status from pending to in_progress.
        A retry additionally transitions the stage from FAILED back to
        PENDING and discards the failed attempt's decomposition, phase
        results and error.

        Raises:
            ExecutionNotFoundError: If the execution doesn't exist.
            InvalidTransitionError: If the execution has already completed.
        """
        async with self._lock:
            execution = await self._require(execution_id)

            if execution.status == ExecutionStatus.COMPLETED:
                raise InvalidTransitionError(
                    execution.current_stage,
                    PipelineStage.PENDING,
                    message=f"Execution {execution_id} already completed",
                )

            history = execution.stage_history
            if execution.current_stage == PipelineStage.FAILED:
                history = history + [
                    StageTransition(
                        from_stage=PipelineStage.FAILED,
                        to_stage=PipelineStage.PENDING,
                        details={"attempt": execution.retries + 1},
                    )
                ]
                logger.info(
                    "Restarting execution from scratch",
                    extra={
                        "execution_id": execution_id,
                        "retries": execution.retries,
                    },
                )

            updated = execution.model_copy(
                update={
                    "status": ExecutionStatus.IN_PROGRESS,
                    "current_stage": PipelineStage.PENDING,
                    "stage_history": history,
                    "decomposition": None,
                    "results": {},
                    "error": None,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            await self.registry.save(updated)
            return updated

    async def transition(
        self,
        execution_id: str,
        to_stage: PipelineStage,
        details: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        """Transition an execution to a new stage.

        Args:
            execution_id: The execution id.
            to_stage: The target stage.
            details: Optional metadata recorded with the transition.

        Returns:
            The updated execution.

        Raises:
            ExecutionNotFoundError: If the execution doesn't exist.
            InvalidTransitionError: If the transition is not valid.
        """
        async with self._lock:
            return await self._transition(execution_id, to_stage, details or {})

    async def fail(self, execution_id: str, failure: PhaseFailure) -> Execution:
        """Transition to FAILED and store the failure cause."""
        async with self._lock:
            return await self._transition(
                execution_id,
                PipelineStage.FAILED,
                {"failure": failure},
            )

    async def set_decomposition(
        self,
        execution_id: str,
        decomposition: TaskDecomposition,
    ) -> Execution:
        """Store the decomposition for the current attempt.

        Raises:
            ValueError: If the current attempt already has a decomposition.
        """
        async with self._lock:
            execution = await self._require(execution_id)
            if execution.decomposition is not None:
                raise ValueError(
                    f"Decomposition already set for execution {execution_id}"
                )
            updated = execution.model_copy(
                update={
                    "decomposition": decomposition,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            await self.registry.save(updated)
            return updated

    async def record_phase_result(
        self,
        execution_id: str,
        phase: str,
        output: Any,
    ) -> Execution:
        """Store a phase output in the execution's results."""
        async with self._lock:
            execution = await self._require(execution_id)
            results = dict(execution.results)
            results[phase] = output
            updated = execution.model_copy(
                update={
                    "results": results,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            await self.registry.save(updated)
            return updated

    async def increment_retries(self, execution_id: str) -> Execution:
        """Increment the whole-pipeline retry counter."""
        async with self._lock:
            execution = await self._require(execution_id)
            updated = execution.model_copy(
                update={
                    "retries": execution.retries + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            await self.registry.save(updated)
            return updated

    async def get(self, execution_id: str) -> Optional[Execution]:
        """Get the current state of an execution."""
        return await self.registry.get(execution_id)

    async def list_all(self) -> List[Execution]:
        """List every execution."""
        return await self.registry.list_all()

    async def list_by_status(self, status: ExecutionStatus) -> List[Execution]:
        """List every execution with the given status."""
        return [
            execution
            for execution in await self.registry.list_all()
            if execution.status == status
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require(self, execution_id: str) -> Execution:
        execution = await self.registry.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def _transition(
        self,
        execution_id: str,
        to_stage: PipelineStage,
        details: Dict[str, Any],
    ) -> Execution:
        execution = await self._require(execution_id)
        from_stage = execution.current_stage

        if not is_valid_transition(from_stage, to_stage):
            logger.warning(
                "Invalid stage transition attempted",
                extra={
                    "execution_id": execution_id,
                    "from_stage": from_stage.value,
                    "to_stage": to_stage.value,
                },
            )
            raise InvalidTransitionError(from_stage, to_stage)

        update: Dict[str, Any] = {
            "current_stage": to_stage,
            "updated_at": datetime.now(timezone.utc),
        }

        record_details = dict(details)
        if to_stage == PipelineStage.FAILED:
            failure = record_details.pop("failure", None)
            if failure is None:
                failure = PhaseFailure(
                    phase=from_stage.value,
                    message="Unknown error (no details provided)",
                    error_type="UnknownError",
                )
                logger.warning(
                    "Transition to FAILED without error details",
                    extra={"execution_id": execution_id},
                )
            update["status"] = ExecutionStatus.FAILED
            update["error"] = failure
            record_details["error"] = failure.message
            record_details["phase"] = failure.phase
        elif to_stage == PipelineStage.COMPLETED:
            update["status"] = ExecutionStatus.COMPLETED

        update["stage_history"] = execution.stage_history + [
            StageTransition(
                from_stage=from_stage,
                to_stage=to_stage,
                details=record_details,
            )
        ]

        updated = execution.model_copy(update=update)

        logger.info(
            "Transitioning execution stage",
            extra={
                "execution_id": execution_id,
                "from_stage": from_stage.value,
                "to_stage": to_stage.value,
            },
        )

        await self.registry.save(updated)
        return updated
