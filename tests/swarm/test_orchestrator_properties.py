"""Property tests for the orchestrator pipeline.

Covers whole-pipeline retry, the development/QA-preparation join, the QA
fix-and-retest path with escalation, and process-wide metrics.
"""

import asyncio
import tempfile
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, settings, strategies as st
from prometheus_client import CollectorRegistry

from doubles import (
    FakeDecomposer,
    FakeDevAgent,
    FakeQAAgent,
    FakeResearchAgent,
    make_agents,
    make_escalation,
)
from src.swarm.agents import AgentRole
from src.swarm.config import SwarmSettings
from src.swarm.events.metrics import SwarmMetrics
from src.swarm.orchestrator import QA_FAILED_REASON, Orchestrator
from src.swarm.state import ExecutionStatus, PipelineStage


def run_async(coro):
    return asyncio.run(coro)


class SearchBackendDown(Exception):
    pass


# =============================================================================
# Whole-pipeline retry
# =============================================================================


@given(max_retries=st.integers(min_value=0, max_value=4))
@settings(max_examples=10, deadline=None)
def test_failing_research_runs_n_plus_one_attempts_then_raises(max_retries):
    error = SearchBackendDown("search backend unavailable")
    research = FakeResearchAgent(error=error)
    decomposer = FakeDecomposer(research=["market"])
    sleep = AsyncMock()

    async def scenario():
        orchestrator = Orchestrator(
            agents=make_agents(research=research),
            decomposer=decomposer,
            settings=SwarmSettings(
                runtime_dir=tempfile.gettempdir(), max_retries=max_retries
            ),
            metrics=SwarmMetrics(registry=CollectorRegistry()),
            escalation=make_escalation(),
            sleep=sleep,
        )
        try:
            await orchestrator.execute("Build a todo API")
        finally:
            await orchestrator.router.close()

    with pytest.raises(SearchBackendDown) as exc_info:
        run_async(scenario())

    assert exc_info.value is error
    assert len(research.subtasks) == max_retries + 1
    assert decomposer.calls == max_retries + 1
    assert [call.args[0] for call in sleep.await_args_list] == [
        min(1000 * 2 ** n, 30000) / 1000 for n in range(1, max_retries + 1)
    ]


def test_exhausted_execution_is_failed_with_cause(build_orchestrator, metrics):
    research = FakeResearchAgent(error=SearchBackendDown("down"))

    async def scenario():
        orchestrator = build_orchestrator(agents=make_agents(research=research))
        execution = await orchestrator.submit("task")
        with pytest.raises(SearchBackendDown):
            await orchestrator.run_execution(execution.execution_id)
        await orchestrator.router.close()
        return await orchestrator.get_execution(execution.execution_id)

    execution = run_async(scenario())

    assert execution.status == ExecutionStatus.FAILED
    assert execution.retries == 3
    assert execution.error.phase == "research"
    assert execution.error.error_type == "SearchBackendDown"
    assert metrics.snapshot().tasks_failed == 1


def test_retry_succeeds_after_transient_failure(build_orchestrator, metrics):
    research = FakeResearchAgent(error=SearchBackendDown("flaky"))
    sleep = AsyncMock()

    async def clear_error(_seconds):
        research.error = None

    sleep.side_effect = clear_error

    async def scenario():
        orchestrator = build_orchestrator(
            agents=make_agents(research=research), sleep=sleep
        )
        result = await orchestrator.execute("task")
        execution = await orchestrator.get_execution(result.execution_id)
        await orchestrator.router.close()
        return result, execution

    result, execution = run_async(scenario())

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.retries == 1
    assert execution.error is None
    assert result.code == "integrated code"
    snapshot = metrics.snapshot()
    assert snapshot.tasks_completed == 1
    assert snapshot.tasks_failed == 0


# =============================================================================
# Development and QA preparation join
# =============================================================================


def test_development_and_qa_preparation_overlap(build_orchestrator):
    dev = FakeDevAgent(subtasks=["models", "api", "cli"], delay=0.05)
    qa = FakeQAAgent(prep_delay=0.1)

    async def scenario():
        orchestrator = build_orchestrator(agents=make_agents(dev=dev, qa=qa))
        await orchestrator.execute("task")
        await orchestrator.router.close()

    run_async(scenario())

    # Each phase started before the other finished
    assert dev.phase_started < qa.prep_finished
    assert qa.prep_started < dev.phase_finished


def test_join_waits_for_both_phases(build_orchestrator):
    qa = FakeQAAgent(prep_delay=0.05)
    dev = FakeDevAgent()

    async def scenario():
        orchestrator = build_orchestrator(agents=make_agents(dev=dev, qa=qa))
        await orchestrator.execute("task")
        await orchestrator.router.close()

    run_async(scenario())

    [test_run] = qa.runs
    assert test_run["test_suite"] == {"suite": ["unit", "integration", "e2e"]}
    assert test_run["code"] == "integrated code"
    assert test_run["coverage"] == 80


# =============================================================================
# Quality assurance
# =============================================================================


def test_green_suite_skips_fix_and_escalation(build_orchestrator):
    dev = FakeDevAgent()
    qa = FakeQAAgent(results=[{"failed": 0, "passed": 12}])
    escalation = make_escalation()

    async def scenario():
        orchestrator = build_orchestrator(
            agents=make_agents(dev=dev, qa=qa), escalation=escalation
        )
        result = await orchestrator.execute("task")
        await orchestrator.router.close()
        return result

    result = run_async(scenario())

    assert dev.fix_calls == []
    escalation.escalate.assert_not_awaited()
    assert len(qa.runs) == 1
    assert result.tests == {"failed": 0, "passed": 12}


def test_successful_fix_and_green_retest_skips_escalation(build_orchestrator):
    failing = {"failed": 2, "passed": 10}
    dev = FakeDevAgent(fix_result={"success": True, "code": "fixed code"})
    qa = FakeQAAgent(results=[failing, {"failed": 0, "passed": 12}])
    escalation = make_escalation()

    async def scenario():
        orchestrator = build_orchestrator(
            agents=make_agents(dev=dev, qa=qa), escalation=escalation
        )
        result = await orchestrator.execute("task")
        await orchestrator.router.close()
        return result

    result = run_async(scenario())

    assert dev.fix_calls == [failing]
    escalation.escalate.assert_not_awaited()
    assert [run["code"] for run in qa.runs] == ["integrated code", "fixed code"]
    assert result.code == "fixed code"
    assert result.tests == {"failed": 0, "passed": 12}


@pytest.mark.parametrize(
    "fix_result,qa_results,expected_tests,expected_runs",
    [
        (
            {"success": False},
            [{"failed": 2, "passed": 10}],
            {"failed": 2, "passed": 10},
            1,
        ),
        (
            {"success": True, "code": "fixed code"},
            [{"failed": 2, "passed": 10}, {"failed": 1, "passed": 11}],
            {"failed": 1, "passed": 11},
            2,
        ),
    ],
    ids=["fix-fails", "retest-still-red"],
)
def test_unfixed_failures_escalate_once_and_are_returned(
    build_orchestrator, fix_result, qa_results, expected_tests, expected_runs
):
    dev = FakeDevAgent(fix_result=fix_result)
    qa = FakeQAAgent(results=qa_results)
    escalation = make_escalation()

    async def scenario():
        orchestrator = build_orchestrator(
            agents=make_agents(dev=dev, qa=qa), escalation=escalation
        )
        result = await orchestrator.execute("task")
        execution = await orchestrator.get_execution(result.execution_id)
        await orchestrator.router.close()
        return result, execution

    result, execution = run_async(scenario())

    escalation.escalate.assert_awaited_once()
    call = escalation.escalate.await_args
    assert call.args == (QA_FAILED_REASON, expected_tests)
    assert call.kwargs == {"execution_id": result.execution_id}
    assert len(dev.fix_calls) == 1
    assert len(qa.runs) == expected_runs
    # Escalated QA failures are returned, not raised
    assert execution.status == ExecutionStatus.COMPLETED
    assert result.tests == expected_tests
    assert result.code == "integrated code"


# =============================================================================
# Metrics
# =============================================================================


def test_metrics_after_two_successes_and_one_failure(
    build_orchestrator, swarm_settings, metrics
):
    agents = make_agents()
    research = agents[AgentRole.RESEARCH]

    async def scenario():
        orchestrator = build_orchestrator(
            agents=agents,
            settings=swarm_settings.model_copy(update={"max_retries": 1}),
            decomposer=FakeDecomposer(research=["market"]),
        )
        await orchestrator.execute("first")
        await orchestrator.execute("second")
        research.error = SearchBackendDown("down")
        with pytest.raises(SearchBackendDown):
            await orchestrator.execute("third")
        await orchestrator.router.join()
        await orchestrator.router.close()
        return orchestrator

    orchestrator = run_async(scenario())

    snapshot = metrics.snapshot()
    assert snapshot.tasks_completed == 2
    assert snapshot.tasks_failed == 1
    assert snapshot.total_execution_time > 0

    for role, agent_metrics in orchestrator.collect_agent_metrics().items():
        completed = agent_metrics["tasks_completed"]
        utilization = snapshot.agent_utilization.get(role)
        assert (utilization.tasks_completed if utilization else 0) == completed

    assert snapshot.agent_utilization["dev"].tasks_completed == 6
    assert snapshot.agent_utilization["qa"].tasks_completed == 2
    assert research.get_metrics()["tasks_failed"] == 2


def test_result_aggregates_every_artifact(build_orchestrator):
    async def scenario():
        orchestrator = build_orchestrator()
        result = await orchestrator.execute("Build a todo API")
        execution = await orchestrator.get_execution(result.execution_id)
        await orchestrator.router.close()
        return result, execution

    result, execution = run_async(scenario())

    assert result.task == "Build a todo API"
    assert result.spec == {"title": "spec", "requirements": ["build Build a todo API"]}
    assert result.code == "integrated code"
    assert result.tests == {"failed": 0, "passed": 12}
    assert result.documentation == "README"
    assert result.deployment == "manifest"
    assert result.metrics.execution_time_ms >= 0
    assert set(result.metrics.agent_metrics) == {
        "research",
        "spec",
        "dev",
        "qa",
        "integration",
    }
    assert execution.results["result"] == result
    assert execution.current_stage == PipelineStage.COMPLETED
    assert [t.to_stage for t in execution.stage_history][-6:] == [
        PipelineStage.RESEARCH,
        PipelineStage.SPECIFICATION,
        PipelineStage.DEVELOPMENT,
        PipelineStage.QUALITY_ASSURANCE,
        PipelineStage.INTEGRATION,
        PipelineStage.COMPLETED,
    ]
