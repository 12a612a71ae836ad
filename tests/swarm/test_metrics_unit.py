"""Unit tests for swarm metrics, event emitters and snapshot persistence."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, patch

import pytest
from prometheus_client import CollectorRegistry

from src.swarm.events import (
    CompositeEventEmitter,
    EventSinkType,
    EventType,
    LoggingEventEmitter,
    MetricsEventEmitter,
    MetricsSnapshot,
    SwarmEvent,
    SwarmMetrics,
    create_event_emitter,
    generate_metrics_output,
    get_metrics,
    write_metrics_snapshot,
)


def run_async(coro):
    return asyncio.run(coro)


class TestSwarmMetrics:
    def test_counters_start_at_zero(self, metrics):
        snapshot = metrics.snapshot()

        assert snapshot == MetricsSnapshot()

    def test_execution_counters(self, metrics):
        metrics.record_execution_completed()
        metrics.record_execution_completed()
        metrics.record_execution_failed()
        metrics.record_execution_time(1500.0, success=True)
        metrics.record_execution_time(500.0, success=False)

        snapshot = metrics.snapshot()
        assert snapshot.tasks_completed == 2
        assert snapshot.tasks_failed == 1
        assert snapshot.total_execution_time == pytest.approx(2000.0)

        registry = metrics.registry
        assert registry.get_sample_value("swarm_tasks_completed_total") == 2
        assert registry.get_sample_value("swarm_tasks_failed_total") == 1
        assert (
            registry.get_sample_value(
                "swarm_execution_duration_seconds_count", {"result": "success"}
            )
            == 1
        )
        assert registry.get_sample_value(
            "swarm_execution_duration_seconds_sum", {"result": "failure"}
        ) == pytest.approx(0.5)

    def test_agent_completion_accumulates_per_agent(self, metrics):
        metrics.record_agent_completion("dev", 100.0)
        metrics.record_agent_completion("dev", 250.0)
        metrics.record_agent_completion("qa", 40.0)

        utilization = metrics.snapshot().agent_utilization
        assert utilization["dev"].tasks_completed == 2
        assert utilization["dev"].total_time == pytest.approx(350.0)
        assert utilization["qa"].tasks_completed == 1
        assert metrics.registry.get_sample_value(
            "swarm_agent_busy_seconds_total", {"agent": "dev"}
        ) == pytest.approx(0.35)

    def test_snapshot_is_a_copy(self, metrics):
        metrics.record_agent_completion("dev", 10.0)
        snapshot = metrics.snapshot()

        metrics.record_agent_completion("dev", 10.0)

        assert snapshot.agent_utilization["dev"].tasks_completed == 1

    def test_get_metrics_with_registry_returns_new_instance(self):
        registry = CollectorRegistry()

        assert get_metrics(registry).registry is registry

    def test_generate_output_contains_metric_names(self, metrics):
        metrics.record_execution_completed()

        output = generate_metrics_output(metrics.registry).decode()

        assert "swarm_tasks_completed_total 1.0" in output


class TestMetricsEventEmitter:
    def test_events_update_prometheus_metrics(self, metrics):
        emitter = MetricsEventEmitter(metrics)

        async def scenario():
            await emitter.emit(SwarmEvent(event_type=EventType.EXECUTION_RETRY))
            await emitter.emit(
                SwarmEvent(
                    event_type=EventType.ESCALATION, details={"reason": "QA Failed"}
                )
            )
            await emitter.emit(
                SwarmEvent(
                    event_type=EventType.EXECUTION_FAILED,
                    details={"phase": "specification"},
                )
            )
            await emitter.emit(
                SwarmEvent(
                    event_type=EventType.PHASE_COMPLETE,
                    details={"phase": "research", "duration_ms": 2000.0},
                )
            )

        run_async(scenario())

        registry = metrics.registry
        assert registry.get_sample_value("swarm_execution_retries_total") == 1
        assert (
            registry.get_sample_value(
                "swarm_escalations_total", {"reason": "QA Failed"}
            )
            == 1
        )
        assert (
            registry.get_sample_value(
                "swarm_phase_failures_total", {"phase": "specification"}
            )
            == 1
        )
        assert registry.get_sample_value(
            "swarm_phase_duration_seconds_sum", {"phase": "research"}
        ) == pytest.approx(2.0)

    def test_malformed_details_are_logged_not_raised(self, metrics, caplog):
        emitter = MetricsEventEmitter(metrics)
        event = SwarmEvent(
            event_type=EventType.PHASE_COMPLETE,
            details={"phase": "research", "duration_ms": "soon"},
        )

        with caplog.at_level(logging.ERROR):
            run_async(emitter.emit(event))

        assert "Failed to update metrics" in caplog.text


class TestEmitterFactory:
    def test_default_is_logging(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)

    def test_logging_and_metrics_sinks(self, metrics):
        emitter = create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.METRICS], metrics=metrics
        )

        assert isinstance(emitter, CompositeEventEmitter)
        kinds = [type(e) for e in emitter.emitters]
        assert kinds == [LoggingEventEmitter, MetricsEventEmitter]

    def test_metrics_sink_without_instance_is_skipped(self):
        emitter = create_event_emitter([EventSinkType.METRICS])

        assert isinstance(emitter, LoggingEventEmitter)

    def test_composite_isolates_failing_sink(self):
        broken = AsyncMock()
        broken.emit.side_effect = RuntimeError("down")
        healthy = AsyncMock()
        composite = CompositeEventEmitter([broken, healthy])
        event = SwarmEvent(event_type=EventType.EXECUTION_START)

        run_async(composite.emit(event))

        healthy.emit.assert_awaited_once_with(event)

    def test_logging_emitter_writes_event_type(self, caplog):
        emitter = LoggingEventEmitter()
        event = SwarmEvent(
            event_type=EventType.PHASE_START,
            execution_id="exec_1_abcdefghi",
            details={"phase": "research"},
        )

        with caplog.at_level(logging.INFO):
            run_async(emitter.emit(event))

        assert "phase_start" in caplog.text


class TestSnapshotPersistence:
    def test_snapshot_file_layout(self, metrics, tmp_path):
        metrics.record_execution_completed()
        metrics.record_agent_completion("dev", 12.5)
        runtime_dir = tmp_path / "runtime"

        path = write_metrics_snapshot(metrics.snapshot(), runtime_dir)

        assert path.parent == runtime_dir
        assert path.name.startswith("metrics_") and path.suffix == ".json"
        record = json.loads(path.read_text())
        assert set(record) == {"saved_at", "metrics"}
        assert record["metrics"]["tasks_completed"] == 1
        assert record["metrics"]["agent_utilization"]["dev"] == {
            "tasks_completed": 1,
            "total_time": 12.5,
        }

    def test_same_millisecond_does_not_overwrite(self, tmp_path):
        with patch("src.swarm.events.metrics.time.time", return_value=1700000000.0):
            first = write_metrics_snapshot(MetricsSnapshot(tasks_completed=1), tmp_path)
            second = write_metrics_snapshot(MetricsSnapshot(tasks_completed=2), tmp_path)

        assert first.name == "metrics_1700000000000.json"
        assert second.name == "metrics_1700000000001.json"
        assert json.loads(first.read_text())["metrics"]["tasks_completed"] == 1
        assert json.loads(second.read_text())["metrics"]["tasks_completed"] == 2
