"""Unit tests for the message router."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from doubles import FakeDevAgent, FakeQAAgent, FakeResearchAgent, FakeSpecAgent
from src.swarm.agents import AgentConfig, AgentHandle, AgentRole, AgentState
from src.swarm.events.models import EventType
from src.swarm.routing import MessageRouter


def run_async(coro):
    return asyncio.run(coro)


def emitted(emitter, event_type=None):
    events = [call.args[0] for call in emitter.emit.await_args_list]
    if event_type is None:
        return events
    return [e for e in events if e.event_type == event_type]


async def started_router(metrics, emitter, agents, configs=None, auto_recover=True):
    router = MessageRouter(metrics, emitter, auto_recover=auto_recover)
    handles = {}
    for agent in agents:
        config = (configs or {}).get(agent.role, AgentConfig())
        handle = AgentHandle(role=agent.role, agent=agent, config=config)
        router.register(handle)
        handles[agent.role] = handle
    await router.start()
    return router, handles


class TestRouting:
    def test_broadcast_reaches_every_agent_except_sender(self, metrics):
        emitter = AsyncMock()
        research, spec, dev = FakeResearchAgent(), FakeSpecAgent(), FakeDevAgent()

        async def scenario():
            router, _ = await started_router(metrics, emitter, [research, spec, dev])
            research.broadcast({"body": "findings ready"})
            await router.join()
            await router.close()

        run_async(scenario())

        assert research.inbox == []
        assert spec.inbox == [{"body": "findings ready", "type": "broadcast"}]
        assert dev.inbox == [{"body": "findings ready", "type": "broadcast"}]
        [event] = emitted(emitter, EventType.AGENT_MESSAGE)
        assert event.agent == "research"
        assert sorted(event.details["targets"]) == ["dev", "spec"]
        assert event.details["broadcast"] is True

    def test_targeted_message_reaches_only_target(self, metrics):
        emitter = AsyncMock()
        research, spec, dev = FakeResearchAgent(), FakeSpecAgent(), FakeDevAgent()

        async def scenario():
            router, _ = await started_router(metrics, emitter, [research, spec, dev])
            spec.send({"body": "spec draft"}, target=AgentRole.DEV)
            await router.join()
            await router.close()

        run_async(scenario())

        assert dev.inbox == [{"body": "spec draft", "target": "dev"}]
        assert research.inbox == []
        assert spec.inbox == []

    @pytest.mark.parametrize(
        "payload,reason",
        [
            ({"body": "nowhere"}, "unroutable"),
            ({"body": "x", "target": "marketing"}, "unknown_target"),
            ({"body": "x", "target": "qa"}, "unknown_target"),
        ],
    )
    def test_undeliverable_messages_are_dropped(self, metrics, payload, reason):
        emitter = AsyncMock()
        research, spec = FakeResearchAgent(), FakeSpecAgent()

        async def scenario():
            router, _ = await started_router(metrics, emitter, [research, spec])
            research.channel.send(payload)
            await router.join()
            await router.close()

        run_async(scenario())

        assert spec.inbox == []
        [event] = emitted(emitter, EventType.AGENT_MESSAGE_DROPPED)
        assert event.details == {"reason": reason}

    def test_disabled_agents_receive_nothing(self, metrics):
        emitter = AsyncMock()
        research, spec, dev = FakeResearchAgent(), FakeSpecAgent(), FakeDevAgent()

        async def scenario():
            router, _ = await started_router(
                metrics,
                emitter,
                [research, spec, dev],
                configs={AgentRole.DEV: AgentConfig(enabled=False)},
            )
            research.broadcast({"body": "hello"})
            await router.join()
            await router.close()

        run_async(scenario())

        assert dev.inbox == []
        assert len(spec.inbox) == 1

    def test_delivery_failure_is_reported_and_not_raised(self, metrics):
        emitter = AsyncMock()
        research, spec = FakeResearchAgent(), FakeSpecAgent()
        spec.receive_message = MagicMock(side_effect=RuntimeError("inbox full"))

        async def scenario():
            router, _ = await started_router(metrics, emitter, [research, spec])
            research.broadcast({"body": "hello"})
            await router.join()
            await router.close()

        run_async(scenario())

        [event] = emitted(emitter, EventType.AGENT_MESSAGE_DROPPED)
        assert event.agent == "spec"
        assert event.details["reason"] == "delivery_failed"
        assert event.details["source"] == "research"
        assert event.details["error"] == "inbox full"

    def test_async_receive_message_is_awaited(self, metrics):
        emitter = AsyncMock()
        research, spec = FakeResearchAgent(), FakeSpecAgent()
        spec.receive_message = AsyncMock()

        async def scenario():
            router, _ = await started_router(metrics, emitter, [research, spec])
            research.broadcast({"body": "hello"})
            await router.join()
            await router.close()

        run_async(scenario())

        spec.receive_message.assert_awaited_once_with(
            {"body": "hello", "type": "broadcast"}
        )

    def test_duplicate_registration_is_rejected(self, metrics):
        async def scenario():
            router = MessageRouter(metrics)
            agent = FakeResearchAgent()
            router.register(AgentHandle(role=AgentRole.RESEARCH, agent=agent))
            router.register(AgentHandle(role=AgentRole.RESEARCH, agent=agent))

        with pytest.raises(ValueError):
            run_async(scenario())

    def test_register_attaches_channel(self, metrics):
        async def scenario():
            router = MessageRouter(metrics)
            agent = FakeResearchAgent()
            channel = router.register(AgentHandle(role=AgentRole.RESEARCH, agent=agent))
            return agent, channel

        agent, channel = run_async(scenario())

        assert agent.channel is channel
        assert channel.role == AgentRole.RESEARCH

    def test_events_after_close_are_dropped(self, metrics):
        emitter = AsyncMock()
        research, spec = FakeResearchAgent(), FakeSpecAgent()

        async def scenario():
            router, _ = await started_router(metrics, emitter, [research, spec])
            await router.close()
            research.broadcast({"body": "late"})
            return router

        router = run_async(scenario())

        assert router.closed
        assert spec.inbox == []
        assert emitted(emitter) == []


class TestErrorEvents:
    def test_error_restarts_agent_and_reports_recovery(self, metrics):
        emitter = AsyncMock()
        research = FakeResearchAgent(error=RuntimeError("search failed"))

        async def scenario():
            router, handles = await started_router(metrics, emitter, [research])
            with pytest.raises(RuntimeError):
                await research.execute("topic")
            await router.join()
            await router.close()
            return handles[AgentRole.RESEARCH]

        handle = run_async(scenario())

        assert research.restarts == 1
        assert handle.error_count == 1
        assert handle.last_error == "search failed"
        assert handle.state == AgentState.IDLE
        assert handle.pending_restart is False
        types = [e.event_type for e in emitted(emitter)]
        assert types == [EventType.AGENT_ERROR, EventType.AGENT_RECOVERED]

    def test_failed_restart_is_reported_not_raised(self, metrics):
        emitter = AsyncMock()
        research = FakeResearchAgent()
        research.restart = AsyncMock(side_effect=RuntimeError("cannot restart"))

        async def scenario():
            router, handles = await started_router(metrics, emitter, [research])
            research.report_error(RuntimeError("crashed"))
            await router.join()
            await router.close()
            return handles[AgentRole.RESEARCH]

        handle = run_async(scenario())

        [event] = emitted(emitter, EventType.AGENT_RECOVERY_FAILED)
        assert event.details == {
            "error": "cannot restart",
            "error_type": "RuntimeError",
        }
        assert handle.state == AgentState.IDLE
        assert handle.pending_restart is False

    @pytest.mark.parametrize(
        "router_recover,handle_recover",
        [(False, True), (True, False)],
    )
    def test_no_restart_when_recovery_is_off(
        self, metrics, router_recover, handle_recover
    ):
        emitter = AsyncMock()
        research = FakeResearchAgent()

        async def scenario():
            router, handles = await started_router(
                metrics,
                emitter,
                [research],
                configs={AgentRole.RESEARCH: AgentConfig(auto_recover=handle_recover)},
                auto_recover=router_recover,
            )
            research.channel.error("transient")
            await router.join()
            await router.close()
            return handles[AgentRole.RESEARCH]

        handle = run_async(scenario())

        assert research.restarts == 0
        assert handle.error_count == 1
        types = [e.event_type for e in emitted(emitter)]
        assert types == [EventType.AGENT_ERROR]


class TestCompleteEvents:
    def test_completion_updates_agent_utilization(self, metrics):
        emitter = AsyncMock()
        qa = FakeQAAgent()

        async def scenario():
            router, _ = await started_router(metrics, emitter, [qa])
            await qa.execute("suite")
            await qa.execute("suite")
            await router.join()
            await router.close()

        run_async(scenario())

        utilization = metrics.snapshot().agent_utilization["qa"]
        assert utilization.tasks_completed == 2
        assert utilization.total_time == pytest.approx(qa.get_metrics()["total_time"])
        assert len(emitted(emitter, EventType.AGENT_COMPLETE)) == 2

    def test_reported_time_is_accumulated(self, metrics):
        async def scenario():
            router, _ = await started_router(metrics, AsyncMock(), [FakeDevAgent()])
            channel = router.register(
                AgentHandle(role=AgentRole.QA, agent=FakeQAAgent())
            )
            channel.complete(120.0)
            channel.complete(30.5)
            await router.join()
            await router.close()

        run_async(scenario())

        utilization = metrics.snapshot().agent_utilization["qa"]
        assert utilization.tasks_completed == 2
        assert utilization.total_time == pytest.approx(150.5)

    def test_emitter_failure_does_not_stop_dispatch(self, metrics):
        emitter = AsyncMock()
        emitter.emit.side_effect = RuntimeError("sink down")
        research, spec = FakeResearchAgent(), FakeSpecAgent()

        async def scenario():
            router, _ = await started_router(metrics, emitter, [research, spec])
            research.broadcast({"body": "one"})
            research.broadcast({"body": "two"})
            await router.join()
            await router.close()

        run_async(scenario())

        assert [m["body"] for m in spec.inbox] == ["one", "two"]
