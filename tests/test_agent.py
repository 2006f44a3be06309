"""
测试用例 - Agent轮次控制器
"""
import asyncio

import pytest

from helpers import CountingTool, FakeBackend, SlowTool, text_response, tool_response
from threadloom.core.agent_loop import TurnStatus
from threadloom.core.errors import AgentStoppedError, TurnCancelledError
from threadloom.core.llm_client import _emit_token
from threadloom.core.policy import ApprovalMode, PolicyEngine
from threadloom.core.token_budget import TokenBudgetConfig
from threadloom.core.types import (
    AgentMessageData, ApprovalDecision, EventType, LoopState, MessagePriority, NotificationType,
    QueuedMessage, QueuedMessageMetadata, TokenUsage, ToolCall, ToolStatus
)
from threadloom.tools.base import ToolRegistry
from threadloom.tools.builtin import register_builtin_tools


def events_of(events, event_type):
    return [e for e in events if e.type == event_type]


def record(agent, notification_type):
    received = []
    agent.notifications.on(notification_type, received.append)
    return received


def write_call(call_id, path, content="hi"):
    return ToolCall(call_id, "file_write", {"path": path, "content": content})


class TestAgentBasics:
    """测试基本对话和Token用量"""

    @pytest.mark.asyncio
    async def test_simple_completion_records_usage(self, make_agent):
        backend = FakeBackend([text_response("hello there", TokenUsage(12, 5, 17))])
        agent = make_agent(backend)

        outcome = await agent.send_message("hi")

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.content == "hello there"
        assert agent.state == LoopState.IDLE

        events = await agent.get_events()
        assert [e.type for e in events] == [
            EventType.SYSTEM_PROMPT, EventType.USER_MESSAGE, EventType.AGENT_MESSAGE
        ]
        assert events[2].data.token_usage == TokenUsage(12, 5, 17)

        usage = await agent.get_token_usage()
        assert (usage.total_prompt_tokens, usage.total_completion_tokens, usage.total_tokens) == (12, 5, 17)

    @pytest.mark.asyncio
    async def test_missing_usage_is_not_invented(self, make_agent):
        agent = make_agent(FakeBackend([text_response("no usage")]))
        await agent.send_message("hi")

        events = await agent.get_events()
        assert events[-1].data.token_usage is None
        assert (await agent.get_token_usage()).total_tokens == 0

    @pytest.mark.asyncio
    async def test_system_prompt_written_once(self, make_agent, store):
        agent = make_agent(FakeBackend())
        await agent.start()
        await agent.stop()

        again = make_agent(FakeBackend())
        await again.start()
        events = await store.get_events("tl_test")
        assert len(events_of(events, EventType.SYSTEM_PROMPT)) == 1

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, make_agent, tmp_path):
        (tmp_path / "a.txt").write_text("content A\n", encoding="utf-8")
        backend = FakeBackend([
            tool_response(ToolCall("r1", "file_read", {"path": "a.txt"})),
            text_response("read it"),
        ])
        agent = make_agent(backend)

        outcome = await agent.send_message("read a.txt")

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.rounds == 2
        results = events_of(await agent.get_events(), EventType.TOOL_RESULT)
        assert results[0].data.status == ToolStatus.COMPLETED
        assert "content A" in results[0].data.text

        # 第二次调用能看到工具结果
        second_call = backend.calls[1]
        assert second_call[-1].tool_results[0].call_id == "r1"
        assert [t.name for t in backend.tools_seen[0]] == ["file_read", "file_write"]

    @pytest.mark.asyncio
    async def test_missing_call_id_is_generated(self, make_agent, tmp_path):
        (tmp_path / "a.txt").write_text("x", encoding="utf-8")
        backend = FakeBackend([tool_response(ToolCall("", "file_read", {"path": "a.txt"}))])
        agent = make_agent(backend)
        await agent.send_message("go")

        call = events_of(await agent.get_events(), EventType.TOOL_CALL)[0].data
        assert call.id.startswith("call_")

    @pytest.mark.asyncio
    async def test_backend_failure_surfaces(self, make_agent):
        agent = make_agent(FakeBackend([RuntimeError("rejected")]))
        errors = record(agent, NotificationType.ERROR)

        with pytest.raises(RuntimeError):
            await asyncio.wait_for(agent.send_message("hi"), timeout=5)

        assert agent.state == LoopState.IDLE
        assert errors[0].data["error"] == "rejected"
        assert events_of(await agent.get_events(), EventType.AGENT_MESSAGE) == []

    @pytest.mark.asyncio
    async def test_bad_notification_handler_does_not_break_turn(self, make_agent):
        agent = make_agent(FakeBackend([text_response("ok")]))

        def broken(notification):
            raise ValueError("handler bug")

        agent.notifications.on(NotificationType.STATE_CHANGE, broken)
        outcome = await agent.send_message("hi")
        assert outcome.status == TurnStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_notifications_can_be_unsubscribed(self, make_agent):
        agent = make_agent(FakeBackend([text_response("one"), text_response("two")]))
        received = []
        handler = received.append
        agent.notifications.on(NotificationType.TURN_COMPLETE, handler)

        await agent.send_message("first")
        agent.notifications.off(NotificationType.TURN_COMPLETE, handler)
        await agent.send_message("second")

        assert len(received) == 1
        assert received[0].data["status"] == "completed"

    @pytest.mark.asyncio
    async def test_local_system_message_not_sent(self, make_agent):
        backend = FakeBackend([text_response("ok")])
        agent = make_agent(backend)
        await agent.add_system_message("compaction happened")
        await agent.send_message("hi")

        assert [m.content for m in backend.calls[0]] == ["hi"]

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_start_once(self, make_agent):
        """并发的首条消息只初始化一次线程"""
        agent = make_agent(FakeBackend([text_response("a"), text_response("b")]))

        await asyncio.gather(agent.send_message("one"), agent.send_message("two"))
        await asyncio.wait_for(agent.wait_for_idle(), timeout=5)

        events = await agent.get_events()
        assert len(events_of(events, EventType.SYSTEM_PROMPT)) == 1
        assert sorted(e.data for e in events_of(events, EventType.USER_MESSAGE)) == ["one", "two"]


class TestApprovalFlow:
    """测试审批暂停和恢复"""

    @pytest.mark.asyncio
    async def test_pending_then_approved(self, make_agent, tmp_path):
        backend = FakeBackend([
            tool_response(write_call("w1", "out.txt")),
            text_response("written"),
        ])
        agent = make_agent(backend)
        requested = record(agent, NotificationType.APPROVAL_REQUESTED)

        outcome = await agent.send_message("write a file")

        assert outcome.status == TurnStatus.WAITING_APPROVAL
        assert outcome.pending_tool_call_ids == ["w1"]
        assert agent.state == LoopState.WAITING_APPROVAL
        assert requested[0].data["tool_call_id"] == "w1"
        assert not (tmp_path / "out.txt").exists()

        pending = await agent.get_pending_approvals()
        assert [p["tool_call_id"] for p in pending] == ["w1"]

        outcome = await agent.handle_approval_response("w1", ApprovalDecision.ALLOW_ONCE)

        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.content == "written"
        assert (tmp_path / "out.txt").read_text(encoding="utf-8") == "hi"
        assert agent.state == LoopState.IDLE
        assert await agent.get_pending_approvals() == []

    @pytest.mark.asyncio
    async def test_denied_halts_turn(self, make_agent, tmp_path):
        backend = FakeBackend([tool_response(write_call("w1", "out.txt"))])
        agent = make_agent(backend)
        await agent.send_message("write a file")

        outcome = await agent.handle_approval_response("w1", ApprovalDecision.DENY)

        assert outcome.status == TurnStatus.HALTED
        assert agent.state == LoopState.IDLE
        assert len(backend.calls) == 1
        result = events_of(await agent.get_events(), EventType.TOOL_RESULT)[0].data
        assert result.status == ToolStatus.DENIED
        assert not (tmp_path / "out.txt").exists()

    @pytest.mark.asyncio
    async def test_restart_resumes_without_asking_again(self, make_agent, store, tmp_path):
        first = make_agent(FakeBackend([tool_response(write_call("w1", "out.txt"))]))
        await first.send_message("write a file")
        await first.stop()

        backend = FakeBackend([text_response("done after restart")])
        second = make_agent(backend)
        requested = record(second, NotificationType.APPROVAL_REQUESTED)
        await second.start()

        assert second.state == LoopState.WAITING_APPROVAL
        assert [n.data["tool_call_id"] for n in requested] == ["w1"]

        outcome = await second.handle_approval_response("w1", ApprovalDecision.ALLOW_ONCE)

        assert outcome.status == TurnStatus.COMPLETED
        assert (tmp_path / "out.txt").exists()
        events = await store.get_events("tl_test")
        assert len(events_of(events, EventType.TOOL_APPROVAL_REQUEST)) == 1
        assert len(events_of(events, EventType.TOOL_APPROVAL_RESPONSE)) == 1

    @pytest.mark.asyncio
    async def test_allow_session_skips_later_approvals(self, make_agent, tmp_path):
        backend = FakeBackend([
            tool_response(write_call("w1", "one.txt")),
            tool_response(write_call("w2", "two.txt")),
            text_response("both written"),
        ])
        agent = make_agent(backend)
        await agent.send_message("write two files")

        outcome = await agent.handle_approval_response("w1", ApprovalDecision.ALLOW_SESSION)

        assert outcome.status == TurnStatus.COMPLETED
        assert (tmp_path / "two.txt").exists()
        events = await agent.get_events()
        assert len(events_of(events, EventType.TOOL_APPROVAL_REQUEST)) == 1

    @pytest.mark.asyncio
    async def test_resume_does_not_rerun_completed_calls(self, make_agent):
        counter = CountingTool()
        registry = register_builtin_tools()
        registry.register(counter)
        backend = FakeBackend([
            tool_response(ToolCall("c1", "counter"), write_call("w1", "out.txt")),
            text_response("finished"),
        ])
        agent = make_agent(backend, registry=registry)

        outcome = await agent.send_message("count then write")
        assert outcome.status == TurnStatus.WAITING_APPROVAL
        assert len(counter.invocations) == 1

        outcome = await agent.handle_approval_response("w1", ApprovalDecision.ALLOW_ONCE)
        assert outcome.status == TurnStatus.COMPLETED
        assert len(counter.invocations) == 1

    @pytest.mark.asyncio
    async def test_repeated_response_is_idempotent(self, make_agent):
        backend = FakeBackend([tool_response(write_call("w1", "out.txt")), text_response("ok")])
        agent = make_agent(backend)
        await agent.send_message("write")
        await agent.handle_approval_response("w1", ApprovalDecision.ALLOW_ONCE)

        outcome = await agent.handle_approval_response("w1", ApprovalDecision.DENY)

        assert outcome.status == TurnStatus.COMPLETED
        events = await agent.get_events()
        assert len(events_of(events, EventType.TOOL_RESULT)) == 1
        assert len(events_of(events, EventType.TOOL_APPROVAL_RESPONSE)) == 1

    @pytest.mark.asyncio
    async def test_decision_during_active_turn_is_dispatched(self, make_agent, tmp_path):
        """同一批次中已挂起的调用在轮次进行中被批准后仍会执行"""
        slow = SlowTool(delay=0.2)
        registry = register_builtin_tools()
        registry.register(slow)
        backend = FakeBackend([
            tool_response(write_call("w1", "out.txt"), ToolCall("s1", "slow")),
            text_response("all done"),
        ])
        agent = make_agent(backend, registry=registry)

        turn = asyncio.ensure_future(agent.send_message("write and wait"))
        await slow.started.wait()
        mid = await agent.handle_approval_response("w1", ApprovalDecision.ALLOW_ONCE)
        outcome = await asyncio.wait_for(turn, timeout=5)

        assert mid.status == TurnStatus.QUEUED
        assert outcome.status == TurnStatus.COMPLETED
        assert outcome.content == "all done"
        assert agent.state == LoopState.IDLE
        assert (tmp_path / "out.txt").read_text(encoding="utf-8") == "hi"
        results = events_of(await agent.get_events(), EventType.TOOL_RESULT)
        assert sorted(e.data.call_id for e in results) == ["s1", "w1"]

    @pytest.mark.asyncio
    async def test_restart_runs_call_that_was_already_approved(self, make_agent, store, tmp_path):
        """重启前已有决定但没有结果的调用在启动后继续执行"""
        first = make_agent(FakeBackend([tool_response(write_call("w1", "out.txt"))]))
        await first.send_message("write a file")
        await store.append_approval_response("tl_test", "w1", ApprovalDecision.ALLOW_ONCE)
        await first.stop()

        second = make_agent(FakeBackend([text_response("resumed"), text_response("hello back")]))
        await second.start()
        queued = await second.send_message("hello?")
        await asyncio.wait_for(second.wait_for_idle(), timeout=5)

        assert queued.status == TurnStatus.QUEUED
        assert second.state == LoopState.IDLE
        assert (tmp_path / "out.txt").read_text(encoding="utf-8") == "hi"
        events = await store.get_events("tl_test")
        assert [e.data.content for e in events_of(events, EventType.AGENT_MESSAGE)][-2:] == [
            "resumed", "hello back"
        ]
        assert len(events_of(events, EventType.TOOL_APPROVAL_REQUEST)) == 1

    @pytest.mark.asyncio
    async def test_restart_reruns_interrupted_call(self, make_agent, store):
        """执行中断、没有结果的内部工具调用在启动后重新执行"""
        await store.append_event("tl_test", EventType.SYSTEM_PROMPT, "sys")
        await store.append_event("tl_test", EventType.USER_MESSAGE, "count")
        await store.append_event("tl_test", EventType.AGENT_MESSAGE, AgentMessageData(""))
        await store.append_event("tl_test", EventType.TOOL_CALL, ToolCall("c1", "counter"))

        counter = CountingTool()
        registry = ToolRegistry()
        registry.register(counter)
        agent = make_agent(FakeBackend([text_response("counted")]), registry=registry)
        requested = record(agent, NotificationType.APPROVAL_REQUESTED)

        await agent.start()
        await asyncio.wait_for(agent.wait_for_idle(), timeout=5)

        assert len(counter.invocations) == 1
        assert requested == []
        assert agent.state == LoopState.IDLE
        events = await agent.get_events()
        assert events_of(events, EventType.AGENT_MESSAGE)[-1].data.content == "counted"

    @pytest.mark.asyncio
    async def test_restart_asks_for_call_never_requested(self, make_agent, store, tmp_path):
        """中断前未请求审批的调用在启动后发出审批请求"""
        await store.append_event("tl_test", EventType.USER_MESSAGE, "write")
        await store.append_event("tl_test", EventType.TOOL_CALL, write_call("w1", "out.txt"))

        agent = make_agent(FakeBackend())
        requested = record(agent, NotificationType.APPROVAL_REQUESTED)
        await agent.start()
        await asyncio.wait_for(agent.wait_for_idle(), timeout=5)

        assert agent.state == LoopState.WAITING_APPROVAL
        assert [n.data["tool_call_id"] for n in requested] == ["w1"]
        assert [p["tool_call_id"] for p in await agent.get_pending_approvals()] == ["w1"]
        assert not (tmp_path / "out.txt").exists()


class TestFileReadTracking:
    """测试覆盖前必须读取的约束"""

    @pytest.mark.asyncio
    async def test_has_file_been_read_uses_working_directory(self, make_agent, tmp_path, monkeypatch):
        (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
        agent = make_agent(FakeBackend([
            tool_response(ToolCall("r1", "file_read", {"path": "notes.txt"})),
            text_response("read"),
        ]))
        await agent.send_message("read notes")

        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)

        assert await agent.has_file_been_read("notes.txt")
        assert await agent.has_file_been_read(str(tmp_path / "notes.txt"))
        assert not await agent.has_file_been_read("other.txt")

    @pytest.mark.asyncio
    async def test_overwrite_without_read_fails(self, make_agent, tmp_path):
        existing = tmp_path / "existing.txt"
        existing.write_text("original", encoding="utf-8")
        agent = make_agent(
            FakeBackend([tool_response(write_call("w1", "existing.txt", "new")), text_response("tried")]),
            policy=PolicyEngine(mode=ApprovalMode.YOLO),
        )

        outcome = await agent.send_message("overwrite")

        assert outcome.status == TurnStatus.COMPLETED
        result = events_of(await agent.get_events(), EventType.TOOL_RESULT)[0].data
        assert result.status == ToolStatus.FAILED
        assert "must be read" in result.text
        assert existing.read_text(encoding="utf-8") == "original"

    @pytest.mark.asyncio
    async def test_overwrite_after_read_succeeds(self, make_agent, tmp_path):
        existing = tmp_path / "existing.txt"
        existing.write_text("original", encoding="utf-8")
        agent = make_agent(
            FakeBackend([
                tool_response(ToolCall("r1", "file_read", {"path": "existing.txt"})),
                tool_response(write_call("w1", "existing.txt", "new")),
                text_response("updated"),
            ]),
            policy=PolicyEngine(mode=ApprovalMode.YOLO),
        )

        outcome = await agent.send_message("update")

        assert outcome.status == TurnStatus.COMPLETED
        assert existing.read_text(encoding="utf-8") == "new"


class TestLimits:
    """测试轮次和Token上限"""

    @pytest.mark.asyncio
    async def test_max_turns(self, make_agent):
        registry = ToolRegistry()
        registry.register(CountingTool())
        backend = FakeBackend([
            tool_response(ToolCall(f"c{i}", "counter")) for i in range(5)
        ])
        agent = make_agent(backend, registry=registry, max_turns=2)

        outcome = await agent.send_message("loop forever")

        assert outcome.status == TurnStatus.MAX_TURNS_REACHED
        assert outcome.rounds == 2
        assert len(backend.calls) == 2
        assert agent.state == LoopState.IDLE

    @pytest.mark.asyncio
    async def test_token_limit_blocks_next_request(self, make_agent):
        registry = ToolRegistry()
        registry.register(CountingTool())
        backend = FakeBackend([
            tool_response(ToolCall("c1", "counter"), usage=TokenUsage(60, 36, 96)),
            text_response("never reached"),
        ])
        agent = make_agent(backend, registry=registry, token_budget=TokenBudgetConfig(context_limit=100))
        warnings = record(agent, NotificationType.TOKEN_BUDGET_WARNING)

        outcome = await agent.send_message("expensive")

        assert outcome.status == TurnStatus.TOKEN_LIMIT_REACHED
        assert len(backend.calls) == 1
        assert [w.data["blocked"] for w in warnings] == [False, True]
        assert warnings[-1].data["recommendation"].should_summarize

    @pytest.mark.asyncio
    async def test_budget_defaults_to_backend_context_window(self, make_agent):
        agent = make_agent(FakeBackend(context_window=32000))
        assert (await agent.get_token_usage()).context_limit == 32000


class TestMessageQueueing:
    """测试忙碌时的排队"""

    @pytest.mark.asyncio
    async def test_priority_order_while_busy(self, make_agent):
        backend = FakeBackend()
        backend.gate = asyncio.Event()
        agent = make_agent(backend)
        queued = record(agent, NotificationType.MESSAGE_QUEUED)

        first = asyncio.ensure_future(agent.send_message("first"))
        await backend.started.wait()

        a = await agent.send_message("A")
        await agent.queue_message(QueuedMessage("B", metadata=QueuedMessageMetadata(priority=MessagePriority.HIGH)))
        await agent.send_message("C")

        assert a.status == TurnStatus.QUEUED
        assert a.message_id
        assert agent.queue_stats().queue_length == 3
        assert [m.content for m in agent.queue_contents()] == ["B", "A", "C"]
        assert len(queued) == 3

        backend.gate.set()
        assert (await first).status == TurnStatus.COMPLETED
        await asyncio.wait_for(agent.wait_for_idle(), timeout=5)

        users = events_of(await agent.get_events(), EventType.USER_MESSAGE)
        assert [e.data for e in users] == ["first", "B", "A", "C"]
        assert agent.queue_stats().queue_length == 0

    @pytest.mark.asyncio
    async def test_task_notification_when_idle(self, make_agent):
        agent = make_agent(FakeBackend([text_response("noted")]))
        await agent.queue_message(QueuedMessage.task_notification("build passed", task_id="t1", from_agent="ci"))
        await asyncio.wait_for(agent.wait_for_idle(), timeout=5)

        users = events_of(await agent.get_events(), EventType.USER_MESSAGE)
        assert [e.data for e in users] == ["[Task t1 from ci] build passed"]

    @pytest.mark.asyncio
    async def test_messages_queue_while_waiting_for_approval(self, make_agent):
        backend = FakeBackend([
            tool_response(write_call("w1", "out.txt")),
            text_response("written"),
            text_response("second answer"),
        ])
        agent = make_agent(backend)
        await agent.send_message("write")

        queued = await agent.send_message("second")
        assert queued.status == TurnStatus.QUEUED

        await agent.handle_approval_response("w1", ApprovalDecision.ALLOW_ONCE)
        await asyncio.wait_for(agent.wait_for_idle(), timeout=5)

        users = events_of(await agent.get_events(), EventType.USER_MESSAGE)
        assert [e.data for e in users] == ["write", "second"]

    @pytest.mark.asyncio
    async def test_clear_queue(self, make_agent):
        backend = FakeBackend([tool_response(write_call("w1", "out.txt"))])
        agent = make_agent(backend)
        await agent.send_message("write")
        await agent.send_message("later")

        assert agent.clear_queue() == 1
        assert agent.queue_stats().queue_length == 0


class TestStop:
    """测试停止和取消"""

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_call(self, make_agent):
        backend = FakeBackend()
        backend.gate = asyncio.Event()
        agent = make_agent(backend)

        turn = asyncio.ensure_future(agent.send_message("slow question"))
        await backend.started.wait()
        await agent.stop()

        with pytest.raises(TurnCancelledError):
            await asyncio.wait_for(turn, timeout=5)

        assert agent.state == LoopState.STOPPED
        assert events_of(await agent.get_events(), EventType.AGENT_MESSAGE) == []

        with pytest.raises(AgentStoppedError):
            await agent.send_message("again")

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_agent):
        agent = make_agent(FakeBackend())
        await agent.start()
        await agent.stop()
        await agent.stop()
        with pytest.raises(AgentStoppedError):
            await agent.start()

    @pytest.mark.asyncio
    async def test_stop_aborts_running_tool(self, make_agent):
        """停止时正在执行的工具记录为中止"""
        slow = SlowTool(delay=5)
        registry = ToolRegistry()
        registry.register(slow)
        agent = make_agent(FakeBackend([tool_response(ToolCall("s1", "slow"))]), registry=registry)

        turn = asyncio.ensure_future(agent.send_message("run the slow tool"))
        await slow.started.wait()
        await agent.stop()

        with pytest.raises(TurnCancelledError):
            await asyncio.wait_for(turn, timeout=2)

        results = events_of(await agent.get_events(), EventType.TOOL_RESULT)
        assert [r.data.status for r in results] == [ToolStatus.ABORTED]


class TestStreaming:
    """测试流式Token通知"""

    @pytest.mark.asyncio
    async def test_tokens_are_forwarded(self, make_agent):
        class StreamingBackend(FakeBackend):
            @property
            def supports_streaming(self):
                return True

            async def create_streaming_response(self, messages, tools, cancellation_event=None, on_token=None):
                for token in ["hel", "lo"]:
                    await _emit_token(on_token, token)
                return text_response("hello")

        agent = make_agent(StreamingBackend(), streaming=True)
        tokens = record(agent, NotificationType.AGENT_TOKEN)

        outcome = await agent.send_message("hi")

        assert outcome.content == "hello"
        assert [t.data["token"] for t in tokens] == ["hel", "lo"]
