"""
Agent Loop - 轮次控制器

核心流程:
1. 用户消息写入线程
2. 从线程事件重建对话，调用后端
3. 写入Agent消息（带Token用量）和工具调用
4. 通过工具执行器逐个执行工具调用，写入结果
5. 有工具等待审批时暂停在 waiting_approval，否则继续调用后端
6. 后端不再返回工具调用时本轮完成，处理队列中的下一条消息
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .conversation import build_conversation, replay_thread
from .errors import AgentStoppedError, StorageUnavailableError, ThreadloomError, TurnCancelledError
from .llm_client import LLMBackend
from .message_queue import MessageQueue, QueueStats
from .thread_store import ThreadStore
from .token_budget import ThreadTokenUsage, TokenBudgetConfig, TokenBudgetTracker
from .types import (
    AgentMessageData, AgentNotification, ApprovalDecision, Event, EventData, EventType,
    LoopState, NotificationType, ProviderResponse, QueuedMessage,
    QueuedMessageMetadata, ToolCall, ToolResult, ToolStatus
)
from ..tools.approval import ApprovalPending, EventApprovalGate
from ..tools.base import ToolContext
from ..tools.builtin import FILE_READ_TOOL
from ..tools.executor import ExecutionOutcome, ToolExecutor

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful AI assistant.

## Tool Usage Guidelines

You have access to various tools. When you need to use a tool:
1. Explain your intent before calling the tool
2. Use the exact tool name and parameters
3. Wait for the tool result before proceeding

Available tools are provided in the function definitions."""

NotificationHandler = Callable[[AgentNotification], Union[None, Awaitable[None]]]


class TurnStatus(str, Enum):
    """一次 send_message / resume 的结束方式"""
    COMPLETED = "completed"
    WAITING_APPROVAL = "waiting_approval"
    QUEUED = "queued"
    HALTED = "halted"
    MAX_TURNS_REACHED = "max_turns_reached"
    TOKEN_LIMIT_REACHED = "token_limit_reached"


@dataclass
class TurnOutcome:
    status: TurnStatus
    content: str = ""
    pending_tool_call_ids: List[str] = field(default_factory=list)
    message_id: Optional[str] = None
    rounds: int = 0


@dataclass
class AgentConfig:
    """Agent配置"""
    thread_id: str
    backend: LLMBackend
    tool_executor: ToolExecutor
    thread_store: ThreadStore
    working_directory: Optional[Path] = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_turns: int = 50
    token_budget: Optional[TokenBudgetConfig] = None
    name: str = "agent"
    streaming: bool = False


class EventBus:
    """通知总线 - 显式订阅列表"""

    def __init__(self):
        self._handlers: Dict[str, List[NotificationHandler]] = {}

    def on(self, notification_type: str, handler: NotificationHandler) -> None:
        """订阅通知"""
        self._handlers.setdefault(notification_type, []).append(handler)

    def off(self, notification_type: str, handler: NotificationHandler) -> None:
        """取消订阅"""
        handlers = self._handlers.get(notification_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, notification: AgentNotification) -> None:
        """发布通知；处理器异常只记录日志"""
        for handler in list(self._handlers.get(notification.type, [])):
            try:
                result = handler(notification)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in notification handler for {notification.type}: {e}", exc_info=True)


class Agent:
    """
    线程绑定的Agent

    每个Agent拥有一个线程ID、一个工具执行器和一个后端；
    对话状态全部来自线程事件日志。
    """

    def __init__(self, config: AgentConfig):
        self.config = config
        self.thread_store = config.thread_store
        # 持久化不可用时在构造阶段快速失败
        self.thread_store.ensure_available()

        self.backend = config.backend
        self.tool_executor = config.tool_executor
        self.working_directory = Path(config.working_directory or Path.cwd()).resolve()
        self.notifications = EventBus()
        self.queue = MessageQueue()

        budget = config.token_budget or TokenBudgetConfig(context_limit=self.backend.context_window)
        self.token_tracker = TokenBudgetTracker(budget)

        self.approvals = EventApprovalGate(self.thread_store, config.thread_id)
        if self.tool_executor.approval_gate is None:
            self.tool_executor.set_approval_gate(self.approvals)

        # 运行状态
        self.state = LoopState.IDLE
        self._started = False
        self._turn_active = False
        self._budget_warned = False
        self._cancel_event: Optional[asyncio.Event] = None
        self._idle_event: Optional[asyncio.Event] = None
        self._backend_task: Optional[asyncio.Future] = None
        self._tool_task: Optional[asyncio.Future] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._start_lock = asyncio.Lock()
        self._recover_on_drain = False

    @property
    def thread_id(self) -> str:
        return self.config.thread_id

    @property
    def name(self) -> str:
        return self.config.name

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """确保线程存在并从事件日志重建内存状态"""
        async with self._start_lock:
            if self.state == LoopState.STOPPED:
                raise AgentStoppedError(self.thread_id)
            if self._started:
                return
            await self._start()

    async def _start(self) -> None:
        self._idle_event = asyncio.Event()
        self._idle_event.set()

        await self.thread_store.create_thread(self.thread_id, {"agent": self.name})
        events = await self.thread_store.get_events(self.thread_id)
        if not events:
            await self._append(EventType.SYSTEM_PROMPT, self.config.system_prompt)
        self.backend.set_system_prompt(self.config.system_prompt)

        replay = replay_thread(events)
        self.token_tracker = TokenBudgetTracker.from_usages(replay.usages, self.token_tracker.config)
        self._budget_warned = self.token_tracker.get_usage().near_limit
        for tool_name in replay.session_allowed_tools:
            self.tool_executor.policy.add_always_allow(tool_name)

        self._started = True
        logger.info(
            f"Agent {self.name} started on thread {self.thread_id} "
            f"({len(events)} events, {self.token_tracker.get_usage().total_tokens} tokens)"
        )

        if not replay.unresolved_call_ids:
            return

        # 上个进程遗留的工具调用
        waiting = set(replay.pending_approval_ids)
        if any(call_id not in waiting for call_id in replay.unresolved_call_ids):
            # 已有决定或从未请求审批的调用在后台重新派发
            logger.info(f"Recovering unfinished tool calls on thread {self.thread_id}")
            self._recover_on_drain = True
            self._schedule_drain()
            return

        await self._set_state(LoopState.WAITING_APPROVAL)
        for call_id in replay.pending_approval_ids:
            await self._notify(NotificationType.APPROVAL_REQUESTED, {"tool_call_id": call_id})

    async def stop(self) -> None:
        """停止Agent；进行中的后端调用被取消，已写入的事件保持不变"""
        if self.state == LoopState.STOPPED:
            return
        await self._set_state(LoopState.STOPPED)

        if self._cancel_event is not None:
            self._cancel_event.set()
        if self._backend_task is not None and not self._backend_task.done():
            self._backend_task.cancel()
        if self._tool_task is not None and not self._tool_task.done():
            self._tool_task.cancel()
        if self._drain_task is not None and not self._drain_task.done():
            if self._drain_task is not asyncio.current_task():
                self._drain_task.cancel()

        dropped = self.queue.clear()
        if dropped:
            logger.warning(f"Agent {self.name} stopped with {dropped} queued messages discarded")
        if self._idle_event is not None and not self._turn_active:
            self._idle_event.set()
        logger.info(f"Agent {self.name} stopped")

    async def _ensure_started(self) -> None:
        if self.state == LoopState.STOPPED:
            raise AgentStoppedError(self.thread_id)
        if not self._started:
            await self.start()

    # ------------------------------------------------------------------
    # 输入
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        metadata: Optional[QueuedMessageMetadata] = None
    ) -> TurnOutcome:
        """发送用户消息；Agent忙碌时进入队列"""
        await self._ensure_started()

        if self._is_busy() or self.queue:
            message = QueuedMessage(content=content, metadata=metadata or QueuedMessageMetadata())
            message_id = await self.queue_message(message)
            return TurnOutcome(status=TurnStatus.QUEUED, message_id=message_id)

        return await self._run_turn(content)

    async def queue_message(self, message: QueuedMessage) -> str:
        """入队（任务通知等也走这里）；空闲时立即开始处理"""
        await self._ensure_started()
        message_id = self.queue.enqueue(message)
        logger.debug(f"Queued {message.kind.value} message {message_id} ({message.priority.value})")
        await self._notify(NotificationType.MESSAGE_QUEUED, {
            "message_id": message_id,
            "priority": message.priority.value,
            "queue_length": len(self.queue),
        })
        if not self._is_busy():
            self._schedule_drain()
        return message_id

    async def add_system_message(self, text: str) -> Event:
        """写入本地系统消息（不发送给模型）"""
        await self._ensure_started()
        return await self._append(EventType.LOCAL_SYSTEM_MESSAGE, text)

    def _is_busy(self) -> bool:
        return (
            self._turn_active
            or self.state == LoopState.WAITING_APPROVAL
            or (self._drain_task is not None and not self._drain_task.done())
        )

    # ------------------------------------------------------------------
    # 审批
    # ------------------------------------------------------------------

    async def handle_approval_response(self, tool_call_id: str, decision: ApprovalDecision) -> TurnOutcome:
        """记录审批决定（幂等）并恢复执行"""
        await self._ensure_started()
        recorded = await self.approvals.respond(tool_call_id, decision)
        if recorded != decision:
            logger.info(f"Approval for {tool_call_id} was already {recorded.value}")

        if self._turn_active:
            # 当前轮次结束前会重新派发已有决定的调用
            return TurnOutcome(status=TurnStatus.QUEUED)
        return await self.resume()

    async def get_pending_approvals(self) -> List[Dict[str, Any]]:
        return await self.thread_store.get_pending_approvals(self.thread_id)

    async def resume(self) -> TurnOutcome:
        """重新派发未完成的工具调用；全部完成后继续本轮"""
        await self._ensure_started()
        if self._turn_active:
            raise ThreadloomError(f"Agent {self.name} already has a turn in progress")
        return await self._run_turn(None)

    # ------------------------------------------------------------------
    # 轮次
    # ------------------------------------------------------------------

    async def _run_turn(self, content: Optional[str]) -> TurnOutcome:
        self._turn_active = True
        self._cancel_event = asyncio.Event()
        self._idle_event.clear()
        try:
            await self._set_state(LoopState.RUNNING)
            if content is not None:
                await self._append(EventType.USER_MESSAGE, content)
                outcome = await self._turn_loop()
            else:
                outcome = await self._resume_dispatch()

            # 轮次进行中收到的审批决定在这里派发
            while outcome.status == TurnStatus.WAITING_APPROVAL and await self._has_decided(outcome):
                rounds = outcome.rounds
                outcome = await self._resume_dispatch()
                outcome.rounds += rounds

            await self._notify(NotificationType.TURN_COMPLETE, {
                "status": outcome.status.value,
                "rounds": outcome.rounds,
            })
            return outcome
        except TurnCancelledError:
            logger.info(f"Turn cancelled on thread {self.thread_id}")
            raise
        except StorageUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Turn failed on thread {self.thread_id}: {e}")
            await self._set_state(LoopState.IDLE)
            await self._notify(NotificationType.ERROR, {"error": str(e), "type": type(e).__name__})
            raise
        finally:
            self._turn_active = False
            if self.state == LoopState.IDLE and self.queue:
                self._schedule_drain()
            self._idle_event.set()

    async def _resume_dispatch(self) -> TurnOutcome:
        unresolved = await self.thread_store.get_unresolved_tool_calls(self.thread_id)
        if not unresolved:
            await self._set_state(LoopState.IDLE)
            return TurnOutcome(status=TurnStatus.COMPLETED)

        pending, _ = await self._dispatch(unresolved)
        if pending:
            return await self._park(pending, rounds=0)
        if await self._last_batch_halted():
            await self._set_state(LoopState.IDLE)
            return TurnOutcome(status=TurnStatus.HALTED)
        return await self._turn_loop()

    async def _turn_loop(self) -> TurnOutcome:
        rounds = 0
        content = ""
        while True:
            self._raise_if_cancelled()

            if rounds >= self.config.max_turns:
                logger.warning(f"Agent {self.name} reached max turns ({self.config.max_turns})")
                await self._set_state(LoopState.IDLE)
                return TurnOutcome(status=TurnStatus.MAX_TURNS_REACHED, content=content, rounds=rounds)

            if self.token_tracker.is_blocked():
                usage = self.token_tracker.get_usage()
                logger.warning(f"Thread {self.thread_id} is at {usage.percent_used:.1f}% of its token budget")
                await self._notify(NotificationType.TOKEN_BUDGET_WARNING, {
                    "usage": usage,
                    "recommendation": self.token_tracker.recommendation(),
                    "blocked": True,
                })
                await self._set_state(LoopState.IDLE)
                return TurnOutcome(status=TurnStatus.TOKEN_LIMIT_REACHED, content=content, rounds=rounds)

            rounds += 1
            await self._set_state(LoopState.RUNNING)
            events = await self.thread_store.get_events(self.thread_id)
            response = await self._call_backend(build_conversation(events))
            content = response.content

            await self._append(
                EventType.AGENT_MESSAGE,
                AgentMessageData(content=response.content, token_usage=response.usage)
            )
            await self._record_usage(response)

            if not response.tool_calls:
                await self._set_state(LoopState.IDLE)
                return TurnOutcome(status=TurnStatus.COMPLETED, content=content, rounds=rounds)

            calls = [self._ensure_call_id(call) for call in response.tool_calls]
            for call in calls:
                await self._append(EventType.TOOL_CALL, call)

            pending, halted = await self._dispatch(calls)
            if pending:
                return await self._park(pending, rounds=rounds, content=content)
            if halted:
                await self._set_state(LoopState.IDLE)
                return TurnOutcome(status=TurnStatus.HALTED, content=content, rounds=rounds)

    async def _call_backend(self, messages) -> ProviderResponse:
        tools = self.tool_executor.get_tool_schemas()
        if self.config.streaming and self.backend.supports_streaming:
            coro = self.backend.create_streaming_response(
                messages, tools, self._cancel_event, on_token=self._on_token
            )
        else:
            coro = self.backend.create_response(messages, tools, self._cancel_event)

        self._backend_task = asyncio.ensure_future(coro)
        try:
            return await self._backend_task
        except asyncio.CancelledError:
            if self._cancel_event.is_set():
                raise TurnCancelledError(self.thread_id) from None
            raise
        finally:
            self._backend_task = None

    async def _on_token(self, token: str) -> None:
        await self._notify(NotificationType.AGENT_TOKEN, {"token": token})

    async def _dispatch(self, calls: List[ToolCall]) -> Tuple[List[str], bool]:
        """按顺序执行工具调用，返回 (等待审批的调用ID, 是否有拒绝/中止)"""
        await self._set_state(LoopState.TOOL_DISPATCH)
        pending: List[str] = []
        halted = False
        context = self._tool_context()

        for call in calls:
            if context.cancelled:
                break
            if await self.thread_store.has_tool_result(self.thread_id, call.id):
                logger.debug(f"Skipping {call.id}: result already recorded")
                continue

            outcome = await self._execute(call, context)
            if isinstance(outcome, ApprovalPending):
                pending.append(outcome.tool_call_id)
                continue

            await self._append(EventType.TOOL_RESULT, outcome)
            if outcome.status in (ToolStatus.DENIED, ToolStatus.ABORTED):
                halted = True

        self._raise_if_cancelled()
        return pending, halted

    async def _execute(self, call: ToolCall, context: ToolContext) -> ExecutionOutcome:
        """在可被 stop() 取消的任务中执行单个工具调用"""
        self._tool_task = asyncio.ensure_future(self.tool_executor.execute_tool(call, context))
        try:
            return await self._tool_task
        except asyncio.CancelledError:
            if not context.cancelled:
                raise
            return ToolResult.error(call.id, "Tool execution aborted", status=ToolStatus.ABORTED)
        finally:
            self._tool_task = None

    async def _has_decided(self, outcome: TurnOutcome) -> bool:
        for call_id in outcome.pending_tool_call_ids:
            if await self.thread_store.get_approval_decision(self.thread_id, call_id) is not None:
                return True
        return False

    async def _park(self, pending: List[str], rounds: int, content: str = "") -> TurnOutcome:
        await self._set_state(LoopState.WAITING_APPROVAL)
        for call_id in pending:
            await self._notify(NotificationType.APPROVAL_REQUESTED, {"tool_call_id": call_id})
        return TurnOutcome(
            status=TurnStatus.WAITING_APPROVAL,
            content=content,
            pending_tool_call_ids=pending,
            rounds=rounds,
        )

    async def _last_batch_halted(self) -> bool:
        """最近一批工具调用中是否有被拒绝或中止的结果"""
        events = await self.thread_store.get_events(self.thread_id)
        batch_start = 0
        for index, event in enumerate(events):
            if event.type == EventType.AGENT_MESSAGE:
                batch_start = index
        for event in events[batch_start:]:
            if event.type == EventType.TOOL_RESULT and event.data.status in (ToolStatus.DENIED, ToolStatus.ABORTED):
                return True
        return False

    def _ensure_call_id(self, call: ToolCall) -> ToolCall:
        if call.id:
            return call
        return replace(call, id=f"call_{uuid.uuid4().hex[:12]}")

    def _tool_context(self) -> ToolContext:
        return ToolContext(
            working_directory=self.working_directory,
            cancellation_event=self._cancel_event,
            thread_id=self.thread_id,
            agent=self,
        )

    def _raise_if_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise TurnCancelledError(self.thread_id)

    # ------------------------------------------------------------------
    # 队列
    # ------------------------------------------------------------------

    def _schedule_drain(self) -> None:
        if self.state == LoopState.STOPPED:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.ensure_future(self._drain_queue())

    async def _drain_queue(self) -> None:
        """一次处理一条排队消息，直到队列为空或Agent不再空闲"""
        if self._recover_on_drain:
            self._recover_on_drain = False
            try:
                await self._run_turn(None)
            except TurnCancelledError:
                return
            except Exception as e:
                logger.warning(f"Recovering thread {self.thread_id} failed: {e}")

        while self.queue and self.state == LoopState.IDLE and not self._turn_active:
            message = self.queue.dequeue_next()
            logger.debug(f"Processing queued message {message.id}")
            try:
                await self._run_turn(message.render())
            except TurnCancelledError:
                return
            except Exception as e:
                # 错误已在 _run_turn 中记录并通知
                logger.warning(f"Queued message {message.id} failed: {e}")

    def queue_stats(self) -> QueueStats:
        return self.queue.stats()

    def queue_contents(self) -> List[QueuedMessage]:
        return self.queue.contents()

    def clear_queue(self, predicate: Optional[Callable[[QueuedMessage], bool]] = None) -> int:
        return self.queue.clear(predicate)

    async def wait_for_idle(self) -> None:
        """等待当前轮次和队列处理结束"""
        while True:
            if self._drain_task is not None and not self._drain_task.done():
                await asyncio.wait([self._drain_task])
            elif self._turn_active and self._idle_event is not None:
                await self._idle_event.wait()
            else:
                return

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def has_file_been_read(self, path: str) -> bool:
        """是否有针对同一路径的 file_read 调用成功完成"""
        context = self._tool_context()
        target = context.resolve_path(path)
        events = await self.thread_store.get_events(self.thread_id)
        completed = {
            e.data.call_id for e in events
            if e.type == EventType.TOOL_RESULT and e.data.status == ToolStatus.COMPLETED
        }
        for event in events:
            if event.type != EventType.TOOL_CALL or event.data.name != FILE_READ_TOOL:
                continue
            read_path = event.data.arguments.get("path")
            if read_path and event.data.id in completed and context.resolve_path(read_path) == target:
                return True
        return False

    async def get_token_usage(self) -> ThreadTokenUsage:
        if not self._started:
            events = await self.thread_store.get_events(self.thread_id)
            return TokenBudgetTracker.from_events(events, self.token_tracker.config).get_usage()
        return self.token_tracker.get_usage()

    async def get_events(self) -> List[Event]:
        return await self.thread_store.get_events(self.thread_id)

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    async def _append(self, event_type: EventType, data: EventData) -> Event:
        event = await self.thread_store.append_event(self.thread_id, event_type, data)
        await self._notify(NotificationType.THREAD_EVENT_ADDED, {"event": event})
        return event

    async def _record_usage(self, response: ProviderResponse) -> None:
        self.token_tracker.record_usage(response.usage)
        usage = self.token_tracker.get_usage()
        if usage.near_limit and not self._budget_warned:
            self._budget_warned = True
            logger.warning(f"Thread {self.thread_id} is near its token limit ({usage.percent_used:.1f}%)")
            await self._notify(NotificationType.TOKEN_BUDGET_WARNING, {
                "usage": usage,
                "recommendation": self.token_tracker.recommendation(),
                "blocked": False,
            })

    async def _set_state(self, new_state: LoopState) -> None:
        # stopped 是终态
        if self.state == LoopState.STOPPED or self.state == new_state:
            return
        old_state = self.state
        self.state = new_state
        logger.debug(f"Agent {self.name}: {old_state.value} -> {new_state.value}")
        await self._notify(NotificationType.STATE_CHANGE, {"from": old_state, "to": new_state})

    async def _notify(self, notification_type: str, data: Any) -> None:
        await self.notifications.emit(AgentNotification(type=notification_type, data=data))
