"""
审批握手 - 基于线程事件的非阻塞工具审批

审批请求和响应都作为事件写入线程，进程重启后不会重复询问。
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Union

from ..core.errors import ApprovalError
from ..core.thread_store import ThreadStore
from ..core.types import ApprovalDecision, ToolCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalPending:
    """审批尚未完成（不是错误）"""
    tool_call_id: str


ApprovalOutcome = Union[ApprovalDecision, ApprovalPending]


class ApprovalGate(ABC):
    """审批回调接口"""

    @abstractmethod
    async def request_approval(self, call: ToolCall) -> ApprovalOutcome:
        pass


class StaticApprovalGate(ApprovalGate):
    """对所有请求返回固定决定"""

    def __init__(self, decision: ApprovalDecision = ApprovalDecision.ALLOW_ONCE):
        self.decision = decision

    async def request_approval(self, call: ToolCall) -> ApprovalOutcome:
        return self.decision


class EventApprovalGate(ApprovalGate):
    """将审批请求/响应持久化到线程事件日志"""

    def __init__(self, thread_store: ThreadStore, thread_id: str):
        self.thread_store = thread_store
        self.thread_id = thread_id
        self._lock = asyncio.Lock()

    async def request_approval(self, call: ToolCall) -> ApprovalOutcome:
        async with self._lock:
            located = await self._locate_call(call.id, call.name, call.arguments)
            return await self._request(located)

    async def request_approval_for(self, name: str, arguments: Dict[str, Any]) -> ApprovalOutcome:
        """按工具名和参数定位最近的调用后请求审批"""
        async with self._lock:
            located = await self._locate_call(None, name, arguments)
            return await self._request(located)

    async def respond(self, tool_call_id: str, decision: ApprovalDecision) -> ApprovalDecision:
        """记录审批响应；已有响应时返回既有决定"""
        async with self._lock:
            call = await self.thread_store.find_tool_call(self.thread_id, tool_call_id)
            if call is None:
                raise ApprovalError(f"No tool call {tool_call_id} in thread {self.thread_id}")

            existing = await self.thread_store.get_approval_decision(self.thread_id, tool_call_id)
            if existing is not None:
                if existing != decision:
                    logger.info(
                        f"Ignoring approval response {decision.value} for {tool_call_id}: "
                        f"already decided {existing.value}"
                    )
                return existing

            await self.thread_store.append_approval_response(self.thread_id, tool_call_id, decision)
            logger.info(f"Approval for {call.name} ({tool_call_id}): {decision.value}")
            return decision

    async def _locate_call(self, call_id, name: str, arguments: Dict[str, Any]) -> ToolCall:
        located = None
        if call_id:
            located = await self.thread_store.find_tool_call(self.thread_id, call_id)
        if located is None:
            located = await self.thread_store.find_latest_tool_call(self.thread_id, name, arguments)
        if located is None:
            raise ApprovalError(f"No TOOL_CALL event for {name} in thread {self.thread_id}")
        return located

    async def _request(self, call: ToolCall) -> ApprovalOutcome:
        decision = await self.thread_store.get_approval_decision(self.thread_id, call.id)
        if decision is not None:
            return decision

        existing = await self.thread_store.get_approval_request(self.thread_id, call.id)
        if existing is None:
            await self.thread_store.append_approval_request(self.thread_id, call.id)
            logger.info(f"Approval requested for {call.name} ({call.id})")
        return ApprovalPending(tool_call_id=call.id)
