"""
工具执行器 - 策略检查、审批握手、执行并把所有失败转换为工具结果
"""
import asyncio
import logging
from typing import List, Optional, Union

from ..core.policy import PolicyEngine, ToolPolicy
from ..core.types import ApprovalDecision, ToolCall, ToolResult, ToolSchema, ToolStatus
from .approval import ApprovalGate, ApprovalPending
from .base import Tool, ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

ExecutionOutcome = Union[ToolResult, ApprovalPending]


class ToolExecutor:
    """工具执行器"""

    def __init__(
        self,
        registry: Optional[ToolRegistry] = None,
        policy: Optional[PolicyEngine] = None,
        approval_gate: Optional[ApprovalGate] = None,
        timeout: Optional[float] = None
    ):
        self.registry = registry if registry is not None else ToolRegistry()
        self.policy = policy or PolicyEngine()
        self.approval_gate = approval_gate
        self.timeout = timeout

    def set_approval_gate(self, gate: Optional[ApprovalGate]) -> None:
        self.approval_gate = gate

    def register_tool(self, tool: Tool) -> None:
        self.registry.register(tool)

    def get_tool(self, name: str) -> Optional[Tool]:
        return self.registry.get(name)

    def get_all_tools(self) -> List[Tool]:
        return self.registry.get_all()

    def get_tool_schemas(self) -> List[ToolSchema]:
        return self.registry.get_all_schemas()

    async def execute_tool(self, call: ToolCall, context: ToolContext) -> ExecutionOutcome:
        """执行单个工具调用；审批未完成时返回 ApprovalPending"""
        tool = self.registry.get(call.name)
        if tool is None:
            return ToolResult.error(call.id, f"Tool '{call.name}' not found")

        if not tool.safe_internal:
            permission = await self._request_permission(tool, call)
            if permission is not None:
                return permission

        if context.cancelled:
            return ToolResult.error(call.id, "Tool execution aborted", status=ToolStatus.ABORTED)

        return await self._run(tool, call, context)

    async def _request_permission(self, tool: Tool, call: ToolCall) -> Optional[ExecutionOutcome]:
        """允许执行时返回 None，否则返回拒绝结果或 ApprovalPending"""
        policy = self.policy.check(tool.name, tool.kind, call.arguments)

        if policy == ToolPolicy.ALLOW:
            return None
        elif policy == ToolPolicy.DENY:
            logger.info(f"Tool {tool.name} denied by policy ({self.policy.mode.value})")
            return ToolResult.error(
                call.id, f"Tool '{tool.name}' denied by policy", status=ToolStatus.DENIED
            )
        elif policy == ToolPolicy.REQUIRE_APPROVAL:
            if self.approval_gate is None:
                return ToolResult.error(
                    call.id,
                    f"Tool '{tool.name}' requires approval but no approval handler is configured",
                    status=ToolStatus.DENIED
                )
            outcome = await self.approval_gate.request_approval(call)
            if isinstance(outcome, ApprovalPending):
                return outcome
            if outcome == ApprovalDecision.DENY:
                return ToolResult.error(call.id, f"Tool '{tool.name}' was denied by user", status=ToolStatus.DENIED)
            if outcome == ApprovalDecision.ALLOW_SESSION:
                self.policy.add_always_allow(tool.name)
            return None
        raise ValueError(f"Unknown tool policy: {policy}")

    async def _run(self, tool: Tool, call: ToolCall, context: ToolContext) -> ToolResult:
        try:
            if self.timeout:
                return await asyncio.wait_for(tool.execute_tool(call, context), timeout=self.timeout)
            return await tool.execute_tool(call, context)
        except asyncio.TimeoutError:
            logger.warning(f"Tool {tool.name} timed out after {self.timeout}s")
            return ToolResult.error(call.id, f"Tool '{tool.name}' timed out after {self.timeout}s")
        except asyncio.CancelledError:
            if not context.cancelled:
                raise
            return ToolResult.error(call.id, "Tool execution aborted", status=ToolStatus.ABORTED)
        except Exception as e:
            logger.warning(f"Tool {tool.name} failed: {e}")
            return ToolResult.error(call.id, f"Tool '{tool.name}' failed: {e}")
