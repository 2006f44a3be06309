"""
测试辅助 - 脚本化后端和简单工具
"""
import asyncio
from typing import List, Optional

from threadloom.core.llm_client import LLMBackend
from threadloom.core.types import (
    ProviderMessage, ProviderResponse, TokenUsage, ToolCall, ToolKind, ToolResult, ToolSchema
)
from threadloom.tools.base import Tool, ToolContext


class FakeBackend(LLMBackend):
    """按脚本依次返回响应；脚本中的异常会被抛出"""

    def __init__(self, responses=None, context_window: int = 200000):
        super().__init__(model="fake", context_window=context_window)
        self.responses = list(responses or [])
        self.calls: List[List[ProviderMessage]] = []
        self.tools_seen: List[List[ToolSchema]] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    @property
    def provider_name(self) -> str:
        return "fake"

    async def create_response(self, messages, tools, cancellation_event=None) -> ProviderResponse:
        self.calls.append(list(messages))
        self.tools_seen.append(list(tools))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            return ProviderResponse(content="done")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def text_response(content: str, usage: Optional[TokenUsage] = None) -> ProviderResponse:
    return ProviderResponse(content=content, usage=usage, stop_reason="stop")


def tool_response(*calls: ToolCall, content: str = "", usage: Optional[TokenUsage] = None) -> ProviderResponse:
    return ProviderResponse(content=content, tool_calls=list(calls), usage=usage, stop_reason="tool_use")


class CountingTool(Tool):
    """记录每次调用的内部工具"""

    def __init__(self, name: str = "counter", safe_internal: bool = True, kind: ToolKind = ToolKind.READ):
        super().__init__(
            name=name,
            description="Counts invocations",
            kind=kind,
            input_schema={"type": "object", "properties": {"value": {"type": "string"}}},
            safe_internal=safe_internal,
        )
        self.invocations: List[ToolCall] = []

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        self.invocations.append(call)
        return ToolResult.success(call.id, f"count={len(self.invocations)}")


class FailingTool(Tool):
    def __init__(self):
        super().__init__(name="explode", kind=ToolKind.READ, safe_internal=True)

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        raise RuntimeError("boom")


class SlowTool(Tool):
    def __init__(self, delay: float = 5.0):
        super().__init__(name="slow", kind=ToolKind.READ, safe_internal=True)
        self.delay = delay
        self.started = asyncio.Event()

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        self.started.set()
        await asyncio.sleep(self.delay)
        return ToolResult.success(call.id, "finished")
