"""
工具基类 - 工具契约和注册表
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.types import MUTATOR_KINDS, ToolCall, ToolKind, ToolResult, ToolSchema


@dataclass
class ToolContext:
    """工具执行上下文"""
    working_directory: Path = field(default_factory=Path.cwd)
    cancellation_event: Optional[asyncio.Event] = None
    thread_id: Optional[str] = None
    agent: Any = None  # 调用方Agent，供需要查询线程状态的工具使用

    def resolve_path(self, path: str) -> Path:
        """相对路径基于工作目录解析，而不是进程当前目录"""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = Path(self.working_directory) / candidate
        return candidate.resolve()

    @property
    def cancelled(self) -> bool:
        return self.cancellation_event is not None and self.cancellation_event.is_set()


class Tool(ABC):
    """工具基类"""

    def __init__(
        self,
        name: str,
        display_name: str = None,
        description: str = "",
        kind: ToolKind = ToolKind.OTHER,
        input_schema: Dict = None,
        safe_internal: bool = False
    ):
        self.name = name
        self.display_name = display_name or name
        self.description = description
        self.kind = kind
        self.input_schema = input_schema or {"type": "object", "properties": {}}
        self.safe_internal = safe_internal  # 内部安全工具跳过审批

    @property
    def is_mutator(self) -> bool:
        return self.kind in MUTATOR_KINDS

    @property
    def required_arguments(self) -> List[str]:
        return list(self.input_schema.get("required", []))

    @abstractmethod
    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        """执行工具（子类实现）"""
        pass

    async def execute_tool(self, call: ToolCall, context: ToolContext) -> ToolResult:
        """校验必填参数后执行"""
        missing = [name for name in self.required_arguments if call.arguments.get(name) is None]
        if missing:
            return ToolResult.error(call.id, f"Missing required parameter: {', '.join(missing)}")
        return await self.execute(call, context)

    def to_schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.input_schema)


class ToolRegistry:
    """工具注册表"""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def get_all(self) -> List[Tool]:
        return list(self._tools.values())

    def get_all_schemas(self) -> List[ToolSchema]:
        """获取所有工具的Schema"""
        return [tool.to_schema() for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
