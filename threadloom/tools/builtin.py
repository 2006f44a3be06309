"""
内置工具实现 - 文件读写
"""
import os
from typing import Optional

from ..core.types import ToolCall, ToolKind, ToolResult
from .base import Tool, ToolContext, ToolRegistry

FILE_READ_TOOL = "file_read"
FILE_WRITE_TOOL = "file_write"


class FileReadTool(Tool):
    """读取文件工具"""

    def __init__(self):
        super().__init__(
            name=FILE_READ_TOOL,
            display_name="Read File",
            description="Read contents of a file with optional offset and line limit",
            kind=ToolKind.READ,
            input_schema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file, relative to the working directory or absolute"
                    },
                    "offset": {
                        "type": "integer",
                        "description": "Line offset to start reading from",
                        "default": 0
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of lines to read"
                    }
                },
                "required": ["path"]
            }
        )

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        file_path = context.resolve_path(call.arguments["path"])
        offset = int(call.arguments.get("offset") or 0)
        limit = call.arguments.get("limit")

        if not file_path.is_file():
            return ToolResult.error(call.id, f"File not found: {file_path}")

        with open(file_path, 'r', encoding='utf-8') as f:
            lines = f.readlines()

        end = offset + int(limit) if limit else len(lines)
        selected_lines = lines[offset:end]

        # 添加行号
        numbered_content = '\n'.join(
            f"{i + offset + 1:4d} | {line.rstrip()}"
            for i, line in enumerate(selected_lines)
        )
        return ToolResult.success(call.id, f"File: {file_path}\n```\n{numbered_content}\n```")


class FileWriteTool(Tool):
    """写入文件工具 - 覆盖已有文件前必须先读取"""

    def __init__(self):
        super().__init__(
            name=FILE_WRITE_TOOL,
            display_name="Write File",
            description="Write content to a file, creating directories if needed. "
                        "Existing files must be read with file_read first.",
            kind=ToolKind.EDIT,
            input_schema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file, relative to the working directory or absolute"
                    },
                    "content": {
                        "type": "string",
                        "description": "Content to write"
                    }
                },
                "required": ["path", "content"]
            }
        )

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        raw_path = call.arguments["path"]
        file_path = context.resolve_path(raw_path)

        if file_path.exists() and context.agent is not None:
            if not await context.agent.has_file_been_read(raw_path):
                return ToolResult.error(
                    call.id, f"File {file_path} exists and must be read with {FILE_READ_TOOL} before writing"
                )

        os.makedirs(file_path.parent, exist_ok=True)
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(call.arguments["content"])

        return ToolResult.success(call.id, f"Successfully wrote to {file_path}")


def register_builtin_tools(registry: Optional[ToolRegistry] = None) -> ToolRegistry:
    """注册所有内置工具"""
    if registry is None:
        registry = ToolRegistry()
    registry.register(FileReadTool())
    registry.register(FileWriteTool())
    return registry
