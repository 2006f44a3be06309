"""Tool system module - 工具契约、审批握手和执行器"""

from .base import Tool, ToolContext, ToolRegistry
from .approval import ApprovalGate, ApprovalPending, EventApprovalGate, StaticApprovalGate
from .executor import ToolExecutor
from .builtin import FileReadTool, FileWriteTool, register_builtin_tools

__all__ = [
    'Tool',
    'ToolContext',
    'ToolRegistry',
    'ApprovalGate',
    'ApprovalPending',
    'EventApprovalGate',
    'StaticApprovalGate',
    'ToolExecutor',
    'FileReadTool',
    'FileWriteTool',
    'register_builtin_tools',
]
