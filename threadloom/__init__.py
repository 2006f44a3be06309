"""
Threadloom - 事件溯源的Agent运行时

包含功能:
- 追加式线程事件存储（可重放）
- Agent轮次控制器
- 工具执行器和持久化的审批握手
- Token预算跟踪
- 优先级消息队列
"""

__version__ = "0.1.0"

from .core.types import (
    LoopState, EventType, Event, ToolCall, ToolResult, ToolStatus, TokenUsage,
    ApprovalDecision, QueuedMessage, MessagePriority, NotificationType
)
from .core.errors import ThreadloomError, StorageUnavailableError, TurnCancelledError
from .core.persistence import Persistence
from .core.thread_store import ThreadStore
from .core.token_budget import TokenBudgetConfig, TokenBudgetTracker
from .core.message_queue import MessageQueue
from .core.llm_client import LLMBackend, LLMClient, RetryConfig
from .core.anthropic_client import AnthropicClient
from .core.policy import PolicyEngine, ApprovalMode
from .core.agent_loop import Agent, AgentConfig, TurnOutcome, TurnStatus
from .tools import (
    Tool, ToolContext, ToolRegistry, ToolExecutor,
    ApprovalPending, EventApprovalGate, StaticApprovalGate, register_builtin_tools
)

__all__ = [
    # Core types
    "LoopState", "EventType", "Event", "ToolCall", "ToolResult", "ToolStatus", "TokenUsage",
    "ApprovalDecision", "QueuedMessage", "MessagePriority", "NotificationType",
    # Errors
    "ThreadloomError", "StorageUnavailableError", "TurnCancelledError",
    # Core components
    "Persistence", "ThreadStore", "TokenBudgetConfig", "TokenBudgetTracker", "MessageQueue",
    "LLMBackend", "LLMClient", "RetryConfig", "AnthropicClient",
    "PolicyEngine", "ApprovalMode",
    "Agent", "AgentConfig", "TurnOutcome", "TurnStatus",
    # Tools
    "Tool", "ToolContext", "ToolRegistry", "ToolExecutor",
    "ApprovalPending", "EventApprovalGate", "StaticApprovalGate", "register_builtin_tools",
]
