"""
核心类型定义 - 事件日志、工具调用、审批、Token用量、消息队列
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LoopState(Enum):
    """Agent 状态机"""
    IDLE = "idle"
    RUNNING = "running"
    TOOL_DISPATCH = "tool_dispatch"
    WAITING_APPROVAL = "waiting_approval"
    STOPPED = "stopped"


class ToolKind(str, Enum):
    """工具类型枚举"""
    READ = "read"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    SEARCH = "search"
    EXECUTE = "execute"
    THINK = "think"
    FETCH = "fetch"
    OTHER = "other"


# 有副作用的工具类型
MUTATOR_KINDS = {ToolKind.EDIT, ToolKind.DELETE, ToolKind.MOVE, ToolKind.EXECUTE}


class EventType(str, Enum):
    """线程事件类型（封闭集合）"""
    USER_MESSAGE = "USER_MESSAGE"
    AGENT_MESSAGE = "AGENT_MESSAGE"
    TOOL_CALL = "TOOL_CALL"
    TOOL_RESULT = "TOOL_RESULT"
    TOOL_APPROVAL_REQUEST = "TOOL_APPROVAL_REQUEST"
    TOOL_APPROVAL_RESPONSE = "TOOL_APPROVAL_RESPONSE"
    LOCAL_SYSTEM_MESSAGE = "LOCAL_SYSTEM_MESSAGE"
    SYSTEM_PROMPT = "SYSTEM_PROMPT"


class ApprovalDecision(str, Enum):
    """工具审批结果"""
    ALLOW_ONCE = "allow_once"
    ALLOW_SESSION = "allow_session"
    DENY = "deny"


class ToolStatus(str, Enum):
    """工具结果状态"""
    COMPLETED = "completed"
    FAILED = "failed"
    DENIED = "denied"
    ABORTED = "aborted"


@dataclass(frozen=True)
class TokenUsage:
    """单条消息的Token用量"""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenUsage":
        return cls(
            prompt_tokens=int(data.get("prompt_tokens", 0)),
            completion_tokens=int(data.get("completion_tokens", 0)),
            total_tokens=int(data.get("total_tokens", 0)),
        )


@dataclass(frozen=True)
class ToolCall:
    """工具调用请求"""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(
            id=data.get("id") or f"call_{uuid.uuid4().hex[:12]}",
            name=data.get("name", ""),
            arguments=data.get("arguments") or {},
        )


@dataclass(frozen=True)
class ToolResult:
    """工具执行结果"""
    call_id: str
    status: ToolStatus
    content: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return self.status != ToolStatus.COMPLETED

    @property
    def text(self) -> str:
        return "\n".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )

    @classmethod
    def success(cls, call_id: str, text: str) -> "ToolResult":
        return cls(call_id=call_id, status=ToolStatus.COMPLETED, content=[{"type": "text", "text": text}])

    @classmethod
    def error(cls, call_id: str, text: str, status: ToolStatus = ToolStatus.FAILED) -> "ToolResult":
        return cls(call_id=call_id, status=status, content=[{"type": "text", "text": text}])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.call_id,
            "status": self.status.value,
            "content": [dict(block) for block in self.content],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolResult":
        return cls(
            call_id=data.get("id", ""),
            status=ToolStatus(data.get("status", ToolStatus.FAILED.value)),
            content=list(data.get("content") or []),
        )


@dataclass(frozen=True)
class AgentMessageData:
    """Agent消息内容（可携带Token用量快照）"""
    content: str
    token_usage: Optional[TokenUsage] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"content": self.content}
        if self.token_usage is not None:
            data["token_usage"] = self.token_usage.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentMessageData":
        usage = data.get("token_usage")
        return cls(
            content=data.get("content", ""),
            token_usage=TokenUsage.from_dict(usage) if usage else None,
        )


@dataclass(frozen=True)
class ApprovalRequestData:
    tool_call_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"tool_call_id": self.tool_call_id}


@dataclass(frozen=True)
class ApprovalResponseData:
    tool_call_id: str
    decision: ApprovalDecision

    def to_dict(self) -> Dict[str, Any]:
        return {"tool_call_id": self.tool_call_id, "decision": self.decision.value}


EventData = Union[str, AgentMessageData, ToolCall, ToolResult, ApprovalRequestData, ApprovalResponseData]


def encode_event_data(event_type: EventType, data: EventData) -> Any:
    """将事件数据转换为可持久化的JSON结构"""
    if event_type in (EventType.USER_MESSAGE, EventType.LOCAL_SYSTEM_MESSAGE, EventType.SYSTEM_PROMPT):
        if not isinstance(data, str):
            raise TypeError(f"{event_type.value} data must be str")
        return data
    elif event_type == EventType.AGENT_MESSAGE:
        return _expect(data, AgentMessageData, event_type).to_dict()
    elif event_type == EventType.TOOL_CALL:
        return _expect(data, ToolCall, event_type).to_dict()
    elif event_type == EventType.TOOL_RESULT:
        return _expect(data, ToolResult, event_type).to_dict()
    elif event_type == EventType.TOOL_APPROVAL_REQUEST:
        return _expect(data, ApprovalRequestData, event_type).to_dict()
    elif event_type == EventType.TOOL_APPROVAL_RESPONSE:
        return _expect(data, ApprovalResponseData, event_type).to_dict()
    raise ValueError(f"Unknown event type: {event_type}")


def decode_event_data(event_type: EventType, raw: Any) -> EventData:
    """从持久化结构恢复事件数据"""
    if event_type in (EventType.USER_MESSAGE, EventType.LOCAL_SYSTEM_MESSAGE, EventType.SYSTEM_PROMPT):
        return raw
    elif event_type == EventType.AGENT_MESSAGE:
        return AgentMessageData.from_dict(raw)
    elif event_type == EventType.TOOL_CALL:
        return ToolCall.from_dict(raw)
    elif event_type == EventType.TOOL_RESULT:
        return ToolResult.from_dict(raw)
    elif event_type == EventType.TOOL_APPROVAL_REQUEST:
        return ApprovalRequestData(tool_call_id=raw["tool_call_id"])
    elif event_type == EventType.TOOL_APPROVAL_RESPONSE:
        return ApprovalResponseData(
            tool_call_id=raw["tool_call_id"],
            decision=ApprovalDecision(raw["decision"]),
        )
    raise ValueError(f"Unknown event type: {event_type}")


def _expect(data: Any, cls: type, event_type: EventType) -> Any:
    if not isinstance(data, cls):
        raise TypeError(f"{event_type.value} data must be {cls.__name__}, got {type(data).__name__}")
    return data


@dataclass(frozen=True)
class Event:
    """线程事件 - 追加后不可变"""
    id: str
    thread_id: str
    type: EventType
    timestamp: datetime
    data: EventData

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "data": encode_event_data(self.type, self.data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event_type = EventType(data["type"])
        return cls(
            id=data["id"],
            thread_id=data["thread_id"],
            type=event_type,
            timestamp=datetime.fromisoformat(data["timestamp"]),
            data=decode_event_data(event_type, data["data"]),
        )


@dataclass
class ProviderMessage:
    """发送给后端的对话消息"""
    role: str  # "user", "assistant"
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)


@dataclass
class ProviderResponse:
    """后端响应"""
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    stop_reason: Optional[str] = None  # "stop", "tool_use", "max_tokens", "error"


@dataclass
class ToolSchema:
    """工具JSON Schema定义"""
    name: str
    description: str
    parameters: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters
            }
        }


class MessageKind(str, Enum):
    USER = "user"
    SYSTEM = "system"
    TASK_NOTIFICATION = "task_notification"


class MessagePriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


@dataclass
class QueuedMessageMetadata:
    priority: MessagePriority = MessagePriority.NORMAL
    source: str = "user"
    task_id: Optional[str] = None
    from_agent: Optional[str] = None


@dataclass
class QueuedMessage:
    """排队中的输入消息"""
    content: str
    kind: MessageKind = MessageKind.USER
    metadata: QueuedMessageMetadata = field(default_factory=QueuedMessageMetadata)
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def priority(self) -> MessagePriority:
        return self.metadata.priority

    @classmethod
    def task_notification(
        cls,
        content: str,
        task_id: str,
        from_agent: Optional[str] = None,
        priority: MessagePriority = MessagePriority.HIGH,
    ) -> "QueuedMessage":
        return cls(
            content=content,
            kind=MessageKind.TASK_NOTIFICATION,
            metadata=QueuedMessageMetadata(
                priority=priority,
                source="task_system",
                task_id=task_id,
                from_agent=from_agent,
            ),
        )

    def render(self) -> str:
        """转换为追加到线程的用户消息文本"""
        if self.kind == MessageKind.TASK_NOTIFICATION:
            sender = self.metadata.from_agent or "unknown"
            return f"[Task {self.metadata.task_id} from {sender}] {self.content}"
        elif self.kind == MessageKind.SYSTEM:
            return f"[System] {self.content}"
        elif self.kind == MessageKind.USER:
            return self.content
        raise ValueError(f"Unknown message kind: {self.kind}")


@dataclass
class AgentNotification:
    """Agent生命周期通知"""
    type: str
    data: Any
    timestamp: datetime = field(default_factory=utc_now)


class NotificationType:
    """通知类型常量"""
    STATE_CHANGE = "state_change"
    THREAD_EVENT_ADDED = "thread_event_added"
    AGENT_TOKEN = "agent_token"
    TOKEN_BUDGET_WARNING = "token_budget_warning"
    MESSAGE_QUEUED = "message_queued"
    APPROVAL_REQUESTED = "approval_requested"
    TURN_COMPLETE = "turn_complete"
    ERROR = "error"
