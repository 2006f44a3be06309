"""
事件回放 - 从线程事件重建发送给后端的对话和派生状态

纯函数：同一事件序列总是得到相同结果。
"""
from typing import Dict, List, Optional, Set
from dataclasses import dataclass, field

from .types import (
    ApprovalDecision, Event, EventType, ProviderMessage, TokenUsage, ToolCall, ToolResult
)


def build_conversation(events: List[Event]) -> List[ProviderMessage]:
    """将线程事件转换为后端消息格式"""
    messages: List[ProviderMessage] = []
    grouped: Set[int] = set()

    for i, event in enumerate(events):
        if i in grouped:
            continue

        if event.type == EventType.USER_MESSAGE:
            messages.append(ProviderMessage(role="user", content=event.data))

        elif event.type == EventType.AGENT_MESSAGE:
            # 紧随其后的工具调用归属于这条Agent消息
            tool_calls: List[ToolCall] = []
            for j in range(i + 1, len(events)):
                following = events[j]
                if following.type in (EventType.AGENT_MESSAGE, EventType.USER_MESSAGE):
                    break
                if following.type == EventType.TOOL_CALL:
                    tool_calls.append(following.data)
                    grouped.add(j)
            messages.append(ProviderMessage(
                role="assistant",
                content=event.data.content,
                tool_calls=tool_calls
            ))

        elif event.type == EventType.TOOL_CALL:
            # 孤立的工具调用（前面没有Agent消息）
            messages.append(ProviderMessage(role="assistant", content="", tool_calls=[event.data]))

        elif event.type == EventType.TOOL_RESULT:
            _attach_tool_result(messages, events, event.data)

        elif event.type in (
            EventType.SYSTEM_PROMPT,
            EventType.LOCAL_SYSTEM_MESSAGE,
            EventType.TOOL_APPROVAL_REQUEST,
            EventType.TOOL_APPROVAL_RESPONSE,
        ):
            # 不发送给模型
            continue

        else:
            raise ValueError(f"Unknown event type: {event.type}")

    return messages


def _attach_tool_result(
    messages: List[ProviderMessage],
    events: List[Event],
    result: ToolResult
) -> None:
    owner_index = _find_owner_message(messages, result.call_id)

    if owner_index is None:
        call = next(
            (e.data for e in events if e.type == EventType.TOOL_CALL and e.data.id == result.call_id),
            None
        )
        if call is None:
            # 找不到对应调用的结果会让后端报错，直接跳过
            return
        messages.append(ProviderMessage(role="assistant", content="", tool_calls=[call]))
        messages.append(ProviderMessage(role="user", tool_results=[result]))
        return

    for message in messages[owner_index + 1:]:
        if message.role == "user" and message.tool_results:
            message.tool_results.append(result)
            return

    messages.append(ProviderMessage(role="user", tool_results=[result]))


def _find_owner_message(messages: List[ProviderMessage], call_id: str) -> Optional[int]:
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.role == "assistant" and any(tc.id == call_id for tc in message.tool_calls):
            return index
    return None


@dataclass
class ThreadReplay:
    """回放线程得到的派生状态"""
    messages: List[ProviderMessage] = field(default_factory=list)
    usages: List[TokenUsage] = field(default_factory=list)
    unresolved_call_ids: List[str] = field(default_factory=list)
    pending_approval_ids: List[str] = field(default_factory=list)
    session_allowed_tools: Set[str] = field(default_factory=set)
    has_system_prompt: bool = False
    conversation_started: bool = False


def replay_thread(events: List[Event]) -> ThreadReplay:
    """从事件序列重建线程状态"""
    replay = ThreadReplay(messages=build_conversation(events))

    calls: Dict[str, ToolCall] = {}
    results: Set[str] = set()
    requested: List[str] = []
    decisions: Dict[str, ApprovalDecision] = {}

    for event in events:
        if event.type == EventType.USER_MESSAGE:
            replay.conversation_started = True
        elif event.type == EventType.AGENT_MESSAGE:
            replay.conversation_started = True
            if event.data.token_usage is not None:
                replay.usages.append(event.data.token_usage)
        elif event.type == EventType.TOOL_CALL:
            calls[event.data.id] = event.data
        elif event.type == EventType.TOOL_RESULT:
            results.add(event.data.call_id)
        elif event.type == EventType.TOOL_APPROVAL_REQUEST:
            requested.append(event.data.tool_call_id)
        elif event.type == EventType.TOOL_APPROVAL_RESPONSE:
            # 第一条响应为最终决定
            decisions.setdefault(event.data.tool_call_id, event.data.decision)
        elif event.type == EventType.SYSTEM_PROMPT:
            replay.has_system_prompt = True
        elif event.type == EventType.LOCAL_SYSTEM_MESSAGE:
            continue
        else:
            raise ValueError(f"Unknown event type: {event.type}")

    replay.unresolved_call_ids = [call_id for call_id in calls if call_id not in results]
    replay.pending_approval_ids = [
        call_id for call_id in requested
        if call_id not in decisions and call_id not in results
    ]
    replay.session_allowed_tools = {
        calls[call_id].name
        for call_id, decision in decisions.items()
        if decision == ApprovalDecision.ALLOW_SESSION and call_id in calls
    }
    return replay
