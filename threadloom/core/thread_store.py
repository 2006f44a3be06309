"""
线程存储 - 每个对话线程的追加式有序事件日志

线程事件序列是对话状态的唯一来源。
"""
import logging
import random
import string
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import ThreadNotFoundError
from .persistence import Persistence
from .types import (
    ApprovalDecision, ApprovalRequestData, ApprovalResponseData, Event, EventData,
    EventType, ToolCall, ToolResult, encode_event_data, utc_now
)

logger = logging.getLogger(__name__)

THREAD_ID_PREFIX = "tl"

EventPredicate = Callable[[Event], bool]


class ThreadStore:
    """线程事件存储"""

    def __init__(self, persistence: Persistence):
        self.persistence = persistence
        self._delegate_counters: Dict[str, int] = {}

    def ensure_available(self) -> None:
        """快速失败检查：持久化不可用时抛出 StorageUnavailableError"""
        self.persistence.get()

    # ------------------------------------------------------------------
    # 线程
    # ------------------------------------------------------------------

    def generate_thread_id(self) -> str:
        """生成线程ID: tl_YYYYMMDD_xxxxxx"""
        date = datetime.now().strftime("%Y%m%d")
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
        return f"{THREAD_ID_PREFIX}_{date}_{suffix}"

    async def generate_delegate_thread_id(self, parent_thread_id: str) -> str:
        """为委派子Agent生成线程ID: <parent>.<n>"""
        counter = self._delegate_counters.get(parent_thread_id, 0)
        while True:
            counter += 1
            candidate = f"{parent_thread_id}.{counter}"
            if not await self.thread_exists(candidate):
                break
        self._delegate_counters[parent_thread_id] = counter
        return candidate

    async def create_thread(self, thread_id: Optional[str] = None, metadata: Optional[Dict] = None) -> str:
        thread_id = thread_id or self.generate_thread_id()
        created = await self.persistence.get().create_thread(thread_id, utc_now().isoformat(), metadata)
        if created:
            logger.debug(f"Created thread {thread_id}")
        return thread_id

    async def thread_exists(self, thread_id: str) -> bool:
        return await self.persistence.get().thread_exists(thread_id)

    async def get_thread_metadata(self, thread_id: str) -> Dict[str, Any]:
        metadata = await self.persistence.get().get_thread_metadata(thread_id)
        if metadata is None:
            raise ThreadNotFoundError(thread_id)
        return metadata

    async def list_threads(self) -> List[str]:
        return await self.persistence.get().list_threads()

    async def purge_thread(self, thread_id: str) -> int:
        """管理员清除线程，返回删除的事件数"""
        deleted = await self.persistence.get().purge(thread_id)
        logger.warning(f"Purged thread {thread_id} ({deleted} events)")
        return deleted

    # ------------------------------------------------------------------
    # 事件
    # ------------------------------------------------------------------

    async def append_event(self, thread_id: str, event_type: EventType, data: EventData) -> Event:
        """追加事件；线程首次使用时自动创建"""
        event = Event(
            id=f"evt_{uuid.uuid4().hex}",
            thread_id=thread_id,
            type=event_type,
            timestamp=utc_now(),
            data=data,
        )
        # 先编码，保证写入前校验数据类型
        row = {
            "id": event.id,
            "thread_id": thread_id,
            "type": event_type.value,
            "timestamp": event.timestamp.isoformat(),
            "data": encode_event_data(event_type, data),
        }
        await self.persistence.get().append(row, created_at=row["timestamp"])
        logger.debug(f"Appended {event_type.value} to {thread_id}")
        return event

    async def get_events(self, thread_id: str) -> List[Event]:
        rows = await self.persistence.get().read(thread_id)
        return [Event.from_dict(row) for row in rows]

    async def find_event(
        self,
        thread_id: str,
        predicate: EventPredicate,
        latest: bool = False
    ) -> Optional[Event]:
        """查找第一个（或最后一个）满足条件的事件"""
        events = await self.get_events(thread_id)
        if latest:
            events = list(reversed(events))
        for event in events:
            if predicate(event):
                return event
        return None

    async def find_tool_call(self, thread_id: str, call_id: str) -> Optional[ToolCall]:
        event = await self.find_event(
            thread_id,
            lambda e: e.type == EventType.TOOL_CALL and e.data.id == call_id
        )
        return event.data if event else None

    async def find_latest_tool_call(
        self,
        thread_id: str,
        name: str,
        arguments: Dict[str, Any]
    ) -> Optional[ToolCall]:
        """最近一次名称和参数都匹配的工具调用"""
        event = await self.find_event(
            thread_id,
            lambda e: (
                e.type == EventType.TOOL_CALL
                and e.data.name == name
                and e.data.arguments == arguments
            ),
            latest=True
        )
        return event.data if event else None

    async def get_approval_request(self, thread_id: str, call_id: str) -> Optional[Event]:
        return await self.find_event(
            thread_id,
            lambda e: e.type == EventType.TOOL_APPROVAL_REQUEST and e.data.tool_call_id == call_id
        )

    async def get_approval_decision(self, thread_id: str, call_id: str) -> Optional[ApprovalDecision]:
        """第一条审批响应即为最终决定"""
        event = await self.find_event(
            thread_id,
            lambda e: e.type == EventType.TOOL_APPROVAL_RESPONSE and e.data.tool_call_id == call_id
        )
        return event.data.decision if event else None

    async def get_tool_result(self, thread_id: str, call_id: str) -> Optional[ToolResult]:
        event = await self.find_event(
            thread_id,
            lambda e: e.type == EventType.TOOL_RESULT and e.data.call_id == call_id
        )
        return event.data if event else None

    async def has_tool_result(self, thread_id: str, call_id: str) -> bool:
        return await self.get_tool_result(thread_id, call_id) is not None

    async def get_unresolved_tool_calls(self, thread_id: str) -> List[ToolCall]:
        """没有结果的工具调用，按追加顺序"""
        events = await self.get_events(thread_id)
        resolved = {e.data.call_id for e in events if e.type == EventType.TOOL_RESULT}
        return [
            e.data for e in events
            if e.type == EventType.TOOL_CALL and e.data.id not in resolved
        ]

    async def get_pending_approvals(self, thread_id: str) -> List[Dict[str, Any]]:
        """已请求审批但尚无响应和结果的工具调用"""
        events = await self.get_events(thread_id)
        calls = {e.data.id: e.data for e in events if e.type == EventType.TOOL_CALL}
        responded = {e.data.tool_call_id for e in events if e.type == EventType.TOOL_APPROVAL_RESPONSE}
        resolved = {e.data.call_id for e in events if e.type == EventType.TOOL_RESULT}

        pending = []
        for event in events:
            if event.type != EventType.TOOL_APPROVAL_REQUEST:
                continue
            call_id = event.data.tool_call_id
            if call_id in responded or call_id in resolved or call_id not in calls:
                continue
            pending.append({
                "tool_call_id": call_id,
                "tool_call": calls[call_id],
                "requested_at": event.timestamp,
            })
        return pending

    async def append_approval_request(self, thread_id: str, call_id: str) -> Event:
        return await self.append_event(
            thread_id, EventType.TOOL_APPROVAL_REQUEST, ApprovalRequestData(tool_call_id=call_id)
        )

    async def append_approval_response(
        self,
        thread_id: str,
        call_id: str,
        decision: ApprovalDecision
    ) -> Event:
        return await self.append_event(
            thread_id,
            EventType.TOOL_APPROVAL_RESPONSE,
            ApprovalResponseData(tool_call_id=call_id, decision=decision)
        )
