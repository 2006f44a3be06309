"""
消息队列 - 高优先级优先，同优先级先进先出
"""
import heapq
import itertools
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .types import MessagePriority, QueuedMessage, utc_now

_PRIORITY_RANK = {
    MessagePriority.HIGH: 0,
    MessagePriority.NORMAL: 1,
}


@dataclass(frozen=True)
class QueueStats:
    queue_length: int
    oldest_message_age: Optional[float]  # 秒
    high_priority_count: int


class MessageQueue:
    """Agent的待处理输入队列"""

    def __init__(self):
        self._heap: List[Tuple[int, int, QueuedMessage]] = []
        self._arrival = itertools.count()

    def enqueue(self, message: QueuedMessage) -> str:
        rank = _PRIORITY_RANK[message.priority]
        heapq.heappush(self._heap, (rank, next(self._arrival), message))
        return message.id

    def dequeue_next(self) -> Optional[QueuedMessage]:
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[2]

    def peek(self) -> Optional[QueuedMessage]:
        return self._heap[0][2] if self._heap else None

    def contents(self) -> List[QueuedMessage]:
        """按服务顺序返回副本"""
        return [entry[2] for entry in sorted(self._heap)]

    def clear(self, predicate: Optional[Callable[[QueuedMessage], bool]] = None) -> int:
        """清除全部或满足条件的消息，返回清除数量"""
        before = len(self._heap)
        if predicate is None:
            self._heap = []
        else:
            self._heap = [entry for entry in self._heap if not predicate(entry[2])]
            heapq.heapify(self._heap)
        return before - len(self._heap)

    def stats(self) -> QueueStats:
        high = sum(1 for entry in self._heap if entry[2].priority == MessagePriority.HIGH)
        oldest_age = None
        if self._heap:
            # 最早到达的消息
            oldest = min(self._heap, key=lambda entry: entry[1])[2]
            oldest_age = max(0.0, (utc_now() - oldest.timestamp).total_seconds())
        return QueueStats(
            queue_length=len(self._heap),
            oldest_message_age=oldest_age,
            high_priority_count=high,
        )

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)
