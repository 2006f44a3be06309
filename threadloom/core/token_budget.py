"""
Token预算跟踪 - 累计后端报告的Token用量
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .types import Event, EventType, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LIMIT = 200000


@dataclass
class TokenBudgetConfig:
    """Token预算配置"""
    context_limit: int = DEFAULT_CONTEXT_LIMIT
    reserve_tokens: int = 0
    warning_threshold: float = 0.8
    block_threshold: float = 0.95

    def __post_init__(self):
        if self.context_limit <= 0:
            raise ValueError("context_limit must be positive")
        if self.reserve_tokens < 0:
            raise ValueError("reserve_tokens must be non-negative")
        if not 0 < self.warning_threshold <= 1:
            raise ValueError("warning_threshold must be in (0, 1]")
        if not 0 < self.block_threshold <= 1:
            raise ValueError("block_threshold must be in (0, 1]")


@dataclass(frozen=True)
class ThreadTokenUsage:
    """线程累计用量"""
    total_prompt_tokens: int
    total_completion_tokens: int
    total_tokens: int
    context_limit: int
    percent_used: float
    near_limit: bool


@dataclass(frozen=True)
class BudgetRecommendation:
    should_summarize: bool
    should_prune: bool
    max_request_size: int


class TokenBudgetTracker:
    """累计单个线程的Token用量"""

    def __init__(self, config: Optional[TokenBudgetConfig] = None):
        self.config = config or TokenBudgetConfig()
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._total_tokens = 0
        self._records = 0

    @classmethod
    def from_events(cls, events: Iterable[Event], config: Optional[TokenBudgetConfig] = None) -> "TokenBudgetTracker":
        """从线程事件重建累计值"""
        tracker = cls(config)
        for event in events:
            if event.type == EventType.AGENT_MESSAGE and event.data.token_usage is not None:
                tracker.record_usage(event.data.token_usage)
        return tracker

    @classmethod
    def from_usages(cls, usages: List[TokenUsage], config: Optional[TokenBudgetConfig] = None) -> "TokenBudgetTracker":
        tracker = cls(config)
        for usage in usages:
            tracker.record_usage(usage)
        return tracker

    def record_usage(self, usage: Optional[TokenUsage]) -> None:
        if usage is None:
            return
        if usage.prompt_tokens < 0 or usage.completion_tokens < 0 or usage.total_tokens < 0:
            raise ValueError(f"Token usage must be non-negative: {usage}")

        self._prompt_tokens += usage.prompt_tokens
        self._completion_tokens += usage.completion_tokens
        self._total_tokens += usage.total_tokens
        self._records += 1

    @property
    def records(self) -> int:
        return self._records

    def get_usage(self) -> ThreadTokenUsage:
        limit = self.config.context_limit
        percent_used = self._total_tokens / limit * 100
        return ThreadTokenUsage(
            total_prompt_tokens=self._prompt_tokens,
            total_completion_tokens=self._completion_tokens,
            total_tokens=self._total_tokens,
            context_limit=limit,
            percent_used=percent_used,
            near_limit=percent_used >= self.config.warning_threshold * 100,
        )

    def is_blocked(self) -> bool:
        """用量达到阻断阈值时不再发起请求"""
        return self.get_usage().percent_used >= self.config.block_threshold * 100

    def recommendation(self) -> BudgetRecommendation:
        return recommend(self.get_usage(), self.config)


def recommend(usage: ThreadTokenUsage, config: TokenBudgetConfig) -> BudgetRecommendation:
    """根据当前用量给出建议（无副作用）"""
    usable = config.context_limit - config.reserve_tokens
    return BudgetRecommendation(
        should_summarize=usage.near_limit,
        should_prune=usage.total_tokens >= usable,
        max_request_size=max(0, usable - usage.total_tokens),
    )
