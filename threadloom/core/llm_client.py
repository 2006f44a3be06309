"""
LLM后端 - 抽象能力接口、重试策略和OpenAI适配器
OpenAI适配器同时支持Gemini的OpenAI兼容模式
"""
import asyncio
import inspect
import json
import logging
import os
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from .token_budget import DEFAULT_CONTEXT_LIMIT
from .types import ProviderMessage, ProviderResponse, TokenUsage, ToolCall, ToolSchema

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], Any]


@dataclass
class RetryConfig:
    """重试配置（指数退避 + 抖动）"""
    max_retries: int = 10
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self):
        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ValueError("max_retries must be a non-negative integer")
        if self.max_retries > 50:
            raise ValueError("max_retries cannot exceed 50")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.initial_delay > self.max_delay:
            raise ValueError("initial_delay cannot be greater than max_delay")
        if not 1 <= self.backoff_factor <= 10:
            raise ValueError("backoff_factor must be between 1 and 10")
        if not 0 <= self.jitter_factor < 1:
            raise ValueError("jitter_factor must be in [0, 1)")

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次重试前的等待秒数（attempt 从1开始）"""
        base = min(self.max_delay, self.initial_delay * (self.backoff_factor ** (attempt - 1)))
        jitter = base * self.jitter_factor * (random.random() * 2 - 1)
        return max(0.0, base + jitter)


class LLMBackend(ABC):
    """语言模型后端的能力接口"""

    def __init__(
        self,
        model: str,
        system_prompt: Optional[str] = None,
        context_window: int = DEFAULT_CONTEXT_LIMIT,
        retry_config: Optional[RetryConfig] = None
    ):
        self.model = model
        self.system_prompt = system_prompt
        self.context_window = context_window
        self.retry_config = retry_config or RetryConfig()

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    @property
    def supports_streaming(self) -> bool:
        return False

    @abstractmethod
    async def create_response(
        self,
        messages: List[ProviderMessage],
        tools: List[ToolSchema],
        cancellation_event: Optional[asyncio.Event] = None
    ) -> ProviderResponse:
        ...

    async def create_streaming_response(
        self,
        messages: List[ProviderMessage],
        tools: List[ToolSchema],
        cancellation_event: Optional[asyncio.Event] = None,
        on_token: Optional[TokenCallback] = None
    ) -> ProviderResponse:
        """默认回退到非流式实现"""
        return await self.create_response(messages, tools, cancellation_event)

    def set_system_prompt(self, system_prompt: str) -> None:
        self.system_prompt = system_prompt

    def is_retryable(self, error: Exception) -> bool:
        """子类按SDK异常类型判断是否可重试"""
        return False

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[ProviderResponse]],
        cancellation_event: Optional[asyncio.Event] = None
    ) -> ProviderResponse:
        """对可重试错误做指数退避重试"""
        attempt = 0
        while True:
            _check_cancelled(cancellation_event)
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e) or attempt >= self.retry_config.max_retries:
                    if attempt:
                        logger.error(f"{self.provider_name}: giving up after {attempt} retries: {e}")
                    raise
                attempt += 1
                delay = self.retry_config.delay_for(attempt)
                logger.warning(
                    f"{self.provider_name}: retry {attempt}/{self.retry_config.max_retries} "
                    f"in {delay:.2f}s after error: {e}"
                )
                await _sleep_unless_cancelled(delay, cancellation_event)

    async def cleanup(self) -> None:
        """释放客户端资源"""


def _check_cancelled(cancellation_event: Optional[asyncio.Event]) -> None:
    if cancellation_event is not None and cancellation_event.is_set():
        raise asyncio.CancelledError()


async def _emit_token(on_token: TokenCallback, token: str) -> None:
    """回调可以是普通函数或协程函数"""
    result = on_token(token)
    if inspect.isawaitable(result):
        await result


async def _sleep_unless_cancelled(delay: float, cancellation_event: Optional[asyncio.Event]) -> None:
    if cancellation_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancellation_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise asyncio.CancelledError()


_OPENAI_STOP_REASONS = {
    "stop": "stop",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
    "content_filter": "error",
}


def to_openai_messages(
    messages: List[ProviderMessage],
    system_prompt: Optional[str] = None
) -> List[Dict[str, Any]]:
    """转换为OpenAI Chat Completions消息格式"""
    msgs: List[Dict[str, Any]] = []
    if system_prompt:
        msgs.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if msg.role == "assistant":
            data: Dict[str, Any] = {"role": "assistant", "content": msg.content or ""}
            if msg.tool_calls:
                data["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments, ensure_ascii=False)
                        }
                    }
                    for tc in msg.tool_calls
                ]
            msgs.append(data)
        elif msg.tool_results:
            for result in msg.tool_results:
                text = result.text
                msgs.append({
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": text if not result.is_error else f"Error: {text}"
                })
            if msg.content:
                msgs.append({"role": "user", "content": msg.content})
        else:
            msgs.append({"role": msg.role, "content": msg.content or ""})

    return msgs


def parse_openai_tool_calls(raw_calls: List[Dict[str, Any]], truncated: bool = False) -> List[ToolCall]:
    """解析工具调用；被截断的响应中无法解析的调用直接丢弃"""
    calls = []
    for raw in raw_calls:
        arguments_text = raw.get("arguments") or "{}"
        try:
            arguments = json.loads(arguments_text)
        except json.JSONDecodeError:
            if truncated:
                logger.warning(f"Dropping incomplete tool call {raw.get('name')} from truncated response")
                continue
            logger.warning(f"Tool call {raw.get('name')} has invalid JSON arguments")
            arguments = {}
        calls.append(ToolCall(id=raw.get("id") or "", name=raw.get("name", ""), arguments=arguments))
    return calls


def _usage_from_openai(usage: Any) -> Optional[TokenUsage]:
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
    )


class LLMClient(LLMBackend):
    """OpenAI 后端适配器"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "gpt-4o-mini",
        provider: str = "openai",
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        streaming: bool = False,
        **kwargs
    ):
        super().__init__(model=model, **kwargs)
        self.provider = provider
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.streaming = streaming
        self.api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("GEMINI_API_KEY")

        # 支持Gemini API (OpenAI兼容模式)
        if provider == "gemini":
            base_url = base_url or "https://generativelanguage.googleapis.com/v1beta/openai/"

        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=base_url,
            max_retries=0
        )

    @property
    def provider_name(self) -> str:
        return self.provider

    @property
    def supports_streaming(self) -> bool:
        return self.streaming

    def is_retryable(self, error: Exception) -> bool:
        return isinstance(error, (
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ))

    def _request_kwargs(self, messages: List[ProviderMessage], tools: List[ToolSchema]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages, self.system_prompt),
            "temperature": self.temperature,
        }
        if tools:
            kwargs["tools"] = [t.to_dict() for t in tools]
            kwargs["tool_choice"] = "auto"
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens
        return kwargs

    async def create_response(
        self,
        messages: List[ProviderMessage],
        tools: List[ToolSchema],
        cancellation_event: Optional[asyncio.Event] = None
    ) -> ProviderResponse:
        kwargs = self._request_kwargs(messages, tools)

        async def call() -> ProviderResponse:
            response = await self.client.chat.completions.create(**kwargs)
            choice = response.choices[0]
            message = choice.message
            stop_reason = _OPENAI_STOP_REASONS.get(choice.finish_reason, choice.finish_reason)

            raw_calls = [
                {"id": tc.id, "name": tc.function.name, "arguments": tc.function.arguments}
                for tc in (message.tool_calls or [])
            ]
            return ProviderResponse(
                content=message.content or "",
                tool_calls=parse_openai_tool_calls(raw_calls, truncated=stop_reason == "max_tokens"),
                usage=_usage_from_openai(response.usage),
                stop_reason=stop_reason
            )

        return await self.with_retry(call, cancellation_event)

    async def create_streaming_response(
        self,
        messages: List[ProviderMessage],
        tools: List[ToolSchema],
        cancellation_event: Optional[asyncio.Event] = None,
        on_token: Optional[TokenCallback] = None
    ) -> ProviderResponse:
        kwargs = self._request_kwargs(messages, tools)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        async def call() -> ProviderResponse:
            stream = await self.client.chat.completions.create(**kwargs)
            content_parts: List[str] = []
            partial_calls: Dict[int, Dict[str, str]] = {}
            usage = None
            finish_reason = None

            async for chunk in stream:
                _check_cancelled(cancellation_event)
                if chunk.usage is not None:
                    usage = _usage_from_openai(chunk.usage)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta.content:
                    content_parts.append(delta.content)
                    if on_token is not None:
                        await _emit_token(on_token, delta.content)
                for tc in delta.tool_calls or []:
                    slot = partial_calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            slot["name"] += tc.function.name
                        if tc.function.arguments:
                            slot["arguments"] += tc.function.arguments
                if choice.finish_reason:
                    finish_reason = choice.finish_reason

            stop_reason = _OPENAI_STOP_REASONS.get(finish_reason, finish_reason)
            raw_calls = [partial_calls[index] for index in sorted(partial_calls)]
            return ProviderResponse(
                content="".join(content_parts),
                tool_calls=parse_openai_tool_calls(raw_calls, truncated=stop_reason == "max_tokens"),
                usage=usage,
                stop_reason=stop_reason
            )

        return await self.with_retry(call, cancellation_event)

    async def cleanup(self) -> None:
        await self.client.close()
