"""
Anthropic 后端适配器
"""
import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import anthropic
from anthropic import AsyncAnthropic

from .llm_client import LLMBackend, TokenCallback, _check_cancelled, _emit_token
from .types import ProviderMessage, ProviderResponse, TokenUsage, ToolCall, ToolSchema

logger = logging.getLogger(__name__)

_ANTHROPIC_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_use",
    "max_tokens": "max_tokens",
}


def to_anthropic_messages(messages: List[ProviderMessage]) -> List[Dict[str, Any]]:
    """转换为Anthropic Messages API格式（工具结果作为user消息中的tool_result块）"""
    converted: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == "assistant":
            blocks: List[Dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
            converted.append({"role": "assistant", "content": blocks or msg.content})
        elif msg.tool_results:
            blocks = [
                {
                    "type": "tool_result",
                    "tool_use_id": result.call_id,
                    "content": result.text,
                    "is_error": result.is_error,
                }
                for result in msg.tool_results
            ]
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            converted.append({"role": "user", "content": blocks})
        else:
            converted.append({"role": "user", "content": msg.content})
    return converted


def to_anthropic_tools(tools: List[ToolSchema]) -> List[Dict[str, Any]]:
    return [
        {"name": t.name, "description": t.description, "input_schema": t.parameters}
        for t in tools
    ]


def _usage_from_anthropic(usage: Any) -> Optional[TokenUsage]:
    if usage is None:
        return None
    prompt = usage.input_tokens or 0
    completion = usage.output_tokens or 0
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


class AnthropicClient(LLMBackend):
    """Anthropic Messages API 后端"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 4096,
        temperature: float = 0.7,
        streaming: bool = False,
        **kwargs
    ):
        super().__init__(model=model, **kwargs)
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.streaming = streaming
        self.client = AsyncAnthropic(
            api_key=api_key or os.getenv("ANTHROPIC_API_KEY"),
            max_retries=0
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    @property
    def supports_streaming(self) -> bool:
        return self.streaming

    def is_retryable(self, error: Exception) -> bool:
        return isinstance(error, (
            anthropic.APIConnectionError,
            anthropic.RateLimitError,
            anthropic.InternalServerError,
        ))

    def _request_kwargs(self, messages: List[ProviderMessage], tools: List[ToolSchema]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": to_anthropic_messages(messages),
        }
        if self.system_prompt:
            kwargs["system"] = self.system_prompt
        if tools:
            kwargs["tools"] = to_anthropic_tools(tools)
        return kwargs

    def _parse_message(self, message: Any) -> ProviderResponse:
        text_parts = []
        tool_calls = []
        for block in message.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))
        return ProviderResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            usage=_usage_from_anthropic(message.usage),
            stop_reason=_ANTHROPIC_STOP_REASONS.get(message.stop_reason, message.stop_reason),
        )

    async def create_response(
        self,
        messages: List[ProviderMessage],
        tools: List[ToolSchema],
        cancellation_event: Optional[asyncio.Event] = None
    ) -> ProviderResponse:
        kwargs = self._request_kwargs(messages, tools)

        async def call() -> ProviderResponse:
            message = await self.client.messages.create(**kwargs)
            return self._parse_message(message)

        return await self.with_retry(call, cancellation_event)

    async def create_streaming_response(
        self,
        messages: List[ProviderMessage],
        tools: List[ToolSchema],
        cancellation_event: Optional[asyncio.Event] = None,
        on_token: Optional[TokenCallback] = None
    ) -> ProviderResponse:
        kwargs = self._request_kwargs(messages, tools)

        async def call() -> ProviderResponse:
            async with self.client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    _check_cancelled(cancellation_event)
                    if on_token is not None:
                        await _emit_token(on_token, text)
                message = await stream.get_final_message()
            return self._parse_message(message)

        return await self.with_retry(call, cancellation_event)

    async def cleanup(self) -> None:
        await self.client.close()
