"""
LLM客户端 - OpenAI兼容的流式接口

把 chat.completions 的增量块翻译成有类型的流事件:
start-step, text-start, text-delta, text-end, tool-call, finish-step。
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from .provider import ModelInfo
from .types import TokenUsage, ToolSchema

logger = logging.getLogger(__name__)


class StreamEventType:
    """流事件类型常量"""
    START_STEP = "start-step"
    TEXT_START = "text-start"
    TEXT_DELTA = "text-delta"
    TEXT_END = "text-end"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    TOOL_ERROR = "tool-error"
    FINISH_STEP = "finish-step"
    ERROR = "error"


@dataclass
class StreamEvent:
    """流事件"""
    type: str
    text: str = ""
    tool_name: str = ""
    call_id: str = ""
    input: Any = None
    output: Any = None
    error: Any = None
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


@dataclass
class StreamRequest:
    """一次流式调用的输入"""
    model: ModelInfo
    messages: List[Dict[str, Any]]
    system: List[str] = field(default_factory=list)
    tools: List[ToolSchema] = field(default_factory=list)
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None


_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


class LLMClient:
    """LLM客户端封装"""

    def __init__(self):
        self._clients: Dict[tuple, AsyncOpenAI] = {}

    def _client(self, model: ModelInfo) -> AsyncOpenAI:
        key = (model.provider_id, model.base_url, model.api_key)
        client = self._clients.get(key)
        if client is None:
            logger.info(f"creating client for provider {model.provider_id}")
            client = AsyncOpenAI(api_key=model.api_key, base_url=model.base_url, max_retries=0)
            self._clients[key] = client
        return client

    async def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        """生成流式事件"""
        msgs: List[Dict[str, Any]] = [
            {"role": "system", "content": text} for text in request.system if text
        ]
        msgs.extend(request.messages)

        kwargs: Dict[str, Any] = {
            "model": request.model.id,
            "messages": msgs,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            kwargs["tools"] = [t.to_dict() for t in request.tools]
            kwargs["tool_choice"] = "auto"
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.top_p is not None:
            kwargs["top_p"] = request.top_p
        if request.max_tokens:
            kwargs["max_tokens"] = request.max_tokens

        logger.info(f"starting stream {request.model.provider_id}/{request.model.id}")
        stream = await self._client(request.model).chat.completions.create(**kwargs)

        yield StreamEvent(type=StreamEventType.START_STEP)

        in_text = False
        calls: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        usage = TokenUsage()

        async for chunk in stream:
            if chunk.usage:
                usage = TokenUsage(
                    input=chunk.usage.prompt_tokens or 0,
                    output=chunk.usage.completion_tokens or 0
                )
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None and delta.content:
                if not in_text:
                    in_text = True
                    yield StreamEvent(type=StreamEventType.TEXT_START)
                yield StreamEvent(type=StreamEventType.TEXT_DELTA, text=delta.content)
            if delta is not None and delta.tool_calls:
                for tc in delta.tool_calls:
                    call = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        call["id"] = tc.id
                    if tc.function and tc.function.name:
                        call["name"] += tc.function.name
                    if tc.function and tc.function.arguments:
                        call["arguments"] += tc.function.arguments
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        if in_text:
            yield StreamEvent(type=StreamEventType.TEXT_END)

        for index in sorted(calls):
            call = calls[index]
            try:
                arguments = json.loads(call["arguments"] or "{}")
            except json.JSONDecodeError:
                arguments = call["arguments"]
            yield StreamEvent(
                type=StreamEventType.TOOL_CALL,
                tool_name=call["name"],
                call_id=call["id"] or f"call_{index}",
                input=arguments,
            )

        yield StreamEvent(
            type=StreamEventType.FINISH_STEP,
            finish_reason=_FINISH_REASONS.get(finish_reason or "stop", finish_reason),
            usage=usage,
        )
