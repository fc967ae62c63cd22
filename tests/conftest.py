"""
测试公共设施 - 脚本化的模型客户端
"""
import asyncio
from typing import Any, Callable, List, Optional, Union

import pytest

from nano_code.config_loader import Config, ModelConfig, ProviderConfig
from nano_code.core.llm_client import StreamEvent, StreamEventType, StreamRequest
from nano_code.core.types import TokenUsage
from nano_code.runtime import Runtime
from nano_code.tools.base import ToolRegistry

HANG = object()


def text_turn(text: str, finish: str = "stop", usage: Optional[TokenUsage] = None) -> List[StreamEvent]:
    """一个只输出文本的回合"""
    return [
        StreamEvent(type=StreamEventType.START_STEP),
        StreamEvent(type=StreamEventType.TEXT_START),
        StreamEvent(type=StreamEventType.TEXT_DELTA, text=text[: len(text) // 2]),
        StreamEvent(type=StreamEventType.TEXT_DELTA, text=text[len(text) // 2:]),
        StreamEvent(type=StreamEventType.TEXT_END),
        StreamEvent(
            type=StreamEventType.FINISH_STEP,
            finish_reason=finish,
            usage=usage or TokenUsage(input=10, output=5),
        ),
    ]


def tool_turn(*calls, usage: Optional[TokenUsage] = None) -> List[StreamEvent]:
    """一个请求工具调用的回合, calls 为 (tool, call_id, input)"""
    events = [StreamEvent(type=StreamEventType.START_STEP)]
    for name, call_id, arguments in calls:
        events.append(StreamEvent(
            type=StreamEventType.TOOL_CALL, tool_name=name, call_id=call_id, input=arguments
        ))
    events.append(StreamEvent(
        type=StreamEventType.FINISH_STEP,
        finish_reason="tool-calls",
        usage=usage or TokenUsage(input=10, output=5),
    ))
    return events


Script = Union[List[Any], BaseException, Callable[[StreamRequest], List[Any]]]


class FakeLLM:
    """按顺序回放脚本的模型客户端; 每次 stream 调用消耗一个脚本"""

    def __init__(self, *scripts: Script):
        self.scripts: List[Script] = list(scripts)
        self.requests: List[StreamRequest] = []

    def add(self, *scripts: Script) -> None:
        self.scripts.extend(scripts)

    async def stream(self, request: StreamRequest):
        self.requests.append(request)
        if not self.scripts:
            raise AssertionError("FakeLLM ran out of scripts")
        script = self.scripts.pop(0)
        if callable(script) and not isinstance(script, list):
            script = script(request)
        if isinstance(script, BaseException):
            raise script
        for item in script:
            await asyncio.sleep(0)
            if item is HANG:
                await asyncio.Event().wait()
            if isinstance(item, BaseException):
                raise item
            yield item


def make_config(**overrides) -> Config:
    data = {
        "provider": [ProviderConfig(
            id="test",
            model="test-model",
            models={"test-model": ModelConfig(context=100_000, output=4_000)},
        )],
    }
    data.update(overrides)
    return Config(**data)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def make_runtime(tmp_path, fake_llm):
    """构造使用假模型的运行时"""
    def build(registry: Optional[ToolRegistry] = None, **config) -> Runtime:
        return Runtime(make_config(**config), str(tmp_path), client=fake_llm, registry=registry)
    return build
