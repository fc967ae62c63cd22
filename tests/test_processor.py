"""
测试流处理器
"""
import asyncio

import pytest

from nano_code.core.bus import EventBus
from nano_code.core.cancel import CancellationToken
from nano_code.core.errors import RejectedError
from nano_code.core.llm_client import StreamEvent, StreamEventType
from nano_code.core.store import ConversationStore
from nano_code.core.types import (
    EventType, StepFinishPart, StepStartPart, TextPart, ToolPart, ToolStatus,
)
from nano_code.session import processor as processor_module
from nano_code.session.processor import ProcessResult, StreamProcessor, retry_delay, retryable
from nano_code.session.status import SessionStatus
from nano_code.tools.base import ToolOutput

from .conftest import HANG, text_turn, tool_turn


class RateLimitError(Exception):
    pass


def replay(events):
    async def generate():
        for event in events:
            await asyncio.sleep(0)
            if event is HANG:
                await asyncio.Event().wait()
            yield event
    return generate


def failing(error):
    async def generate():
        raise error
        yield  # pragma: no cover
    return generate


class TestRetryPolicy:
    """测试重试分类与退避"""

    def test_retryable_markers(self):
        assert retryable(RateLimitError("429 Too Many Requests")) == "Rate limited"
        assert retryable(Exception("rate_limit_exceeded")) == "Rate limited"
        assert retryable(Exception("Overloaded")) == "Provider overloaded"
        assert retryable(Exception("request timed out")) == "Request timed out"
        assert retryable(asyncio.TimeoutError()) == "Request timed out"
        assert retryable(ValueError("bad request")) is None

    def test_retry_delay(self):
        assert retry_delay(1) == 1.0
        assert retry_delay(2) == 2.0
        assert retry_delay(5) == 16.0
        assert retry_delay(10) == 30.0


class TestStreamProcessor:
    """测试流事件到片段的映射"""

    def setup_method(self):
        self.bus = EventBus()
        self.store = ConversationStore(self.bus)
        self.status = SessionStatus(self.bus)
        self.processor = StreamProcessor(self.store, self.bus, self.status)
        self.events = []

        async def record(event):
            self.events.append(event)
        self.bus.on_all(record)

    async def turn(self):
        session = await self.store.create_session("proj", "/tmp")
        await self.store.create_user_message(session.id, "hello")
        message = await self.store.create_assistant_message(session.id)
        return session.id, message.id

    def of_type(self, kind):
        return [e.data for e in self.events if e.type == kind]

    @pytest.mark.asyncio
    async def test_text_stream(self):
        """文本增量发布 part.delta, 结束时封存修剪后的文本"""
        session_id, message_id = await self.turn()
        result = await self.processor.process(
            session_id, message_id, replay(text_turn("  Hello world  ")), CancellationToken()
        )

        assert result == ProcessResult.CONTINUE
        deltas = self.of_type(EventType.PART_DELTA)
        assert "".join(d["delta"] for d in deltas) == "  Hello world  "
        assert all(d["field"] == "text" for d in deltas)

        parts = self.store.list_parts(message_id)
        assert [type(p) for p in parts] == [StepStartPart, TextPart, StepFinishPart]
        assert parts[1].text == "Hello world"

        message = self.store.get_message(message_id)
        assert message.sealed
        assert message.finish_reason == "stop"
        assert message.tokens.input == 10 and message.tokens.output == 5
        assert message.error is None

    @pytest.mark.asyncio
    async def test_tool_state_machine(self):
        """tool-call -> tool-result: pending -> running -> completed"""
        session_id, message_id = await self.turn()
        events = tool_turn(("read", "call_1", {"file_path": "a.txt"}))
        events.insert(-1, StreamEvent(
            type=StreamEventType.TOOL_RESULT,
            tool_name="read",
            call_id="call_1",
            output=ToolOutput(title="a.txt", output="contents", metadata={"lines": 1}),
        ))

        await self.processor.process(session_id, message_id, replay(events), CancellationToken())

        updates = [p for p in self.of_type(EventType.PART_UPDATED) if isinstance(p, ToolPart)]
        assert [p.state.status for p in updates] == [
            ToolStatus.PENDING, ToolStatus.RUNNING, ToolStatus.COMPLETED
        ]
        part = self.store.find_tool_part(message_id, "call_1")
        assert part.state.output == "contents"
        assert part.state.title == "a.txt"
        assert part.state.input == {"file_path": "a.txt"}
        assert part.state.start_time < part.state.end_time
        assert self.store.get_message(message_id).finish_reason == "tool-calls"

    @pytest.mark.asyncio
    async def test_tool_error(self):
        session_id, message_id = await self.turn()
        events = tool_turn(("bash", "call_1", {"command": "false"}))
        events.insert(-1, StreamEvent(
            type=StreamEventType.TOOL_ERROR, call_id="call_1", error=RuntimeError("exit 1")
        ))

        result = await self.processor.process(session_id, message_id, replay(events), CancellationToken())

        part = self.store.find_tool_part(message_id, "call_1")
        assert result == ProcessResult.CONTINUE
        assert part.state.status == ToolStatus.FAILED
        assert part.state.error == "exit 1"

    @pytest.mark.asyncio
    async def test_unresolved_call_is_aborted(self):
        """流结束时未完成的调用标记为 failed"""
        session_id, message_id = await self.turn()
        await self.processor.process(
            session_id, message_id, replay(tool_turn(("bash", "call_1", {}))), CancellationToken()
        )

        part = self.store.find_tool_part(message_id, "call_1")
        assert part.state.status == ToolStatus.FAILED
        assert "aborted" in part.state.error
        assert self.store.get_message(message_id).sealed

    @pytest.mark.asyncio
    async def test_rejection_stops(self):
        session_id, message_id = await self.turn()
        events = tool_turn(("bash", "call_1", {}))
        events.insert(-1, StreamEvent(type=StreamEventType.TOOL_ERROR, call_id="call_1", error=RejectedError()))

        result = await self.processor.process(session_id, message_id, replay(events), CancellationToken())

        assert result == ProcessResult.STOP
        assert self.store.get_message(message_id).error is None

    @pytest.mark.asyncio
    async def test_retry_then_give_up(self, monkeypatch):
        """限流连续失败 6 次: 消息带错误封存并发布 session.error"""
        monkeypatch.setattr(processor_module, "retry_delay", lambda attempt: 0)
        session_id, message_id = await self.turn()
        calls = []

        def factory():
            calls.append(1)
            return failing(RateLimitError("429 rate_limit_exceeded"))()

        result = await self.processor.process(session_id, message_id, factory, CancellationToken())

        assert result == ProcessResult.STOP
        assert len(calls) == 6
        message = self.store.get_message(message_id)
        assert message.sealed
        assert "rate_limit" in message.error
        errors = self.of_type(EventType.SESSION_ERROR)
        assert len(errors) == 1 and errors[0]["session_id"] == session_id
        statuses = [s["status"] for s in self.of_type(EventType.SESSION_STATUS)]
        assert statuses.count("retry") == 5

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, monkeypatch):
        monkeypatch.setattr(processor_module, "retry_delay", lambda attempt: 0)
        session_id, message_id = await self.turn()
        streams = [
            failing(Exception("server overloaded")),
            failing(asyncio.TimeoutError()),
            replay(text_turn("done")),
        ]

        result = await self.processor.process(
            session_id, message_id, lambda: streams.pop(0)(), CancellationToken()
        )

        assert result == ProcessResult.CONTINUE
        message = self.store.get_message(message_id)
        assert message.error is None and message.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self):
        session_id, message_id = await self.turn()
        calls = []

        def factory():
            calls.append(1)
            return failing(ValueError("invalid api key"))()

        result = await self.processor.process(session_id, message_id, factory, CancellationToken())

        assert result == ProcessResult.STOP
        assert len(calls) == 1
        assert self.store.get_message(message_id).error == "invalid api key"

    @pytest.mark.asyncio
    async def test_error_event(self):
        session_id, message_id = await self.turn()
        events = [StreamEvent(type=StreamEventType.START_STEP),
                  StreamEvent(type=StreamEventType.ERROR, error=ValueError("content policy"))]

        result = await self.processor.process(session_id, message_id, replay(events), CancellationToken())

        assert result == ProcessResult.STOP
        assert self.store.get_message(message_id).error == "content policy"

    @pytest.mark.asyncio
    async def test_cancellation(self):
        """取消不记录错误, 悬挂的工具调用标记为中止"""
        session_id, message_id = await self.turn()
        token = CancellationToken()
        events = [
            StreamEvent(type=StreamEventType.START_STEP),
            StreamEvent(type=StreamEventType.TOOL_CALL, tool_name="bash", call_id="call_1", input={}),
            HANG,
        ]
        task = asyncio.ensure_future(
            self.processor.process(session_id, message_id, replay(events), token)
        )
        while self.store.find_tool_part(message_id, "call_1") is None:
            await asyncio.sleep(0)
        token.cancel()
        result = await asyncio.wait_for(task, timeout=1)

        assert result == ProcessResult.STOP
        message = self.store.get_message(message_id)
        assert message.sealed and message.error is None
        part = self.store.find_tool_part(message_id, "call_1")
        assert part.state.status == ToolStatus.FAILED
        assert part.state.error == "Tool execution aborted"
        assert self.of_type(EventType.SESSION_ERROR) == []

    @pytest.mark.asyncio
    async def test_cancellation_during_backoff(self, monkeypatch):
        monkeypatch.setattr(processor_module, "retry_delay", lambda attempt: 60)
        session_id, message_id = await self.turn()
        token = CancellationToken()
        task = asyncio.ensure_future(self.processor.process(
            session_id, message_id, failing(Exception("overloaded")), token
        ))
        while not self.of_type(EventType.SESSION_STATUS):
            await asyncio.sleep(0)
        token.cancel()

        assert await asyncio.wait_for(task, timeout=1) == ProcessResult.STOP
        assert self.store.get_message(message_id).error is None
