"""
测试 Prompt 循环
"""
import asyncio

import pytest
from pydantic import BaseModel

from nano_code.config_loader import AgentConfig
from nano_code.core.llm_client import StreamEvent, StreamEventType
from nano_code.core.types import AssistantMessage, EventType, ToolPart, ToolStatus, UserMessage
from nano_code.tools.base import Tool, ToolOutput, ToolRegistry

from .conftest import HANG, text_turn, tool_turn


class EchoParams(BaseModel):
    text: str


class EchoTool(Tool):
    """回显工具, 执行前请求 echo 权限"""

    def __init__(self):
        super().__init__(name="echo", description="Echo the text back", parameters=EchoParams)

    async def execute(self, args, ctx):
        await ctx.ask("echo", [args.text], {"text": args.text}, [args.text])
        await ctx.metadata("echoing", {"progress": 1})
        return ToolOutput(title=f"echo {args.text}", output=args.text)


def echo_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(EchoTool())
    return registry


def collect(runtime, *kinds):
    seen = []

    async def record(event):
        if event.type in kinds:
            seen.append(event.data)
    runtime.bus.on_all(record)
    return seen


class TestPromptLoop:
    """测试回合调度"""

    @pytest.mark.asyncio
    async def test_text_reply(self, make_runtime, fake_llm):
        fake_llm.add(text_turn("Hi there!"))
        runtime = make_runtime()
        statuses = collect(runtime, EventType.SESSION_STATUS)
        session = await runtime.create_session()

        reply = await runtime.prompt(session.id, "hello")

        assert isinstance(reply, AssistantMessage)
        assert reply.finish_reason == "stop" and reply.sealed
        request = fake_llm.requests[0]
        assert request.messages == [{"role": "user", "content": "hello"}]
        assert request.system and "Working directory" in request.system[1]
        assert statuses[0]["status"] == "running" and statuses[-1]["status"] == "idle"
        assert runtime.store.require_session(session.id).updated_at > session.updated_at

    @pytest.mark.asyncio
    async def test_tool_loop(self, make_runtime, fake_llm):
        """模型请求工具后继续循环, 工具结果进入下一次请求"""
        fake_llm.add(tool_turn(("echo", "call_1", {"text": "pong"})), text_turn("done"))
        runtime = make_runtime(registry=echo_registry())
        session = await runtime.create_session()

        reply = await runtime.prompt(session.id, "ping")

        messages = runtime.store.list_messages(session.id)
        assert [m.role for m in messages] == ["user", "assistant", "assistant"]
        part = runtime.store.find_tool_part(messages[1].id, "call_1")
        assert part.state.status == ToolStatus.COMPLETED
        assert part.state.output == "pong"
        assert part.state.metadata["progress"] == 1
        assert reply.id == messages[2].id

        second = fake_llm.requests[1].messages
        assert second[1]["tool_calls"][0]["function"]["name"] == "echo"
        assert second[2] == {"role": "tool", "tool_call_id": "call_1", "content": "pong"}
        assert [t.name for t in fake_llm.requests[0].tools] == ["echo"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, make_runtime, fake_llm):
        fake_llm.add(tool_turn(("missing", "call_1", {})), text_turn("sorry"))
        runtime = make_runtime(registry=echo_registry())
        session = await runtime.create_session()

        await runtime.prompt(session.id, "go")

        first = runtime.store.list_messages(session.id)[1]
        part = runtime.store.find_tool_part(first.id, "call_1")
        assert part.state.status == ToolStatus.FAILED
        assert "Unknown tool" in part.state.error
        assert len(fake_llm.requests) == 2

    @pytest.mark.asyncio
    async def test_step_limit(self, make_runtime, fake_llm):
        fake_llm.add(*(tool_turn(("echo", f"call_{i}", {"text": "x"})) for i in range(3)))
        runtime = make_runtime(registry=echo_registry(), agent={"build": AgentConfig(steps=2)})
        session = await runtime.create_session()

        await runtime.prompt(session.id, "loop forever")

        assistants = [m for m in runtime.store.list_messages(session.id) if isinstance(m, AssistantMessage)]
        assert len(assistants) == 2
        assert len(fake_llm.scripts) == 1

    @pytest.mark.asyncio
    async def test_disabled_tools_not_offered(self, make_runtime, fake_llm):
        fake_llm.add(text_turn("ok"))
        runtime = make_runtime(permission={"edit": "deny"})
        session = await runtime.create_session()

        await runtime.prompt(session.id, "hi")

        offered = {t.name for t in fake_llm.requests[0].tools}
        assert "read" in offered and "bash" in offered
        assert not offered & {"edit", "write", "apply_patch"}

    @pytest.mark.asyncio
    async def test_stream_error(self, make_runtime, fake_llm):
        """致命错误: 消息带错误封存, 发布 session.error, 状态为 error"""
        fake_llm.add(ValueError("invalid api key"))
        runtime = make_runtime()
        errors = collect(runtime, EventType.SESSION_ERROR)
        statuses = collect(runtime, EventType.SESSION_STATUS)
        session = await runtime.create_session()

        reply = await runtime.prompt(session.id, "hello")

        assert reply.error == "invalid api key"
        assert errors[0]["session_id"] == session.id
        assert statuses[-1]["status"] == "error"

    @pytest.mark.asyncio
    async def test_uncaught_exception(self, make_runtime, fake_llm, monkeypatch):
        fake_llm.add(text_turn("ok"))
        runtime = make_runtime()
        errors = collect(runtime, EventType.SESSION_ERROR)
        session = await runtime.create_session()

        async def broken(session_id):
            raise RuntimeError("disk full")
        monkeypatch.setattr(runtime.compaction, "prune", broken)

        assert await runtime.prompt(session.id, "hello") is None
        assert errors == [{"session_id": session.id, "error": "disk full"}]
        assert not runtime.loop.busy(session.id)


class TestCancellation:
    """测试单一生成与取消"""

    @pytest.mark.asyncio
    async def test_new_prompt_cancels_previous(self, make_runtime, fake_llm):
        fake_llm.add([StreamEvent(type=StreamEventType.START_STEP), HANG], text_turn("second answer"))
        runtime = make_runtime()
        session = await runtime.create_session()

        first_task = asyncio.ensure_future(runtime.prompt(session.id, "first"))
        while not fake_llm.requests:
            await asyncio.sleep(0)
        second = await runtime.prompt(session.id, "second")
        first = await asyncio.wait_for(first_task, timeout=1)

        assert first.sealed and first.error is None
        assert second.finish_reason == "stop"
        assert first.completed_at < second.created_at
        roles = [m.role for m in runtime.store.list_messages(session.id)]
        assert roles == ["user", "assistant", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_cancel(self, make_runtime, fake_llm):
        fake_llm.add([StreamEvent(type=StreamEventType.START_STEP), HANG])
        runtime = make_runtime()
        statuses = collect(runtime, EventType.SESSION_STATUS)
        session = await runtime.create_session()

        task = asyncio.ensure_future(runtime.prompt(session.id, "hello"))
        while not fake_llm.requests:
            await asyncio.sleep(0)

        assert await runtime.cancel(session.id)
        reply = await asyncio.wait_for(task, timeout=1)
        assert reply.error is None and reply.sealed
        assert statuses[-1]["status"] == "idle"
        assert not await runtime.cancel(session.id)

    @pytest.mark.asyncio
    async def test_cancel_rejects_pending_permission(self, make_runtime, fake_llm):
        fake_llm.add(tool_turn(("echo", "call_1", {"text": "hi"})))
        runtime = make_runtime(registry=echo_registry(), permission={"echo": "ask"})
        session = await runtime.create_session()

        task = asyncio.ensure_future(runtime.prompt(session.id, "hello"))
        while not runtime.permissions.list(session.id):
            await asyncio.sleep(0)
        await runtime.cancel(session.id)
        await asyncio.wait_for(task, timeout=1)

        assert runtime.permissions.list() == []
        assert not runtime.loop.busy(session.id)


class TestPermissionFlow:
    """测试工具执行中的审批"""

    @pytest.mark.asyncio
    async def test_reject_stops_loop(self, make_runtime, fake_llm):
        fake_llm.add(tool_turn(("echo", "call_1", {"text": "hi"})), text_turn("unused"))
        runtime = make_runtime(registry=echo_registry(), permission={"echo": "ask"})

        async def reject(event):
            await runtime.reply_permission(event.data.id, "reject", "not now")
        runtime.bus.on(EventType.PERMISSION_ASKED, reject)
        session = await runtime.create_session()

        await runtime.prompt(session.id, "hello")

        assistant = runtime.store.list_messages(session.id)[1]
        part = runtime.store.find_tool_part(assistant.id, "call_1")
        assert part.state.status == ToolStatus.FAILED
        assert "not now" in part.state.error
        assert len(fake_llm.requests) == 1

    @pytest.mark.asyncio
    async def test_approve_once(self, make_runtime, fake_llm):
        fake_llm.add(tool_turn(("echo", "call_1", {"text": "hi"})), text_turn("done"))
        runtime = make_runtime(registry=echo_registry(), permission={"echo": "ask"})
        asked = []

        async def approve(event):
            asked.append(event.data)
            await runtime.reply_permission(event.data.id, "once")
        runtime.bus.on(EventType.PERMISSION_ASKED, approve)
        session = await runtime.create_session()

        await runtime.prompt(session.id, "hello")

        assistant = runtime.store.list_messages(session.id)[1]
        assert asked[0].tool.call_id == "call_1"
        assert asked[0].tool.message_id == assistant.id
        part = runtime.store.find_tool_part(assistant.id, "call_1")
        assert part.state.status == ToolStatus.COMPLETED
        assert len(fake_llm.requests) == 2

    @pytest.mark.asyncio
    async def test_denied_by_rule(self, make_runtime, fake_llm):
        """静态 deny 作为工具失败返回给模型, 循环继续"""
        fake_llm.add(tool_turn(("echo", "call_1", {"text": "secret"})), text_turn("ok"))
        runtime = make_runtime(registry=echo_registry(), permission={"echo": {"*": "allow", "secret": "deny"}})
        session = await runtime.create_session()

        await runtime.prompt(session.id, "hello")

        assistant = runtime.store.list_messages(session.id)[1]
        part = runtime.store.find_tool_part(assistant.id, "call_1")
        assert part.state.status == ToolStatus.FAILED
        assert "prevents you from using" in part.state.error
        assert len(fake_llm.requests) == 2
