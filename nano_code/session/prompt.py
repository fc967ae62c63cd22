"""
Prompt 循环 - 每个会话的回合调度器

一次 prompt: 创建用户消息 -> 循环 (构建上下文, 调用模型, 执行工具) -> 直到模型不再请求工具。
每个会话同一时间至多一个生成; 新的生成会先取消旧的。
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core import permission as rules
from ..core.agent import AgentInfo, AgentRegistry
from ..core.bus import EventBus
from ..core.cancel import CancellationToken
from ..core.llm_client import LLMClient, StreamEvent, StreamRequest
from ..core.permission import PermissionEngine
from ..core.provider import ModelInfo, ModelRef, ProviderRegistry
from ..core.snapshot import NullSnapshot, SnapshotService
from ..core.store import ConversationStore
from ..core.types import (
    FINISH_TOOL_CALLS, AssistantMessage, EventType, Message, ToolPart, ToolRef, ToolStatus, UserMessage,
)
from ..tools.base import Tool, ToolContext, ToolRegistry
from . import llm
from .compaction import SessionCompaction, is_overflow
from .message import to_model_messages
from .processor import ProcessResult, StreamProcessor
from .status import SessionStatus
from .summary import summarize
from .system import SystemPrompt
from .title import SessionTitle

logger = logging.getLogger(__name__)

__all__ = ["SessionPrompt", "to_model_messages"]


@dataclass
class _Generation:
    """一次进行中的生成: 取消令牌 + 结束信号"""
    token: CancellationToken = field(default_factory=CancellationToken)
    done: asyncio.Event = field(default_factory=asyncio.Event)


def _latest(messages: List[Message], kind) -> Optional[int]:
    for index in range(len(messages) - 1, -1, -1):
        if isinstance(messages[index], kind):
            return index
    return None


class SessionPrompt:
    """会话 Prompt 循环"""

    def __init__(
        self,
        store: ConversationStore,
        bus: EventBus,
        permissions: PermissionEngine,
        agents: AgentRegistry,
        providers: ProviderRegistry,
        registry: ToolRegistry,
        client: LLMClient,
        processor: StreamProcessor,
        compaction: SessionCompaction,
        status: SessionStatus,
        system: Optional[SystemPrompt] = None,
        snapshot: Optional[SnapshotService] = None,
        title: Optional[SessionTitle] = None,
        max_steps: int = 50,
        max_tokens: Optional[int] = None
    ):
        self.store = store
        self.bus = bus
        self.permissions = permissions
        self.agents = agents
        self.providers = providers
        self.registry = registry
        self.client = client
        self.processor = processor
        self.compaction = compaction
        self.status = status
        self.system = system or SystemPrompt()
        self.snapshot = snapshot or NullSnapshot()
        self.title = title
        self.max_steps = max_steps
        self.max_tokens = max_tokens

        self._controllers: Dict[str, _Generation] = {}

    # ------------------------------------------------------------------
    # 取消控制
    # ------------------------------------------------------------------

    def busy(self, session_id: str) -> bool:
        return session_id in self._controllers

    async def _start(self, session_id: str) -> _Generation:
        """取消该会话已有的生成并等待其退出, 然后登记新的生成"""
        while True:
            previous = self._controllers.get(session_id)
            if previous is None:
                break
            logger.info(f"cancelling in-flight generation for session {session_id}")
            previous.token.cancel()
            await self.permissions.reject_session(session_id)
            await previous.done.wait()
        generation = _Generation()
        self._controllers[session_id] = generation
        return generation

    def _release(self, session_id: str, generation: _Generation) -> None:
        if self._controllers.get(session_id) is generation:
            del self._controllers[session_id]
        generation.done.set()

    async def cancel(self, session_id: str) -> bool:
        """取消会话的当前生成; 没有生成时无操作"""
        generation = self._controllers.get(session_id)
        if generation is None:
            return False
        generation.token.cancel()
        await self.permissions.reject_session(session_id)
        return True

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    def _resolve(self, session_id: str, agent: Optional[str], model: Optional[ModelRef]):
        session = self.store.require_session(session_id)
        info = self.agents.require(agent or session.agent or self.agents.default_agent())
        return session, info, self.providers.resolve(model or info.model)

    async def prompt(
        self,
        session_id: str,
        content: str,
        agent: Optional[str] = None,
        model: Optional[ModelRef] = None
    ) -> Optional[AssistantMessage]:
        """
        发送用户消息并运行循环

        Returns:
            最后一条助手消息; 循环因未捕获异常终止时返回 None
        """
        session, info, model_info = self._resolve(session_id, agent, model)
        generation = await self._start(session_id)
        try:
            await self.store.create_user_message(session_id, content)
            await self.store.touch_session(session_id)

            title_task = None
            if self.title is not None:
                title_task = asyncio.ensure_future(self.title.ensure(session_id, content, model_info))
            try:
                return await self._loop(session.id, session.directory, info, model_info, generation.token)
            finally:
                if title_task is not None:
                    await title_task
        finally:
            self._release(session_id, generation)

    async def compact(self, session_id: str, agent: Optional[str] = None) -> ProcessResult:
        """手动压缩会话"""
        _, _, model_info = self._resolve(session_id, agent, None)
        generation = await self._start(session_id)
        try:
            await self.status.running(session_id)
            try:
                result = await self.compaction.process(session_id, model_info, generation.token, auto=False)
                await summarize(self.store, self.bus, self.snapshot, session_id)
            except Exception as e:
                logger.exception(f"compaction failed for session {session_id}")
                await self.bus.publish(EventType.SESSION_ERROR, {"session_id": session_id, "error": str(e)})
                await self.status.error(session_id, str(e))
                return ProcessResult.STOP
            await self.status.idle(session_id)
            return result
        finally:
            self._release(session_id, generation)

    # ------------------------------------------------------------------
    # 循环
    # ------------------------------------------------------------------

    def _tools(self, agent: AgentInfo, model: ModelInfo) -> List[Tool]:
        tools = self.registry.tools(model.id, agent)
        blocked = rules.disabled([t.id for t in tools], agent.permission)
        return [t for t in tools if t.id not in blocked]

    def _done(self, messages: List[Message]) -> bool:
        """最新的助手回合已正常结束且晚于最新用户消息"""
        user = _latest(messages, UserMessage)
        assistant = _latest(messages, AssistantMessage)
        if assistant is None or (user is not None and assistant < user):
            return False
        message = messages[assistant]
        if not message.sealed or not message.finish_reason or message.finish_reason == FINISH_TOOL_CALLS:
            return False
        return not any(
            isinstance(p, ToolPart) and p.state.status in (ToolStatus.PENDING, ToolStatus.RUNNING)
            for p in self.store.list_parts(message.id)
        )

    def _overflowed(self, messages: List[Message], model: ModelInfo) -> bool:
        for message in reversed(messages):
            if isinstance(message, AssistantMessage) and message.sealed:
                return not message.is_summary and not message.error and is_overflow(message.tokens, model)
        return False

    def _context(self, session_id: str, message_id: str, agent: AgentInfo, directory: str, abort: CancellationToken):
        def build(event: StreamEvent) -> ToolContext:
            call_id = event.call_id

            async def ask(permission: str, patterns: List[str], metadata: Dict[str, Any], always: List[str]) -> None:
                await self.permissions.ask(
                    session_id, permission, patterns, metadata, always,
                    ruleset=agent.permission,
                    tool=ToolRef(message_id, call_id),
                )

            async def report(title: Optional[str], metadata: Dict[str, Any]) -> None:
                part = self.store.find_tool_part(message_id, call_id)
                if part is None or part.state.status != ToolStatus.RUNNING:
                    return

                def update(part):
                    if part.state.status != ToolStatus.RUNNING:
                        return part
                    if title:
                        part.state.title = title
                    part.state.metadata = {**part.state.metadata, **metadata}
                    return part
                await self.store.update_part(part.id, update)

            return ToolContext(
                session_id=session_id,
                message_id=message_id,
                agent=agent.name,
                directory=directory,
                abort=abort,
                call_id=call_id,
                on_metadata=report,
                on_ask=ask,
            )
        return build

    async def _loop(
        self,
        session_id: str,
        directory: str,
        agent: AgentInfo,
        model: ModelInfo,
        abort: CancellationToken
    ) -> Optional[AssistantMessage]:
        await self.status.running(session_id)
        limit = agent.steps or self.max_steps
        step = 0
        try:
            system = await self.system.build(agent, model, directory)
            while not abort.cancelled:
                messages = self.store.list_messages(session_id)
                if self._done(messages):
                    logger.debug(f"session {session_id} loop finished after {step} steps")
                    break

                if self._overflowed(messages, model):
                    result = await self.compaction.process(session_id, model, abort, auto=True)
                    if result == ProcessResult.STOP:
                        break
                    continue

                if step >= limit:
                    logger.warning(f"session {session_id} reached step limit {limit}")
                    break
                step += 1

                tools = self._tools(agent, model)
                request = StreamRequest(
                    model=model,
                    messages=to_model_messages(self.store, session_id, messages),
                    system=system,
                    tools=[t.to_schema() for t in tools],
                    temperature=agent.temperature,
                    top_p=agent.top_p,
                    max_tokens=self.max_tokens,
                )
                assistant = await self.store.create_assistant_message(session_id, agent=agent.name)
                context = self._context(session_id, assistant.id, agent, directory, abort)
                result = await self.processor.process(
                    session_id,
                    assistant.id,
                    lambda: llm.stream(self.client, request, tools, context),
                    abort,
                )
                if result == ProcessResult.STOP:
                    break

            await self.compaction.prune(session_id)
            await summarize(self.store, self.bus, self.snapshot, session_id)
        except Exception as e:
            logger.exception(f"prompt loop failed for session {session_id}")
            await self.bus.publish(EventType.SESSION_ERROR, {"session_id": session_id, "error": str(e)})
            await self.status.error(session_id, str(e))
            return None

        last = self._last_assistant(session_id)
        if last is not None and last.error and not abort.cancelled:
            await self.status.error(session_id, last.error)
        else:
            await self.status.idle(session_id)
        return last

    def _last_assistant(self, session_id: str) -> Optional[AssistantMessage]:
        for message in reversed(self.store.list_messages(session_id)):
            if isinstance(message, AssistantMessage):
                return message
        return None
