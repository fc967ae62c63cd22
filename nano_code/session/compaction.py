"""
上下文压缩

- is_overflow: 判断 token 用量是否逼近模型上下文上限
- process:     让 compaction agent 按固定模板总结会话, 生成摘要回合
- prune:       把较早的已完成工具输出替换为占位符, 回收上下文预算
"""
import logging
import math
from typing import List, Optional

from ..core import identifier
from ..core.agent import AgentRegistry
from ..core.bus import EventBus
from ..core.cancel import CancellationToken
from ..core.llm_client import LLMClient, StreamRequest
from ..core.prompts import COMPACTION_CONTINUE, COMPACTION_TEMPLATE
from ..core.provider import ModelInfo, ProviderRegistry
from ..core.store import ConversationStore
from ..core.types import AssistantMessage, EventType, TokenUsage, ToolPart, ToolStatus, UserMessage
from . import llm
from .message import summary_text, to_model_messages
from .processor import ProcessResult, StreamProcessor

logger = logging.getLogger(__name__)

COMPACTION_BUFFER = 20_000
OUTPUT_TOKEN_MAX = 32_000
PRUNE_MINIMUM = 20_000
PRUNE_PROTECT = 40_000
PRUNED_OUTPUT = "[output pruned for context management]"
EMPTY_SUMMARY = "Compaction produced an empty summary"


def estimate_tokens(text: str) -> int:
    """粗略估计: 每 4 个 UTF-8 字节一个 token"""
    return math.ceil(len((text or "").encode("utf-8")) / 4)


def is_overflow(tokens: Optional[TokenUsage], model: ModelInfo) -> bool:
    """input + output 达到 context - min(缓冲, 输出上限) 时溢出; 上下文未知时从不溢出"""
    if tokens is None or not model.context:
        return False
    reserved = min(COMPACTION_BUFFER, model.output or OUTPUT_TOKEN_MAX)
    return tokens.input + tokens.output >= model.context - reserved


class SessionCompaction:
    """会话压缩"""

    def __init__(
        self,
        store: ConversationStore,
        bus: EventBus,
        processor: StreamProcessor,
        client: LLMClient,
        agents: AgentRegistry,
        providers: ProviderRegistry
    ):
        self.store = store
        self.bus = bus
        self.processor = processor
        self.client = client
        self.agents = agents
        self.providers = providers

    async def process(
        self,
        session_id: str,
        model: ModelInfo,
        abort: CancellationToken,
        auto: bool = False
    ) -> ProcessResult:
        """
        生成摘要回合

        Args:
            model: 会话当前使用的模型 (compaction agent 未指定模型时使用)
            auto: 自动压缩时追加一条让 agent 继续工作的用户消息
        """
        agent = self.agents.require("compaction")
        if agent.model:
            model = self.providers.resolve(agent.model)

        messages = to_model_messages(self.store, session_id)
        messages.append({"role": "user", "content": COMPACTION_TEMPLATE})
        message = await self.store.create_assistant_message(session_id, agent=agent.name, is_summary=True)
        logger.info(f"compacting session {session_id} (auto={auto})")

        request = StreamRequest(
            model=model,
            messages=messages,
            system=[agent.prompt] if agent.prompt else [],
            temperature=agent.temperature,
            top_p=agent.top_p,
        )
        result = await self.processor.process(
            session_id,
            message.id,
            lambda: llm.stream(self.client, request, [], lambda event: None),
            abort,
        )
        sealed = self.store.get_message(message.id)
        if result != ProcessResult.CONTINUE or sealed.error:
            return ProcessResult.STOP
        if not summary_text(self.store, sealed):
            logger.warning(f"compaction produced no summary for session {session_id}")

            def fail(draft):
                draft.error = EMPTY_SUMMARY
                return draft
            await self.store.update_message(message.id, fail)
            await self.bus.publish(EventType.SESSION_ERROR, {
                "session_id": session_id,
                "message_id": message.id,
                "error": EMPTY_SUMMARY,
            })
            return ProcessResult.STOP

        if auto:
            await self.store.create_user_message(session_id, COMPACTION_CONTINUE)
        await self.bus.publish(EventType.SESSION_COMPACTED, {
            "session_id": session_id,
            "message_id": message.id,
            "auto": auto,
        })
        return result

    async def prune(self, session_id: str) -> int:
        """
        修剪旧工具输出

        从新到旧遍历, 跳过最近两个用户回合, 遇到摘要消息停止;
        已完成工具输出累计超过 PRUNE_PROTECT 之后的更早输出进入待修剪列表,
        可回收总量超过 PRUNE_MINIMUM 才真正改写。

        Returns:
            被修剪的片段数
        """
        total = 0
        reclaimable = 0
        queued: List[ToolPart] = []
        turns = 0
        done = False
        for message in reversed(self.store.list_messages(session_id)):
            if isinstance(message, UserMessage):
                turns += 1
            if turns < 2:
                continue
            if isinstance(message, AssistantMessage) and message.is_summary:
                break
            for part in reversed(self.store.list_parts(message.id)):
                if not isinstance(part, ToolPart) or part.state.status != ToolStatus.COMPLETED:
                    continue
                if part.state.metadata.get("compacted"):
                    done = True
                    break
                estimate = estimate_tokens(part.state.output or "")
                total += estimate
                if total > PRUNE_PROTECT:
                    reclaimable += estimate
                    queued.append(part)
            if done:
                break

        logger.debug(f"prune session {session_id}: found {reclaimable} tokens in {len(queued)} parts")
        if reclaimable <= PRUNE_MINIMUM:
            return 0

        compacted = identifier.now_ms()

        def clear(part):
            part.state.output = PRUNED_OUTPUT
            part.state.metadata = {**part.state.metadata, "compacted": compacted}
            return part
        for part in queued:
            await self.store.update_part(part.id, clear)
        logger.info(f"pruned {len(queued)} tool outputs ({reclaimable} tokens) in session {session_id}")
        return len(queued)
