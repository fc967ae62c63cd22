"""
会话标题生成
"""
import logging
import re
from typing import Optional

from ..core.agent import AgentRegistry
from ..core.llm_client import LLMClient, StreamRequest
from ..core.provider import ModelInfo, ProviderRegistry
from ..core.store import ConversationStore
from ..core.types import DEFAULT_SESSION_TITLE
from .llm import collect_text

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 60


def clean_title(text: str) -> str:
    """去掉思考块与引号, 取第一行非空文本, 截断到 60 字符"""
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL)
    line = next((l.strip() for l in text.splitlines() if l.strip()), "")
    line = line.strip("\"'`")
    if len(line) > MAX_TITLE_LENGTH:
        line = line[:MAX_TITLE_LENGTH - 3].rstrip() + "..."
    return line


class SessionTitle:
    """用隐藏的 title agent 为新会话生成标题"""

    def __init__(
        self,
        store: ConversationStore,
        client: LLMClient,
        agents: AgentRegistry,
        providers: ProviderRegistry
    ):
        self.store = store
        self.client = client
        self.agents = agents
        self.providers = providers

    async def ensure(self, session_id: str, content: str, model: ModelInfo) -> Optional[str]:
        """会话仍是默认标题时生成标题; 失败只记录日志"""
        session = self.store.get_session(session_id)
        if session is None or session.title != DEFAULT_SESSION_TITLE:
            return None
        agent = self.agents.get("title")
        if agent is None:
            return None
        if agent.model:
            model = self.providers.resolve(agent.model)

        request = StreamRequest(
            model=model,
            system=[agent.prompt] if agent.prompt else [],
            messages=[{
                "role": "user",
                "content": f"Generate a title for this conversation:\n\n{content}",
            }],
            temperature=agent.temperature,
        )
        try:
            title = clean_title(await collect_text(self.client, request))
        except Exception as e:
            logger.warning(f"title generation failed for session {session_id}: {e}")
            return None
        if not title:
            return None
        await self.store.set_title(session_id, title)
        logger.info(f"session {session_id} titled {title!r}")
        return title
