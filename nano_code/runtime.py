"""
运行时 - 从配置组装全部组件
"""
import hashlib
import logging
import os
from typing import List, Optional, Union

from .config_loader import Config, load_config
from .core.agent import AgentRegistry
from .core.bus import EventBus
from .core.llm_client import LLMClient
from .core.permission import PermissionEngine
from .core.provider import ModelRef, ProviderRegistry
from .core.snapshot import NullSnapshot, SnapshotService
from .core.store import ConversationStore, JsonStorage, MemoryStorage
from .core.types import AssistantMessage, PermissionReply, PermissionRequest, Session
from .log import setup_logging
from .session.compaction import SessionCompaction
from .session.processor import ProcessResult, StreamProcessor
from .session.prompt import SessionPrompt
from .session.status import SessionStatus
from .session.system import SystemPrompt
from .session.title import SessionTitle
from .tools.base import ToolRegistry
from .tools.builtin import register_builtin_tools

logger = logging.getLogger(__name__)


def project_id(directory: str) -> str:
    return hashlib.sha1(os.path.abspath(directory).encode("utf-8")).hexdigest()[:16]


class Runtime:
    """nano-code 运行时"""

    def __init__(
        self,
        config: Config,
        directory: str = ".",
        client: Optional[LLMClient] = None,
        snapshot: Optional[SnapshotService] = None,
        registry: Optional[ToolRegistry] = None
    ):
        self.config = config
        self.directory = os.path.abspath(directory)

        self.bus = EventBus()
        storage = JsonStorage(os.path.expanduser(config.storage.path)) if config.storage.path else MemoryStorage()
        self.store = ConversationStore(self.bus, storage)
        self.store.load()
        self.permissions = PermissionEngine(self.bus)
        self.providers = ProviderRegistry.from_config(config)
        self.agents = AgentRegistry.from_config(config)
        self.client = client or LLMClient()
        self.snapshot = snapshot or NullSnapshot()
        self.status = SessionStatus(self.bus)

        if registry is None:
            registry = ToolRegistry()
            register_builtin_tools(registry)
        self.registry = registry

        self.processor = StreamProcessor(self.store, self.bus, self.status, self.snapshot)
        self.compaction = SessionCompaction(
            self.store, self.bus, self.processor, self.client, self.agents, self.providers
        )
        title = SessionTitle(self.store, self.client, self.agents, self.providers) if config.auto_title else None
        self.loop = SessionPrompt(
            store=self.store,
            bus=self.bus,
            permissions=self.permissions,
            agents=self.agents,
            providers=self.providers,
            registry=self.registry,
            client=self.client,
            processor=self.processor,
            compaction=self.compaction,
            status=self.status,
            system=SystemPrompt(config.instructions),
            snapshot=self.snapshot,
            title=title,
            max_steps=config.limits.max_steps,
            max_tokens=config.limits.max_tokens,
        )

    @classmethod
    def from_config(cls, directory: str = ".", config: Optional[Config] = None, **kwargs) -> "Runtime":
        """加载配置 (未提供时) 并初始化日志"""
        config = config or load_config(directory)
        setup_logging(config.logging.level, config.logging.file)
        return cls(config, directory, **kwargs)

    async def create_session(self, title: Optional[str] = None, agent: Optional[str] = None) -> Session:
        return await self.store.create_session(project_id(self.directory), self.directory, title, agent)

    def sessions(self) -> List[Session]:
        return self.store.list_sessions(project_id(self.directory))

    async def remove_session(self, session_id: str) -> None:
        await self.loop.cancel(session_id)
        self.permissions.clear_session(session_id)
        await self.store.remove_session(session_id)

    async def prompt(
        self,
        session_id: str,
        content: str,
        agent: Optional[str] = None,
        model: Optional[str] = None
    ) -> Optional[AssistantMessage]:
        return await self.loop.prompt(session_id, content, agent, ModelRef.parse(model) if model else None)

    async def cancel(self, session_id: str) -> bool:
        return await self.loop.cancel(session_id)

    async def compact(self, session_id: str) -> ProcessResult:
        return await self.loop.compact(session_id)

    def permissions_pending(self, session_id: Optional[str] = None) -> List[PermissionRequest]:
        return self.permissions.list(session_id)

    async def reply_permission(
        self,
        request_id: str,
        reply: Union[PermissionReply, str],
        message: Optional[str] = None
    ) -> bool:
        return await self.permissions.reply(request_id, reply, message)
