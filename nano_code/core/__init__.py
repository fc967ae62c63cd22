"""Core components"""
from .types import *
from .bus import EventBus
from .cancel import CANCELLED, CancellationToken
from .errors import (
    NanoCodeError, DeniedError, RejectedError, ToolArgumentError,
    AgentNotFoundError, ModelNotFoundError, SessionNotFoundError,
    RecordNotFoundError, ConfigError,
)
from .store import ConversationStore, MemoryStorage, JsonStorage
from .permission import PermissionEngine
from .provider import ModelInfo, ModelRef, ProviderRegistry
from .agent import AgentInfo, AgentRegistry
from .llm_client import LLMClient, StreamEvent, StreamEventType, StreamRequest
from .snapshot import SnapshotService, NullSnapshot
