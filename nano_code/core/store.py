"""
会话存储 - Session / Message / Part 的持久化与变更通知

写入是直写的: 内存副本为准, 同时写入存储驱动。
单条记录的读-改-写在记录级锁内完成。
"""
import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from . import identifier
from .bus import EventBus
from .errors import RecordNotFoundError, SessionNotFoundError
from .types import (
    AssistantMessage, EventType, FileDiff, Message, Part, Session, SessionSummary,
    StepFinishPart, StepStartPart, TextPart, TokenUsage, ToolPart, ToolState,
    UserMessage, DEFAULT_SESSION_TITLE, message_from_dict, part_from_dict,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Mutator = Callable[[T], T]


class MemoryStorage:
    """内存存储驱动"""

    def __init__(self):
        self._data: Dict[tuple, Any] = {}

    def read(self, key: List[str]) -> Optional[Any]:
        value = self._data.get(tuple(key))
        return copy.deepcopy(value)

    def write(self, key: List[str], content: Any) -> None:
        self._data[tuple(key)] = copy.deepcopy(content)

    def remove(self, key: List[str]) -> None:
        self._data.pop(tuple(key), None)

    def list(self, prefix: List[str]) -> List[str]:
        size = len(prefix)
        return sorted(
            key[size] for key in self._data
            if len(key) == size + 1 and list(key[:size]) == list(prefix)
        )


class JsonStorage:
    """JSON文件存储驱动 - 每条记录一个文件"""

    def __init__(self, root: str):
        self.root = Path(os.path.expanduser(root))

    def _resolve(self, key: List[str]) -> Path:
        return self.root.joinpath(*key).with_suffix(".json")

    def read(self, key: List[str]) -> Optional[Any]:
        path = self._resolve(key)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def write(self, key: List[str], content: Any) -> None:
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.parent / (path.name + ".tmp")
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(content, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)

    def remove(self, key: List[str]) -> None:
        path = self._resolve(key)
        if path.exists():
            path.unlink()

    def list(self, prefix: List[str]) -> List[str]:
        directory = self.root.joinpath(*prefix)
        if not directory.is_dir():
            return []
        return sorted(p.stem for p in directory.glob("*.json"))


def _order(record) -> tuple:
    return (record.created_at, record.id)


class ConversationStore:
    """会话存储"""

    def __init__(self, bus: EventBus, storage=None):
        self.bus = bus
        self.storage = storage or MemoryStorage()
        self._sessions: Dict[str, Session] = {}
        self._messages: Dict[str, Message] = {}
        self._session_messages: Dict[str, List[str]] = {}
        self._parts: Dict[str, Part] = {}
        self._message_parts: Dict[str, List[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, record_id: str) -> asyncio.Lock:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = self._locks[record_id] = asyncio.Lock()
        return lock

    def load(self) -> None:
        """从存储驱动恢复全部记录"""
        for session_id in self.storage.list(["session"]):
            data = self.storage.read(["session", session_id])
            if not data:
                continue
            self._sessions[session_id] = Session.from_dict(data)
            self._session_messages.setdefault(session_id, [])
            for message_id in self.storage.list(["message", session_id]):
                message = message_from_dict(self.storage.read(["message", session_id, message_id]))
                self._messages[message.id] = message
                self._session_messages[session_id].append(message.id)
                self._message_parts.setdefault(message.id, [])
                for part_id in self.storage.list(["part", message.id]):
                    part = part_from_dict(self.storage.read(["part", message.id, part_id]))
                    self._parts[part.id] = part
                    self._message_parts[message.id].append(part.id)
        logger.info(f"Loaded {len(self._sessions)} sessions from storage")

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def create_session(
        self,
        project_id: str,
        directory: str,
        title: Optional[str] = None,
        agent: Optional[str] = None
    ) -> Session:
        now = identifier.now_ms()
        session = Session(
            id=identifier.ascending("sess"),
            title=title or DEFAULT_SESSION_TITLE,
            project_id=project_id,
            directory=directory,
            agent=agent,
            created_at=now,
            updated_at=now,
        )
        self._sessions[session.id] = session
        self._session_messages[session.id] = []
        self.storage.write(["session", session.id], session.to_dict())
        await self.bus.publish(EventType.SESSION_CREATED, copy.deepcopy(session))
        return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def list_sessions(self, project_id: Optional[str] = None) -> List[Session]:
        """按最近更新排序"""
        sessions = [
            s for s in self._sessions.values()
            if project_id is None or s.project_id == project_id
        ]
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return copy.deepcopy(sessions)

    async def update_session(self, session_id: str, mutator: Mutator[Session]) -> Session:
        async with self._lock(session_id):
            current = self._sessions.get(session_id)
            if current is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            updated = mutator(copy.deepcopy(current))
            self._check_identity(current, updated)
            self._sessions[session_id] = updated
            self.storage.write(["session", session_id], updated.to_dict())
        await self.bus.publish(EventType.SESSION_UPDATED, copy.deepcopy(updated))
        return copy.deepcopy(updated)

    async def touch_session(self, session_id: str) -> Session:
        def touch(session: Session) -> Session:
            session.updated_at = identifier.now_ms()
            return session
        return await self.update_session(session_id, touch)

    async def set_title(self, session_id: str, title: str) -> Session:
        def retitle(session: Session) -> Session:
            session.title = title
            session.updated_at = identifier.now_ms()
            return session
        return await self.update_session(session_id, retitle)

    async def set_summary(self, session_id: str, summary: SessionSummary) -> Session:
        def summarize(session: Session) -> Session:
            session.summary = summary
            return session
        return await self.update_session(session_id, summarize)

    async def remove_session(self, session_id: str) -> None:
        async with self._lock(session_id):
            if session_id not in self._sessions:
                return
            for message_id in self._session_messages.pop(session_id, []):
                self._drop_message(session_id, message_id)
            del self._sessions[session_id]
            self.storage.remove(["session", session_id])
            self.storage.remove(["session_diff", session_id])
        await self.bus.publish(EventType.SESSION_DELETED, {"id": session_id})

    # ------------------------------------------------------------------
    # Message
    # ------------------------------------------------------------------

    async def create_user_message(self, session_id: str, content: str) -> UserMessage:
        message = UserMessage(
            id=identifier.ascending("msg"),
            session_id=session_id,
            content=content,
            created_at=identifier.now_ms(),
        )
        return await self._insert_message(message)

    async def create_assistant_message(
        self,
        session_id: str,
        agent: Optional[str] = None,
        is_summary: bool = False
    ) -> AssistantMessage:
        message = AssistantMessage(
            id=identifier.ascending("msg"),
            session_id=session_id,
            created_at=identifier.now_ms(),
            agent=agent,
            is_summary=is_summary,
        )
        return await self._insert_message(message)

    async def _insert_message(self, message: Message) -> Message:
        if message.session_id not in self._sessions:
            raise SessionNotFoundError(f"Session not found: {message.session_id}")
        self._messages[message.id] = message
        self._session_messages[message.session_id].append(message.id)
        self._message_parts[message.id] = []
        self.storage.write(["message", message.session_id, message.id], message.to_dict())
        await self.bus.publish(EventType.MESSAGE_CREATED, copy.deepcopy(message))
        return copy.deepcopy(message)

    def get_message(self, message_id: str) -> Optional[Message]:
        message = self._messages.get(message_id)
        return copy.deepcopy(message) if message else None

    def list_messages(self, session_id: str) -> List[Message]:
        """按创建时间排序"""
        messages = [self._messages[mid] for mid in self._session_messages.get(session_id, [])]
        messages.sort(key=_order)
        return copy.deepcopy(messages)

    async def update_message(self, message_id: str, mutator: Mutator[Message]) -> Message:
        """读取当前值 -> 生成新值 -> 写回, 返回更新后的消息"""
        async with self._lock(message_id):
            current = self._messages.get(message_id)
            if current is None:
                raise RecordNotFoundError(f"Message not found: {message_id}")
            updated = mutator(copy.deepcopy(current))
            self._check_identity(current, updated)
            self._messages[message_id] = updated
            self.storage.write(["message", updated.session_id, message_id], updated.to_dict())
        await self.bus.publish(EventType.MESSAGE_UPDATED, copy.deepcopy(updated))
        return copy.deepcopy(updated)

    async def remove_message(self, message_id: str) -> None:
        async with self._lock(message_id):
            message = self._messages.get(message_id)
            if message is None:
                return
            self._session_messages[message.session_id].remove(message_id)
            self._drop_message(message.session_id, message_id)
        await self.bus.publish(
            EventType.MESSAGE_DELETED,
            {"id": message_id, "session_id": message.session_id}
        )

    def _drop_message(self, session_id: str, message_id: str) -> None:
        for part_id in self._message_parts.pop(message_id, []):
            self._parts.pop(part_id, None)
            self.storage.remove(["part", message_id, part_id])
        self._messages.pop(message_id, None)
        self.storage.remove(["message", session_id, message_id])

    # ------------------------------------------------------------------
    # Part
    # ------------------------------------------------------------------

    async def create_text_part(self, message_id: str, text: str = "") -> TextPart:
        return await self._insert_part(TextPart(
            id=identifier.ascending("part"),
            message_id=message_id,
            session_id=self._session_of(message_id),
            created_at=identifier.now_ms(),
            text=text,
        ))

    async def create_tool_part(
        self,
        message_id: str,
        tool: str,
        call_id: Optional[str] = None,
        state: Optional[ToolState] = None
    ) -> ToolPart:
        return await self._insert_part(ToolPart(
            id=identifier.ascending("part"),
            message_id=message_id,
            session_id=self._session_of(message_id),
            created_at=identifier.now_ms(),
            tool=tool,
            call_id=call_id,
            state=state or ToolState(),
        ))

    async def create_step_start(self, message_id: str, snapshot: Optional[str] = None) -> StepStartPart:
        return await self._insert_part(StepStartPart(
            id=identifier.ascending("part"),
            message_id=message_id,
            session_id=self._session_of(message_id),
            created_at=identifier.now_ms(),
            snapshot=snapshot,
        ))

    async def create_step_finish(
        self,
        message_id: str,
        snapshot: Optional[str] = None,
        finish_reason: Optional[str] = None,
        tokens: Optional[TokenUsage] = None
    ) -> StepFinishPart:
        return await self._insert_part(StepFinishPart(
            id=identifier.ascending("part"),
            message_id=message_id,
            session_id=self._session_of(message_id),
            created_at=identifier.now_ms(),
            snapshot=snapshot,
            finish_reason=finish_reason,
            tokens=tokens,
        ))

    def _session_of(self, message_id: str) -> str:
        message = self._messages.get(message_id)
        if message is None:
            raise RecordNotFoundError(f"Message not found: {message_id}")
        return message.session_id

    async def _insert_part(self, part: Part) -> Part:
        self._parts[part.id] = part
        self._message_parts[part.message_id].append(part.id)
        self.storage.write(["part", part.message_id, part.id], part.to_dict())
        await self.bus.publish(EventType.PART_UPDATED, copy.deepcopy(part))
        return copy.deepcopy(part)

    def get_part(self, part_id: str) -> Optional[Part]:
        part = self._parts.get(part_id)
        return copy.deepcopy(part) if part else None

    def list_parts(self, message_id: str) -> List[Part]:
        """按创建时间排序"""
        parts = [self._parts[pid] for pid in self._message_parts.get(message_id, [])]
        parts.sort(key=_order)
        return copy.deepcopy(parts)

    def find_tool_part(self, message_id: str, call_id: str) -> Optional[ToolPart]:
        for part in self.list_parts(message_id):
            if isinstance(part, ToolPart) and part.call_id == call_id:
                return part
        return None

    async def update_part(self, part_id: str, mutator: Mutator[Part]) -> Part:
        """读取当前值 -> 生成新值 -> 写回, 返回更新后的片段"""
        async with self._lock(part_id):
            current = self._parts.get(part_id)
            if current is None:
                raise RecordNotFoundError(f"Part not found: {part_id}")
            updated = mutator(copy.deepcopy(current))
            self._check_identity(current, updated)
            self._parts[part_id] = updated
            self.storage.write(["part", updated.message_id, part_id], updated.to_dict())
        await self.bus.publish(EventType.PART_UPDATED, copy.deepcopy(updated))
        return copy.deepcopy(updated)

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------

    def set_diff(self, session_id: str, diffs: List[FileDiff]) -> None:
        self.storage.write(["session_diff", session_id], [d.__dict__ for d in diffs])

    def get_diff(self, session_id: str) -> List[FileDiff]:
        stored = self.storage.read(["session_diff", session_id]) or []
        return [FileDiff(**d) for d in stored]

    @staticmethod
    def _check_identity(current, updated) -> None:
        if updated is None or type(updated) is not type(current) or updated.id != current.id:
            raise ValueError(f"Mutator must return the updated {type(current).__name__} record")
