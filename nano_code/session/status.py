"""
会话状态 - idle / running / retry / error
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ..core.bus import EventBus
from ..core.types import EventType, LoopState

logger = logging.getLogger(__name__)


@dataclass
class StatusInfo:
    state: LoopState = LoopState.IDLE
    attempt: int = 0
    message: Optional[str] = None
    retry_at: Optional[float] = None


class SessionStatus:
    """每个会话一个状态, 每次变化发布 session.status"""

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._status: Dict[str, StatusInfo] = {}

    def get(self, session_id: str) -> StatusInfo:
        return self._status.get(session_id, StatusInfo())

    def list(self) -> Dict[str, StatusInfo]:
        return dict(self._status)

    async def set(self, session_id: str, info: StatusInfo) -> None:
        if info.state == LoopState.IDLE:
            self._status.pop(session_id, None)
        else:
            self._status[session_id] = info
        logger.debug(f"session {session_id} -> {info.state.value}")
        await self.bus.publish(EventType.SESSION_STATUS, {
            "session_id": session_id,
            "status": info.state.value,
            "attempt": info.attempt,
            "message": info.message,
            "retry_at": info.retry_at,
        })

    async def idle(self, session_id: str) -> None:
        await self.set(session_id, StatusInfo(LoopState.IDLE))

    async def running(self, session_id: str) -> None:
        await self.set(session_id, StatusInfo(LoopState.RUNNING))

    async def error(self, session_id: str, message: str) -> None:
        await self.set(session_id, StatusInfo(LoopState.ERROR, message=message))

    async def retry(self, session_id: str, attempt: int, message: str, retry_at: float) -> None:
        await self.set(session_id, StatusInfo(LoopState.RETRY, attempt, message, retry_at))
