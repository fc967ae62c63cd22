"""
事件总线 - 进程内发布/订阅, 解耦组件通信
"""
import logging
from typing import Any, Callable, Dict, List

from .types import AgentEvent, EventHandler, EventType

logger = logging.getLogger(__name__)


class EventBus:
    """事件总线"""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}

    def on(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """
        订阅事件, event_type 为 "*" 时订阅全部

        Returns:
            取消订阅函数
        """
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)
        return lambda: self.off(event_type, handler)

    def on_all(self, handler: EventHandler) -> Callable[[], None]:
        return self.on(EventType.WILDCARD, handler)

    def once(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """订阅一次"""
        async def wrapper(event: AgentEvent) -> None:
            self.off(event_type, wrapper)
            await handler(event)

        return self.on(event_type, wrapper)

    def off(self, event_type: str, handler: EventHandler) -> None:
        """取消订阅"""
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: AgentEvent) -> None:
        """发布事件, 先精确类型订阅者后通配订阅者"""
        logger.debug(f"publish {event.type}")
        handlers = list(self._handlers.get(event.type, []))
        handlers += self._handlers.get(EventType.WILDCARD, [])
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Error in event handler for {event.type}")

    async def publish(self, event_type: str, data: Any) -> None:
        await self.emit(AgentEvent(type=event_type, data=data))
