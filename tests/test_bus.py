"""
测试事件总线
"""
import pytest

from nano_code.core.bus import EventBus
from nano_code.core.types import AgentEvent, EventType


class TestEventBus:
    """测试发布/订阅"""

    def setup_method(self):
        self.bus = EventBus()
        self.seen = []

    async def record(self, event: AgentEvent):
        self.seen.append((event.type, event.data))

    @pytest.mark.asyncio
    async def test_exact_and_wildcard(self):
        """精确订阅者先于通配订阅者收到事件"""
        order = []

        async def exact(event):
            order.append("exact")

        async def wildcard(event):
            order.append("wildcard")

        self.bus.on_all(wildcard)
        self.bus.on(EventType.SESSION_CREATED, exact)
        await self.bus.publish(EventType.SESSION_CREATED, {"id": "s1"})
        await self.bus.publish(EventType.MESSAGE_CREATED, {"id": "m1"})

        assert order == ["exact", "wildcard", "wildcard"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        """on 返回的函数可以取消订阅"""
        off = self.bus.on(EventType.PART_UPDATED, self.record)
        await self.bus.publish(EventType.PART_UPDATED, 1)
        off()
        await self.bus.publish(EventType.PART_UPDATED, 2)

        assert self.seen == [(EventType.PART_UPDATED, 1)]

    @pytest.mark.asyncio
    async def test_once(self):
        """once 只触发一次"""
        self.bus.once(EventType.SESSION_ERROR, self.record)
        await self.bus.publish(EventType.SESSION_ERROR, "a")
        await self.bus.publish(EventType.SESSION_ERROR, "b")

        assert self.seen == [(EventType.SESSION_ERROR, "a")]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_propagate(self):
        """订阅者异常被记录, 不影响其他订阅者"""
        async def broken(event):
            raise RuntimeError("boom")

        self.bus.on(EventType.SESSION_UPDATED, broken)
        self.bus.on(EventType.SESSION_UPDATED, self.record)
        await self.bus.publish(EventType.SESSION_UPDATED, "x")

        assert self.seen == [(EventType.SESSION_UPDATED, "x")]
