"""
取消令牌 - 每个挂起点都要观察它
"""
import asyncio
import logging
from typing import Any, Awaitable

logger = logging.getLogger(__name__)


class _Cancelled:
    def __repr__(self) -> str:
        return "CANCELLED"

    def __bool__(self) -> bool:
        return False


CANCELLED = _Cancelled()


class CancellationToken:
    """一次性取消信号"""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """取消（幂等）"""
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable) -> Any:
        """
        让可等待对象与取消信号竞速

        Returns:
            可等待对象的结果; 若先被取消则返回 CANCELLED
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return CANCELLED

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if not task.cancelled() and task.done() and not self.cancelled:
            return task.result()
        if task.done() and not task.cancelled() and task.exception() is None:
            return task.result()

        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Error raised while cancelling: {e}")
        return CANCELLED
