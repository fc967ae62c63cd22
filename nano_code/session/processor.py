"""
流处理器 - 把一次模型响应流物化为会话片段

负责:
- 文本片段的累积与封存, 以及 part.delta 增量事件
- 工具片段状态机 pending -> running -> completed | failed
- 瞬时错误 (限流 / 过载 / 超时) 的指数退避重试
- 取消与致命错误时封存助手消息
"""
import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from ..core import identifier
from ..core.bus import EventBus
from ..core.cancel import CANCELLED, CancellationToken
from ..core.errors import RejectedError
from ..core.llm_client import StreamEvent, StreamEventType
from ..core.snapshot import NullSnapshot, SnapshotService
from ..core.store import ConversationStore
from ..core.types import EventType, ToolStatus
from .status import SessionStatus

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
ABORTED = "Tool execution aborted"

_MARKERS = (
    (("rate_limit", "ratelimit", "rate limit", "too_many_requests", "too many requests", "429"), "Rate limited"),
    (("overloaded", "503"), "Provider overloaded"),
    (("timeout", "timed out", "etimedout"), "Request timed out"),
)

StreamFactory = Callable[[], AsyncIterator[StreamEvent]]


class ProcessResult(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


def retryable(error: BaseException) -> Optional[str]:
    """
    判断错误是否可重试

    Returns:
        可重试时返回原因描述, 否则 None
    """
    text = f"{type(error).__name__}: {error}".lower()
    status = getattr(error, "status_code", None)
    if status == 429:
        return "Rate limited"
    if status == 503:
        return "Provider overloaded"
    for markers, reason in _MARKERS:
        if any(marker in text for marker in markers):
            return reason
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "Request timed out"
    return None


def retry_delay(attempt: int) -> float:
    """第 attempt 次重试前的等待秒数: min(1s * 2^(attempt-1), 30s)"""
    return min(1000 * 2 ** (attempt - 1), 30000) / 1000


class _End:
    pass


_END = _End()


async def _next(iterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class _Turn:
    """单次 process 调用的内存状态, 跨重试保留"""

    def __init__(self, session_id: str, message_id: str):
        self.session_id = session_id
        self.message_id = message_id
        self.toolcalls: Dict[str, Tuple[str, float]] = {}
        self.text_part: Optional[str] = None
        self.text = ""
        self.blocked = False


class StreamProcessor:
    """流处理器"""

    def __init__(
        self,
        store: ConversationStore,
        bus: EventBus,
        status: SessionStatus,
        snapshot: Optional[SnapshotService] = None,
        max_retries: int = MAX_RETRIES
    ):
        self.store = store
        self.bus = bus
        self.status = status
        self.snapshot = snapshot or NullSnapshot()
        self.max_retries = max_retries

    async def process(
        self,
        session_id: str,
        message_id: str,
        stream_factory: StreamFactory,
        abort: CancellationToken
    ) -> ProcessResult:
        """
        消费响应流直到结束

        Returns:
            CONTINUE 表示循环可以继续; STOP 表示本回合因拒绝/错误/取消而终止
        """
        turn = _Turn(session_id, message_id)
        attempt = 0
        while True:
            try:
                outcome = await self._consume(turn, stream_factory(), abort)
            except Exception as e:
                reason = retryable(e)
                if reason is None or attempt >= self.max_retries:
                    logger.error(f"stream failed for session {session_id}: {e}")
                    await self._finish(turn, error=str(e) or type(e).__name__)
                    await self.bus.publish(EventType.SESSION_ERROR, {
                        "session_id": session_id,
                        "message_id": message_id,
                        "error": str(e) or type(e).__name__,
                    })
                    return ProcessResult.STOP

                attempt += 1
                delay = retry_delay(attempt)
                logger.warning(f"{reason}, retrying in {delay:.1f}s (attempt {attempt}/{self.max_retries})")
                await self.status.retry(session_id, attempt, reason, identifier.now_ms() + delay * 1000)
                slept = await abort.guard(asyncio.sleep(delay))
                if slept is CANCELLED:
                    logger.info(f"stream aborted during retry backoff for session {session_id}")
                    await self._finish(turn)
                    return ProcessResult.STOP
                await self.status.running(session_id)
                continue

            if outcome is CANCELLED:
                logger.info(f"stream aborted for session {session_id}")
                await self._finish(turn)
                return ProcessResult.STOP
            break

        await self._finish(turn)
        return ProcessResult.STOP if turn.blocked else ProcessResult.CONTINUE

    async def _consume(self, turn: _Turn, stream: AsyncIterator[StreamEvent], abort: CancellationToken):
        iterator = stream.__aiter__()
        try:
            while True:
                event = await abort.guard(_next(iterator))
                if event is CANCELLED:
                    return CANCELLED
                if event is _END:
                    return None
                await self._handle(turn, event)
        finally:
            close = getattr(iterator, "aclose", None)
            if close is not None:
                await close()

    async def _handle(self, turn: _Turn, event: StreamEvent) -> None:
        kind = event.type

        if kind == StreamEventType.START_STEP:
            await self.store.create_step_start(turn.message_id, await self.snapshot.track())

        elif kind == StreamEventType.TEXT_START:
            await self._seal_text(turn)
            part = await self.store.create_text_part(turn.message_id)
            turn.text_part, turn.text = part.id, ""

        elif kind == StreamEventType.TEXT_DELTA:
            if turn.text_part is None:
                part = await self.store.create_text_part(turn.message_id)
                turn.text_part, turn.text = part.id, ""
            turn.text += event.text
            await self.bus.publish(EventType.PART_DELTA, {
                "session_id": turn.session_id,
                "message_id": turn.message_id,
                "part_id": turn.text_part,
                "field": "text",
                "delta": event.text,
            })

        elif kind == StreamEventType.TEXT_END:
            await self._seal_text(turn)

        elif kind == StreamEventType.TOOL_CALL:
            await self._start_tool(turn, event)

        elif kind == StreamEventType.TOOL_RESULT:
            await self._complete_tool(turn, event)

        elif kind == StreamEventType.TOOL_ERROR:
            if isinstance(event.error, RejectedError):
                turn.blocked = True
            await self._fail_tool(turn, event.call_id, str(event.error))

        elif kind == StreamEventType.FINISH_STEP:
            def record(message):
                message.finish_reason = event.finish_reason
                if event.usage is not None:
                    message.tokens = event.usage
                return message
            await self.store.update_message(turn.message_id, record)
            await self.store.create_step_finish(
                turn.message_id,
                snapshot=await self.snapshot.track(),
                finish_reason=event.finish_reason,
                tokens=event.usage,
            )

        elif kind == StreamEventType.ERROR:
            error = event.error
            if isinstance(error, BaseException):
                raise error
            raise RuntimeError(str(error))

    async def _seal_text(self, turn: _Turn) -> None:
        if turn.text_part is None:
            return
        text = turn.text.strip()

        def seal(part):
            part.text = text
            return part
        await self.store.update_part(turn.text_part, seal)
        turn.text_part, turn.text = None, ""

    async def _start_tool(self, turn: _Turn, event: StreamEvent) -> None:
        part = await self.store.create_tool_part(turn.message_id, event.tool_name, event.call_id)
        started = identifier.now_ms()

        def run(part):
            part.state.status = ToolStatus.RUNNING
            part.state.input = event.input
            part.state.start_time = started
            return part
        await self.store.update_part(part.id, run)
        turn.toolcalls[event.call_id] = (part.id, started)

    async def _complete_tool(self, turn: _Turn, event: StreamEvent) -> None:
        entry = turn.toolcalls.pop(event.call_id, None)
        if entry is None:
            logger.warning(f"tool result for unknown call {event.call_id}")
            return
        output = event.output
        ended = identifier.now_ms()

        def complete(part):
            part.state.status = ToolStatus.COMPLETED
            part.state.output = getattr(output, "output", output if isinstance(output, str) else str(output))
            part.state.title = getattr(output, "title", None)
            part.state.metadata = {**part.state.metadata, **(getattr(output, "metadata", None) or {})}
            part.state.end_time = ended
            return part
        await self.store.update_part(entry[0], complete)

    async def _fail_tool(self, turn: _Turn, call_id: str, error: str) -> None:
        entry = turn.toolcalls.pop(call_id, None)
        if entry is None:
            logger.warning(f"tool error for unknown call {call_id}")
            return
        ended = identifier.now_ms()

        def fail(part):
            if part.state.terminal:
                return part
            part.state.status = ToolStatus.FAILED
            part.state.error = error
            part.state.end_time = ended
            return part
        await self.store.update_part(entry[0], fail)

    async def _finish(self, turn: _Turn, error: Optional[str] = None) -> None:
        """封存文本, 把未决工具调用标为中止, 然后封存消息"""
        await self._seal_text(turn)
        for call_id in list(turn.toolcalls):
            await self._fail_tool(turn, call_id, ABORTED)

        completed = identifier.now_ms()

        def seal(message):
            message.completed_at = completed
            if error is not None:
                message.error = error
            return message
        await self.store.update_message(turn.message_id, seal)
