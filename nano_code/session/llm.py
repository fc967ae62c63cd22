"""
模型流包装 - 在流中并发执行工具调用

provider 流中的每个 tool-call 立即启动对应工具; provider 流结束后,
按完成顺序产出 tool-result / tool-error, 最后产出被暂存的 finish-step。
"""
import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, List, Optional

from ..core.llm_client import LLMClient, StreamEvent, StreamEventType, StreamRequest
from ..tools.base import Tool, ToolContext

logger = logging.getLogger(__name__)

ContextFactory = Callable[[StreamEvent], ToolContext]


async def _execute(tool: Optional[Tool], event: StreamEvent, ctx: ToolContext) -> StreamEvent:
    if tool is None:
        return StreamEvent(
            type=StreamEventType.TOOL_ERROR,
            tool_name=event.tool_name,
            call_id=event.call_id,
            error=KeyError(f"Unknown tool: {event.tool_name}"),
        )
    try:
        output = await tool.run(event.input, ctx)
    except Exception as e:
        logger.info(f"tool {event.tool_name} failed: {e}")
        return StreamEvent(
            type=StreamEventType.TOOL_ERROR,
            tool_name=event.tool_name,
            call_id=event.call_id,
            error=e,
        )
    return StreamEvent(
        type=StreamEventType.TOOL_RESULT,
        tool_name=event.tool_name,
        call_id=event.call_id,
        output=output,
    )


async def stream(
    client: LLMClient,
    request: StreamRequest,
    tools: List[Tool],
    context: ContextFactory
) -> AsyncIterator[StreamEvent]:
    """
    产出模型事件与工具执行结果

    Args:
        client: 模型客户端
        request: 流式请求
        tools: 本回合可用工具
        context: 为每个 tool-call 构造执行上下文
    """
    by_id: Dict[str, Tool] = {tool.id: tool for tool in tools}
    running: List[asyncio.Future] = []
    finish: Optional[StreamEvent] = None
    try:
        async for event in client.stream(request):
            if event.type == StreamEventType.FINISH_STEP:
                finish = event
                continue
            yield event
            if event.type == StreamEventType.TOOL_CALL:
                tool = by_id.get(event.tool_name)
                running.append(asyncio.ensure_future(_execute(tool, event, context(event))))

        for done in asyncio.as_completed(running):
            yield await done

        if finish is not None:
            yield finish
    finally:
        for task in running:
            if not task.done():
                task.cancel()


async def collect_text(client: LLMClient, request: StreamRequest) -> str:
    """只收集文本增量的简单调用 (标题等辅助生成)"""
    chunks: List[str] = []
    async for event in client.stream(request):
        if event.type == StreamEventType.TEXT_DELTA:
            chunks.append(event.text)
        elif event.type == StreamEventType.ERROR:
            raise event.error if isinstance(event.error, BaseException) else RuntimeError(str(event.error))
    return "".join(chunks)
