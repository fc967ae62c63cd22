"""
模型输入组装 - 把存储的消息与片段转换为 chat 消息
"""
import json
from typing import Any, Dict, List, Optional

from ..core.store import ConversationStore
from ..core.types import (
    AssistantMessage, Message, TextPart, ToolPart, ToolStatus, UserMessage,
)

INTERRUPTED = "[Tool execution was interrupted]"


def summary_text(store: ConversationStore, message: Message) -> str:
    if not isinstance(message, AssistantMessage) or not message.is_summary:
        return ""
    if not message.sealed or message.error:
        return ""
    return "\n".join(p.text for p in store.list_parts(message.id) if isinstance(p, TextPart) and p.text)


def history(store: ConversationStore, messages: List[Message]) -> List[Message]:
    """从最近一条有效的摘要消息开始截取历史"""
    for index in range(len(messages) - 1, -1, -1):
        if summary_text(store, messages[index]):
            return messages[index:]
    return messages


def _arguments(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value if value is not None else {}, ensure_ascii=False)


def _tool_content(part: ToolPart) -> str:
    state = part.state
    if state.status == ToolStatus.COMPLETED:
        return state.output or ""
    if state.status == ToolStatus.FAILED:
        return f"Error: {state.error}"
    return INTERRUPTED


def to_model_messages(
    store: ConversationStore,
    session_id: str,
    messages: Optional[List[Message]] = None
) -> List[Dict[str, Any]]:
    """
    组装模型输入

    user -> user 消息; assistant -> 文本与工具调用, 随后每个工具片段一条 tool 消息。
    带错误且没有任何内容的助手消息会被跳过。
    """
    result: List[Dict[str, Any]] = []
    for message in history(store, messages if messages is not None else store.list_messages(session_id)):
        if isinstance(message, UserMessage):
            result.append({"role": "user", "content": message.content})
            continue

        parts = store.list_parts(message.id)
        text = "\n".join(p.text for p in parts if isinstance(p, TextPart) and p.text)
        tools = [p for p in parts if isinstance(p, ToolPart)]
        if not text and not tools:
            continue

        entry: Dict[str, Any] = {"role": "assistant", "content": text or None}
        if tools:
            entry["tool_calls"] = [
                {
                    "id": p.call_id or p.id,
                    "type": "function",
                    "function": {"name": p.tool, "arguments": _arguments(p.state.input)},
                }
                for p in tools
            ]
        result.append(entry)
        for p in tools:
            result.append({
                "role": "tool",
                "tool_call_id": p.call_id or p.id,
                "content": _tool_content(p),
            })
    return result

