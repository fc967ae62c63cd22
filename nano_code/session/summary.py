"""
会话改动汇总 - 基于回合快照计算差异
"""
import logging
from typing import List, Optional

from ..core.bus import EventBus
from ..core.snapshot import SnapshotService
from ..core.store import ConversationStore
from ..core.types import (
    AssistantMessage, EventType, FileDiff, SessionSummary, StepFinishPart, StepStartPart,
)

logger = logging.getLogger(__name__)


async def summarize(
    store: ConversationStore,
    bus: EventBus,
    snapshot: SnapshotService,
    session_id: str
) -> Optional[List[FileDiff]]:
    """
    从第一个 step-start 快照到最后一个 step-finish 快照计算差异,
    写入 Session.summary 并发布 session.diff

    Returns:
        差异列表; 没有可用快照时返回 None
    """
    start: Optional[str] = None
    end: Optional[str] = None
    for message in store.list_messages(session_id):
        if not isinstance(message, AssistantMessage):
            continue
        for part in store.list_parts(message.id):
            if isinstance(part, StepStartPart) and part.snapshot and start is None:
                start = part.snapshot
            if isinstance(part, StepFinishPart) and part.snapshot:
                end = part.snapshot
    if start is None or end is None:
        return None

    diffs = await snapshot.diff(start, end)
    await store.set_summary(session_id, SessionSummary(
        additions=sum(d.additions for d in diffs),
        deletions=sum(d.deletions for d in diffs),
        files=len(diffs),
    ))
    store.set_diff(session_id, diffs)
    await bus.publish(EventType.SESSION_DIFF, {"session_id": session_id, "diff": diffs})
    logger.debug(f"session {session_id} diff: {len(diffs)} files")
    return diffs
