"""
工作区快照服务接口

快照句柄是不透明字符串; diff 返回两个句柄之间的文件差异。
"""
from typing import List, Optional

from .types import FileDiff


class SnapshotService:
    """快照服务基类"""

    async def track(self) -> Optional[str]:
        raise NotImplementedError

    async def diff(self, from_handle: str, to_handle: str) -> List[FileDiff]:
        raise NotImplementedError


class NullSnapshot(SnapshotService):
    """不记录快照"""

    async def track(self) -> Optional[str]:
        return None

    async def diff(self, from_handle: str, to_handle: str) -> List[FileDiff]:
        return []
