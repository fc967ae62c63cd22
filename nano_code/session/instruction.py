"""
项目指令加载 - 三个来源

1. 项目: 从工作目录向上查找 AGENTS.md / NANO_CODE.md, 止于 git 根目录
2. 全局: ~/.nano_code/AGENTS.md
3. 配置: instructions 中的文件路径 (支持 glob) 与 URL
"""
import asyncio
import glob
import logging
import os
from pathlib import Path
from typing import List, Optional

import aiohttp

logger = logging.getLogger(__name__)

INSTRUCTION_FILES = ["AGENTS.md", "NANO_CODE.md"]
GLOBAL_INSTRUCTIONS = Path.home() / ".nano_code" / "AGENTS.md"
FETCH_TIMEOUT = 5


def find_git_root(directory: str) -> Optional[Path]:
    current = Path(directory).resolve()
    for candidate in [current, *current.parents]:
        if (candidate / ".git").exists():
            return candidate
    return None


class InstructionLoader:
    """指令加载器"""

    def __init__(
        self,
        directory: str,
        instructions: Optional[List[str]] = None,
        global_path: Optional[Path] = None
    ):
        self.directory = Path(directory).resolve()
        self.instructions = list(instructions or [])
        self.global_path = global_path or GLOBAL_INSTRUCTIONS

    def project_files(self) -> List[Path]:
        """向上查找项目指令文件; 第一个命中的文件名生效"""
        stop = find_git_root(str(self.directory)) or self.directory
        for name in INSTRUCTION_FILES:
            found = []
            current = self.directory
            while True:
                candidate = current / name
                if candidate.is_file():
                    found.append(candidate)
                if current == stop or current == current.parent:
                    break
                current = current.parent
            if found:
                return found
        return []

    def config_files(self) -> List[Path]:
        paths: List[Path] = []
        for item in self.instructions:
            if item.startswith(("http://", "https://")):
                continue
            expanded = os.path.expanduser(item)
            if not os.path.isabs(expanded):
                expanded = str(self.directory / expanded)
            paths.extend(Path(p) for p in sorted(glob.glob(expanded)) if os.path.isfile(p))
        return paths

    def urls(self) -> List[str]:
        return [i for i in self.instructions if i.startswith(("http://", "https://"))]

    async def fetch(self, session: aiohttp.ClientSession, url: str) -> Optional[str]:
        try:
            async with session.get(url) as response:
                if response.status == 200:
                    return await response.text()
                logger.warning(f"instruction {url} returned HTTP {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"failed to fetch instruction {url}: {e}")
        return None

    async def load(self) -> List[str]:
        """
        加载全部指令

        Returns:
            每个来源一段 "Instructions from: <来源>" 文本
        """
        result: List[str] = []
        seen = set()
        files = self.project_files()
        if self.global_path.is_file():
            files.append(self.global_path)
        files.extend(self.config_files())

        for path in files:
            key = str(path.resolve())
            if key in seen:
                continue
            seen.add(key)
            try:
                content = path.read_text(encoding='utf-8')
            except OSError as e:
                logger.warning(f"failed to read instruction {path}: {e}")
                continue
            if content.strip():
                result.append(f"Instructions from: {path}\n{content}")

        urls = self.urls()
        if urls:
            timeout = aiohttp.ClientTimeout(total=FETCH_TIMEOUT)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                for url in urls:
                    content = await self.fetch(session, url)
                    if content:
                        result.append(f"Instructions from: {url}\n{content}")
        return result
