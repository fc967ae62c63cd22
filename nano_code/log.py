"""
日志配置

- 控制台: rich 的 RichHandler (仅当 stderr 是终端)
- 文件: 配置 logging.file 或环境变量 NANO_CODE_LOG
"""
import logging
import os
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("nano_code")

_initialized = False


def setup_logging(level: str = "INFO", file: Optional[str] = None) -> None:
    """初始化日志, 只在第一次调用时生效"""
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    path = file or os.environ.get("NANO_CODE_LOG")
    if path:
        handler = logging.FileHandler(os.path.expanduser(path), mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"
        ))
        handler.setLevel(log_level)
        logger.addHandler(handler)

    if sys.stderr.isatty():
        console = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
        console.setLevel(log_level)
        logger.addHandler(console)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """获取 nano_code 下的子 logger"""
    if name:
        return logger.getChild(name)
    return logger
