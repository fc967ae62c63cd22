"""
Nano Code - 编码助手 Agent 执行引擎

包含功能:
- 事件总线与会话存储
- 权限引擎 (HumanInTheLoop 审批, 级联批准/拒绝)
- 流处理器 (工具状态机, 指数退避重试)
- Prompt 循环 (每会话单一生成)
- 上下文压缩与工具输出修剪
"""

__version__ = "0.1.0"
__author__ = "Mountain Gu"

from .config_loader import Config, load_config
from .log import setup_logging, get_logger
from .runtime import Runtime

__all__ = [
    "Config", "load_config",
    "setup_logging", "get_logger",
    "Runtime",
]
