"""
错误类型
"""
from typing import List, Optional

from .types import PermissionRule


class NanoCodeError(Exception):
    """基础错误"""


class DeniedError(NanoCodeError):
    """规则静态禁止了该操作"""

    def __init__(self, rules: List[PermissionRule]):
        self.rules = rules
        relevant = ", ".join(f"{r.permission}:{r.pattern}" for r in rules)
        super().__init__(
            "The user has specified a rule which prevents you from using this specific tool call. "
            f"Relevant rules: {relevant}"
        )


class RejectedError(NanoCodeError):
    """用户拒绝了审批请求"""

    def __init__(self, feedback: Optional[str] = None):
        self.feedback = feedback
        if feedback:
            message = (
                "The user rejected permission to use this specific tool call "
                f"with the following feedback: {feedback}"
            )
        else:
            message = "The user rejected permission to use this specific tool call."
        super().__init__(message)


class ToolArgumentError(NanoCodeError):
    """工具参数校验失败"""


class ConfigError(NanoCodeError):
    """配置文件无效"""


class RecordNotFoundError(NanoCodeError):
    """存储记录不存在"""


class SessionNotFoundError(RecordNotFoundError):
    pass


class AgentNotFoundError(NanoCodeError):
    pass


class ModelNotFoundError(NanoCodeError):
    pass
