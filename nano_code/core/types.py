"""
核心类型定义 - 会话 / 消息 / 片段数据模型
"""
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional, Union
from dataclasses import dataclass, field, asdict
import copy


class LoopState(str, Enum):
    """会话循环状态机"""
    IDLE = "idle"
    RUNNING = "running"
    RETRY = "retry"
    ERROR = "error"


class ToolStatus(str, Enum):
    """工具片段状态: pending -> running -> completed | failed"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {ToolStatus.COMPLETED, ToolStatus.FAILED}


class PermissionAction(str, Enum):
    """权限规则动作"""
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class PermissionReply(str, Enum):
    """人工审批答复"""
    ONCE = "once"
    ALWAYS = "always"
    REJECT = "reject"


# 模型请求更多工具调用时的 finish reason
FINISH_TOOL_CALLS = "tool-calls"

DEFAULT_SESSION_TITLE = "New Session"


@dataclass
class SessionSummary:
    """会话改动统计"""
    additions: int = 0
    deletions: int = 0
    files: int = 0


@dataclass
class Session:
    """会话"""
    id: str
    title: str
    project_id: str
    directory: str
    created_at: float
    updated_at: float
    agent: Optional[str] = None
    summary: Optional[SessionSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        data = dict(data)
        if data.get("summary"):
            data["summary"] = SessionSummary(**data["summary"])
        return cls(**data)


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


@dataclass
class UserMessage:
    """用户消息 - 创建后不可变"""
    id: str
    session_id: str
    content: str
    created_at: float
    role: str = field(default="user", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AssistantMessage:
    """助手消息 - 由流处理器原地更新, 设置 completed_at 后封存"""
    id: str
    session_id: str
    created_at: float
    finish_reason: Optional[str] = None
    error: Optional[str] = None
    is_summary: bool = False
    agent: Optional[str] = None
    tokens: Optional[TokenUsage] = None
    completed_at: Optional[float] = None
    role: str = field(default="assistant", init=False)

    @property
    def sealed(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Message = Union[UserMessage, AssistantMessage]


@dataclass
class ToolState:
    """工具调用状态"""
    status: ToolStatus = ToolStatus.PENDING
    input: Any = None
    output: Optional[str] = None
    error: Optional[str] = None
    title: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class TextPart:
    id: str
    message_id: str
    session_id: str
    created_at: float
    text: str = ""
    type: str = field(default="text", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ToolPart:
    id: str
    message_id: str
    session_id: str
    created_at: float
    tool: str
    call_id: Optional[str] = None
    state: ToolState = field(default_factory=ToolState)
    type: str = field(default="tool", init=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"]["status"] = self.state.status.value
        return data


@dataclass
class StepStartPart:
    """回合开始标记, 可引用工作区快照"""
    id: str
    message_id: str
    session_id: str
    created_at: float
    snapshot: Optional[str] = None
    type: str = field(default="step-start", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StepFinishPart:
    """回合结束标记"""
    id: str
    message_id: str
    session_id: str
    created_at: float
    snapshot: Optional[str] = None
    finish_reason: Optional[str] = None
    tokens: Optional[TokenUsage] = None
    type: str = field(default="step-finish", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Part = Union[TextPart, ToolPart, StepStartPart, StepFinishPart]


def _without(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    data = copy.deepcopy(data)
    data.pop(key, None)
    return data


def message_from_dict(data: Dict[str, Any]) -> Message:
    """从存储字典还原消息"""
    role = data.get("role")
    body = _without(data, "role")
    if role == "user":
        return UserMessage(**body)
    if body.get("tokens"):
        body["tokens"] = TokenUsage(**body["tokens"])
    return AssistantMessage(**body)


def part_from_dict(data: Dict[str, Any]) -> Part:
    """从存储字典还原片段"""
    kind = data.get("type")
    body = _without(data, "type")
    if kind == "text":
        return TextPart(**body)
    if kind == "tool":
        state = dict(body.get("state") or {})
        state["status"] = ToolStatus(state.get("status", "pending"))
        body["state"] = ToolState(**state)
        return ToolPart(**body)
    if kind == "step-start":
        return StepStartPart(**body)
    if kind == "step-finish":
        if body.get("tokens"):
            body["tokens"] = TokenUsage(**body["tokens"])
        return StepFinishPart(**body)
    raise ValueError(f"Unknown part type: {kind}")


@dataclass
class PermissionRule:
    """权限规则"""
    permission: str
    pattern: str
    action: PermissionAction

    def to_dict(self) -> Dict[str, Any]:
        return {"permission": self.permission, "pattern": self.pattern, "action": self.action.value}


Ruleset = List[PermissionRule]


@dataclass
class ToolRef:
    """审批请求关联的工具调用"""
    message_id: str
    call_id: str


@dataclass
class PermissionRequest:
    """等待人工决定的审批请求"""
    id: str
    session_id: str
    permission: str
    patterns: List[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    always: List[str] = field(default_factory=list)
    tool: Optional[ToolRef] = None


@dataclass
class FileDiff:
    """快照间的单文件差异"""
    file: str
    before: str
    after: str
    additions: int
    deletions: int
    status: Optional[str] = None


@dataclass
class ToolSchema:
    """工具JSON Schema定义"""
    name: str
    description: str
    parameters: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters
            }
        }


@dataclass
class AgentEvent:
    """总线事件"""
    type: str
    data: Any


# 事件处理器类型
EventHandler = Callable[[AgentEvent], Coroutine[Any, Any, None]]


class EventType:
    """事件类型常量"""
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    SESSION_DELETED = "session.deleted"
    SESSION_DIFF = "session.diff"
    SESSION_ERROR = "session.error"
    SESSION_STATUS = "session.status"
    SESSION_COMPACTED = "session.compacted"
    MESSAGE_CREATED = "message.created"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_DELETED = "message.deleted"
    PART_UPDATED = "part.updated"
    PART_DELTA = "part.delta"
    PERMISSION_ASKED = "permission.asked"
    PERMISSION_REPLIED = "permission.replied"
    WILDCARD = "*"
