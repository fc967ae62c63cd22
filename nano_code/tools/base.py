"""
工具基类 - 所有工具的基类

工具以统一契约暴露: id / 描述 / 参数模型 / execute(args, ctx)。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from ..core.cancel import CancellationToken
from ..core.errors import ToolArgumentError
from ..core.types import ToolSchema

MAX_LINES = 2000
MAX_BYTES = 50 * 1024

MetadataReporter = Callable[[Optional[str], Dict[str, Any]], Awaitable[None]]
AskHandler = Callable[[str, List[str], Dict[str, Any], List[str]], Awaitable[None]]


@dataclass
class ToolOutput:
    """工具执行结果"""
    title: str
    output: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolContext:
    """工具执行上下文"""
    session_id: str
    message_id: str
    agent: str
    directory: str
    abort: CancellationToken
    call_id: Optional[str] = None
    on_metadata: Optional[MetadataReporter] = None
    on_ask: Optional[AskHandler] = None

    async def metadata(self, title: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        """上报进度元数据 (例如不断增长的命令输出)"""
        if self.on_metadata:
            await self.on_metadata(title, metadata or {})

    async def ask(
        self,
        permission: str,
        patterns: List[str],
        metadata: Optional[Dict[str, Any]] = None,
        always: Optional[List[str]] = None
    ) -> None:
        """在不可逆副作用之前请求权限"""
        if self.on_ask:
            await self.on_ask(permission, patterns, metadata or {}, always or [])


def truncate(output: str, max_lines: int = MAX_LINES, max_bytes: int = MAX_BYTES):
    """
    截断过长输出

    Returns:
        (内容, 是否截断)
    """
    lines = output.split("\n")
    kept: List[str] = []
    size = 0
    for line in lines[:max_lines]:
        size += len(line.encode("utf-8")) + 1
        if size > max_bytes:
            break
        kept.append(line)
    if len(kept) == len(lines):
        return output, False
    removed = len(lines) - len(kept)
    return "\n".join(kept) + f"\n\n... {removed} lines truncated ...", True


class Tool(ABC):
    """工具基类"""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: Type[BaseModel]
    ):
        self.name = name
        self.description = description
        self.parameters = parameters

    @property
    def id(self) -> str:
        return self.name

    @abstractmethod
    async def execute(self, args: BaseModel, ctx: ToolContext) -> ToolOutput:
        """执行工具 (子类实现)"""

    async def run(self, arguments: Any, ctx: ToolContext) -> ToolOutput:
        """校验参数, 执行, 截断输出"""
        try:
            args = self.parameters.model_validate(arguments if arguments is not None else {})
        except ValidationError as e:
            raise ToolArgumentError(
                f"The {self.name} tool was called with invalid arguments: {e}.\n"
                "Please rewrite the input so it satisfies the expected schema."
            ) from e

        result = await self.execute(args, ctx)
        if "truncated" in result.metadata:
            return result
        content, truncated = truncate(result.output)
        result.output = content
        result.metadata["truncated"] = truncated
        return result

    def to_schema(self) -> ToolSchema:
        """转换为工具Schema"""
        return ToolSchema(
            name=self.name,
            description=self.description,
            parameters=self.parameters.model_json_schema()
        )


def uses_patch(model_id: str) -> bool:
    """较新的 gpt 系列用 apply_patch 代替 edit/write"""
    return "gpt-" in model_id and "oss" not in model_id and "gpt-4" not in model_id


class ToolRegistry:
    """工具注册表 - 保持注册顺序"""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """注册工具, 同名时原位替换"""
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """注销工具"""
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[Tool]:
        """获取工具"""
        return self._tools.get(name)

    def ids(self) -> List[str]:
        return list(self._tools)

    def get_all(self) -> List[Tool]:
        """获取所有工具"""
        return list(self._tools.values())

    def tools(self, model_id: str, agent=None) -> List[Tool]:
        """按模型系列过滤后的工具列表"""
        patch = uses_patch(model_id)
        result = []
        for tool in self._tools.values():
            if tool.name == "apply_patch" and not patch:
                continue
            if tool.name in ("edit", "write") and patch:
                continue
            result.append(tool)
        return result

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
