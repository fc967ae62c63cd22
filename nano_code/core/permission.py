"""
权限引擎 - HumanInTheLoop的核心

规则集按插入顺序拼接, 从末尾向前查找第一条匹配规则 (后者优先)。
调用方通过规则集顺序控制优先级, 例如把用户覆盖规则追加到 agent 默认规则之后。
"""
import asyncio
import logging
import os
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from . import identifier
from .bus import EventBus
from .errors import DeniedError, RejectedError
from .types import (
    EventType, PermissionAction, PermissionReply, PermissionRequest,
    PermissionRule, Ruleset, ToolRef,
)

logger = logging.getLogger(__name__)

# 这些工具共用 edit 权限
EDIT_TOOLS = ("edit", "write", "apply_patch")

PermissionConfig = Mapping[str, Union[str, Mapping[str, str]]]


def _expand(pattern: str) -> str:
    if pattern == "~" or pattern.startswith("~/"):
        return os.path.expanduser(pattern)
    return pattern


def from_config(config: Optional[PermissionConfig]) -> Ruleset:
    """
    权限配置转规则集

    {"bash": "ask"} -> bash:* ask
    {"edit": {"*": "deny", "*.md": "allow"}} -> 每个模式一条规则
    """
    ruleset: Ruleset = []
    for key, value in (config or {}).items():
        if isinstance(value, str):
            ruleset.append(PermissionRule(key, "*", PermissionAction(value)))
            continue
        for pattern, action in value.items():
            ruleset.append(PermissionRule(key, _expand(pattern), PermissionAction(action)))
    return ruleset


def merge(*rulesets: Iterable[PermissionRule]) -> Ruleset:
    """按参数顺序拼接规则集"""
    result: Ruleset = []
    for ruleset in rulesets:
        result.extend(ruleset)
    return result


def match(value: str, pattern: str) -> bool:
    """
    通配匹配: * 匹配任意字符串, ? 匹配单个字符

    因而 "*" 全匹配, 末尾 * 为前缀匹配, 开头 * 为后缀匹配;
    以 " *" 结尾的模式同时匹配不带参数的命令 ("ls *" 匹配 "ls")。
    """
    if pattern == "*" or pattern == value:
        return True
    if pattern.endswith(" *"):
        regex = _to_regex(pattern[:-2]) + "( .*)?"
    else:
        regex = _to_regex(pattern)
    return re.fullmatch(regex, value, re.DOTALL) is not None


def _to_regex(pattern: str) -> str:
    return "".join(
        ".*" if ch == "*" else "." if ch == "?" else re.escape(ch)
        for ch in pattern
    )


def evaluate(permission: str, pattern: str, *rulesets: Iterable[PermissionRule]) -> PermissionRule:
    """
    评估权限

    Returns:
        最后一条同时匹配 permission 与 pattern 的规则; 没有时返回默认 ask 规则
    """
    merged = merge(*rulesets)
    for rule in reversed(merged):
        if match(permission, rule.permission) and match(pattern, rule.pattern):
            return rule
    return PermissionRule(permission, "*", PermissionAction.ASK)


def disabled(tools: Iterable[str], ruleset: Ruleset) -> Set[str]:
    """被规则整体禁止 (pattern 为 * 且 deny) 的工具"""
    result: Set[str] = set()
    for tool in tools:
        permission = "edit" if tool in EDIT_TOOLS else tool
        last = None
        for rule in reversed(ruleset):
            if match(permission, rule.permission):
                last = rule
                break
        if last and last.pattern == "*" and last.action == PermissionAction.DENY:
            result.add(tool)
    return result


class _Pending:
    def __init__(self, request: PermissionRequest, future: asyncio.Future):
        self.request = request
        self.future = future


class PermissionEngine:
    """权限引擎 - 管理待审批请求与 always 批准规则"""

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._approved: Dict[str, Ruleset] = {}
        self._pending: Dict[str, _Pending] = {}

    def approved(self, session_id: str) -> Ruleset:
        return list(self._approved.get(session_id, []))

    def list(self, session_id: Optional[str] = None) -> List[PermissionRequest]:
        """获取待处理的审批请求"""
        return [
            p.request for p in self._pending.values()
            if session_id is None or p.request.session_id == session_id
        ]

    async def ask(
        self,
        session_id: str,
        permission: str,
        patterns: List[str],
        metadata: Optional[Dict[str, Any]] = None,
        always: Optional[List[str]] = None,
        ruleset: Optional[Ruleset] = None,
        tool: Optional[ToolRef] = None
    ) -> None:
        """
        请求权限

        全部 allow 时立即返回; 第一个非 allow 的模式决定结果:
        deny 立即抛出 DeniedError, ask 创建覆盖全部模式的请求并等待人工答复。
        """
        rules = merge(ruleset or [], self._approved.get(session_id, []))
        for pattern in patterns:
            rule = evaluate(permission, pattern, rules)
            logger.debug(f"evaluated {permission}:{pattern} -> {rule.action.value}")
            if rule.action == PermissionAction.DENY:
                raise DeniedError([r for r in rules if match(permission, r.permission)])
            if rule.action == PermissionAction.ALLOW:
                continue

            request = PermissionRequest(
                id=identifier.ascending("per"),
                session_id=session_id,
                permission=permission,
                patterns=list(patterns),
                metadata=dict(metadata or {}),
                always=list(always or []),
                tool=tool,
            )
            future = asyncio.get_running_loop().create_future()
            # 先注册，再发事件，避免“瞬时响应”竞态丢失。
            self._pending[request.id] = _Pending(request, future)
            logger.info(f"permission asked: {permission} {patterns} (session {session_id})")
            await self.bus.publish(EventType.PERMISSION_ASKED, request)
            try:
                await future
            except asyncio.CancelledError:
                self._pending.pop(request.id, None)
                raise
            return

    async def reply(
        self,
        request_id: str,
        reply: Union[PermissionReply, str],
        message: Optional[str] = None
    ) -> bool:
        """
        答复审批请求

        reject: 拒绝该请求并级联拒绝同会话的其余请求
        once:   仅放行该请求
        always: 追加 allow 规则, 放行该请求并级联放行现已全部 allow 的同会话请求
        """
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        reply = PermissionReply(reply)
        request = pending.request
        logger.info(f"permission replied: {request.permission} -> {reply.value}")
        await self._publish_reply(request, reply)

        if reply == PermissionReply.REJECT:
            self._settle(pending, RejectedError(message))
            for other in self._take_session(request.session_id):
                await self._publish_reply(other.request, PermissionReply.REJECT)
                self._settle(other, RejectedError())
            return True

        self._settle(pending)
        if reply == PermissionReply.ONCE:
            return True

        approved = self._approved.setdefault(request.session_id, [])
        for pattern in request.always:
            approved.append(PermissionRule(request.permission, pattern, PermissionAction.ALLOW))

        for other in list(self._pending.values()):
            if other.request.session_id != request.session_id:
                continue
            ok = all(
                evaluate(other.request.permission, pattern, approved).action == PermissionAction.ALLOW
                for pattern in other.request.patterns
            )
            if not ok:
                continue
            del self._pending[other.request.id]
            await self._publish_reply(other.request, PermissionReply.ALWAYS)
            self._settle(other)
        return True

    async def reject_session(self, session_id: str) -> int:
        """拒绝会话的全部待处理请求 (用于取消)"""
        taken = self._take_session(session_id)
        for pending in taken:
            await self._publish_reply(pending.request, PermissionReply.REJECT)
            self._settle(pending, RejectedError())
        return len(taken)

    def clear_session(self, session_id: str) -> None:
        self._approved.pop(session_id, None)

    def _take_session(self, session_id: str) -> List[_Pending]:
        taken = [p for p in self._pending.values() if p.request.session_id == session_id]
        for pending in taken:
            del self._pending[pending.request.id]
        return taken

    async def _publish_reply(self, request: PermissionRequest, reply: PermissionReply) -> None:
        await self.bus.publish(EventType.PERMISSION_REPLIED, {
            "session_id": request.session_id,
            "request_id": request.id,
            "reply": reply.value,
        })

    @staticmethod
    def _settle(pending: _Pending, error: Optional[Exception] = None) -> None:
        if pending.future.done():
            return
        if error is None:
            pending.future.set_result(None)
        else:
            pending.future.set_exception(error)
