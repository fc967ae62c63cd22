"""
Agent定义 - 内置 agent 与配置覆盖
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from . import permission
from . import prompts
from .errors import AgentNotFoundError
from .provider import ModelRef
from .types import Ruleset

logger = logging.getLogger(__name__)


@dataclass
class AgentInfo:
    """Agent定义"""
    name: str
    mode: str = "all"               # primary / subagent / all
    description: Optional[str] = None
    hidden: bool = False
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    permission: Ruleset = field(default_factory=list)
    model: Optional[ModelRef] = None
    prompt: Optional[str] = None
    steps: Optional[int] = None


DEFAULT_PERMISSION = permission.from_config({
    "*": "allow",
    "read": {
        "*": "allow",
        "*.env": "ask",
        "*.env.*": "ask",
    },
})


def builtin_agents() -> Dict[str, AgentInfo]:
    """内置 agent"""
    deny_all = permission.merge(DEFAULT_PERMISSION, permission.from_config({"*": "deny"}))
    return {
        "build": AgentInfo(
            name="build",
            mode="primary",
            description="The default agent. Executes tools based on configured permissions.",
            permission=list(DEFAULT_PERMISSION),
            prompt=prompts.PROMPT_BUILD,
        ),
        "plan": AgentInfo(
            name="plan",
            mode="primary",
            description="Plan mode. Disallows all edit tools.",
            permission=permission.merge(
                DEFAULT_PERMISSION,
                permission.from_config({
                    "edit": {"*": "deny", ".nano_code/plans/*.md": "allow"},
                }),
            ),
            prompt=prompts.PROMPT_PLAN,
        ),
        "general": AgentInfo(
            name="general",
            mode="subagent",
            description="General-purpose agent for researching complex questions and executing multi-step tasks.",
            permission=list(DEFAULT_PERMISSION),
        ),
        "explore": AgentInfo(
            name="explore",
            mode="subagent",
            description="Fast agent specialized for exploring codebases with read-only access.",
            permission=permission.merge(
                DEFAULT_PERMISSION,
                permission.from_config({
                    "*": "deny",
                    "grep": "allow",
                    "glob": "allow",
                    "read": "allow",
                    "bash": "allow",
                }),
            ),
            prompt=prompts.PROMPT_EXPLORE,
        ),
        "compaction": AgentInfo(
            name="compaction",
            mode="primary",
            hidden=True,
            description="Context compaction agent for handling token limits.",
            permission=deny_all,
            prompt=prompts.PROMPT_COMPACTION,
        ),
        "title": AgentInfo(
            name="title",
            mode="primary",
            hidden=True,
            temperature=0.5,
            description="Generates descriptive titles for sessions.",
            permission=deny_all,
            prompt=prompts.PROMPT_TITLE,
        ),
        "summary": AgentInfo(
            name="summary",
            mode="primary",
            hidden=True,
            description="Generates conversation summaries.",
            permission=deny_all,
            prompt=prompts.PROMPT_SUMMARY,
        ),
    }


class AgentRegistry:
    """Agent注册表"""

    def __init__(self, agents: Dict[str, AgentInfo], default: Optional[str] = None):
        self._agents = agents
        self._default = default

    @classmethod
    def from_config(cls, config=None) -> "AgentRegistry":
        """内置 agent 叠加配置; 用户 permission 配置最后追加, 因而优先"""
        agents = builtin_agents()
        if config is None:
            return cls(agents)

        user = permission.from_config(config.permission)
        for name, value in config.agent.items():
            if value.disable:
                agents.pop(name, None)
                continue
            item = agents.get(name)
            if item is None:
                item = agents[name] = AgentInfo(
                    name=name,
                    permission=list(DEFAULT_PERMISSION),
                )
            if value.model:
                item.model = ModelRef.parse(value.model)
            if value.prompt is not None:
                item.prompt = value.prompt
            if value.description is not None:
                item.description = value.description
            if value.temperature is not None:
                item.temperature = value.temperature
            if value.top_p is not None:
                item.top_p = value.top_p
            if value.mode is not None:
                item.mode = value.mode
            if value.hidden is not None:
                item.hidden = value.hidden
            if value.steps is not None:
                item.steps = value.steps
            if value.permission:
                item.permission = permission.merge(item.permission, permission.from_config(value.permission))

        if user:
            for name, item in agents.items():
                agents[name] = replace(item, permission=permission.merge(item.permission, user))
        return cls(agents, config.default_agent)

    def get(self, name: str) -> Optional[AgentInfo]:
        return self._agents.get(name)

    def require(self, name: str) -> AgentInfo:
        agent = self.get(name)
        if agent is None:
            raise AgentNotFoundError(f'Agent "{name}" not found')
        return agent

    def list(self) -> List[AgentInfo]:
        default = self.default_agent()
        return sorted(self._agents.values(), key=lambda a: (a.name != default, a.name))

    def default_agent(self) -> str:
        """配置的默认 agent (必须是可见的 primary), 否则第一个可见 primary"""
        if self._default:
            agent = self._agents.get(self._default)
            if agent and agent.mode != "subagent" and not agent.hidden:
                return agent.name
            logger.warning(f'default agent "{self._default}" is missing, hidden or a subagent')
        for agent in self._agents.values():
            if agent.mode != "subagent" and not agent.hidden:
                return agent.name
        raise AgentNotFoundError("no primary visible agent found")
