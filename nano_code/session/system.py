"""
系统提示词构建
"""
import platform
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..core import prompts
from ..core.agent import AgentInfo
from ..core.provider import ModelInfo
from .instruction import InstructionLoader, find_git_root


def provider_prompt(model: ModelInfo) -> str:
    """按模型系列选择默认提示词"""
    model_id = model.id.lower()
    if "claude" in model_id:
        return prompts.PROMPT_ANTHROPIC
    if "gpt-" in model_id or model_id.startswith(("o1", "o3", "o4")):
        return prompts.PROMPT_OPENAI
    if "gemini" in model_id:
        return prompts.PROMPT_GEMINI
    return prompts.PROMPT_DEFAULT


def environment(directory: str, model: ModelInfo, now: Optional[datetime] = None) -> str:
    """环境信息块"""
    is_git = find_git_root(directory) is not None
    return "\n".join([
        f"You are powered by the model named {model.id}. The exact model ID is {model.provider_id}/{model.id}",
        "Here is some useful information about the environment you are running in:",
        "<env>",
        f"  Working directory: {directory}",
        f"  Is directory a git repo: {'yes' if is_git else 'no'}",
        f"  Platform: {platform.system().lower()}",
        f"  Today's date: {(now or datetime.now()).strftime('%a %b %d %Y')}",
        "</env>",
    ])


class SystemPrompt:
    """系统提示词 = agent 提示词或模型默认提示词 + 环境信息 + 项目指令"""

    def __init__(self, instructions: Optional[List[str]] = None, global_path: Optional[Path] = None):
        self.instructions = list(instructions or [])
        self.global_path = global_path

    async def build(self, agent: AgentInfo, model: ModelInfo, directory: str) -> List[str]:
        system = [agent.prompt or provider_prompt(model), environment(directory, model)]
        system.extend(await InstructionLoader(directory, self.instructions, self.global_path).load())
        return system
