"""
测试系统提示词与项目指令
"""
import pytest

from nano_code.core import prompts
from nano_code.core.agent import AgentInfo
from nano_code.core.provider import ModelInfo
from nano_code.session.instruction import InstructionLoader
from nano_code.session.system import SystemPrompt, provider_prompt
from nano_code.session.title import clean_title


class TestSystemPrompt:

    def test_provider_prompt(self):
        assert provider_prompt(ModelInfo("claude-sonnet-4", "anthropic")) == prompts.PROMPT_ANTHROPIC
        assert provider_prompt(ModelInfo("gpt-5", "openai")) == prompts.PROMPT_OPENAI
        assert provider_prompt(ModelInfo("gemini-2.5-pro", "google")) == prompts.PROMPT_GEMINI
        assert provider_prompt(ModelInfo("qwen3", "local")) == prompts.PROMPT_DEFAULT

    @pytest.mark.asyncio
    async def test_build(self, tmp_path):
        (tmp_path / "AGENTS.md").write_text("Always run the tests.")
        system = await SystemPrompt(global_path=tmp_path / "missing.md").build(
            AgentInfo(name="plan", prompt="Plan only."), ModelInfo("m", "p"), str(tmp_path)
        )

        assert system[0] == "Plan only."
        assert str(tmp_path) in system[1]
        assert "Always run the tests." in system[2]


class TestInstructionLoader:
    """测试指令文件查找"""

    @pytest.mark.asyncio
    async def test_walks_up_to_git_root(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / "AGENTS.md").write_text("root rules")
        nested = tmp_path / "pkg" / "sub"
        nested.mkdir(parents=True)
        (nested / "AGENTS.md").write_text("sub rules")

        loaded = await InstructionLoader(str(nested), global_path=tmp_path / "none.md").load()

        assert len(loaded) == 2
        assert "sub rules" in loaded[0] and "root rules" in loaded[1]

    @pytest.mark.asyncio
    async def test_config_paths(self, tmp_path):
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "style.md").write_text("use tabs")
        global_file = tmp_path / "global.md"
        global_file.write_text("be brief")

        loaded = await InstructionLoader(
            str(tmp_path), ["docs/*.md"], global_path=global_file
        ).load()

        assert any("be brief" in item for item in loaded)
        assert any("use tabs" in item for item in loaded)


class TestTitle:

    def test_clean_title(self):
        assert clean_title('"Fix login bug"\n') == "Fix login bug"
        assert clean_title("<think>hmm</think>\n\nRefactor parser") == "Refactor parser"
        long = clean_title("word " * 30)
        assert len(long) <= 60 and long.endswith("...")
