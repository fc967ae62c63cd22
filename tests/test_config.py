"""
测试配置加载、Agent 与模型注册表
"""
import pytest

from nano_code.config_loader import Config, deep_merge, load_config
from nano_code.core import permission
from nano_code.core.agent import AgentRegistry
from nano_code.core.errors import AgentNotFoundError, ConfigError, ModelNotFoundError
from nano_code.core.provider import ModelRef, ProviderRegistry
from nano_code.core.types import PermissionAction
from nano_code.tools import ToolRegistry, register_builtin_tools


class TestConfigLoader:
    """测试配置文件合并与校验"""

    def test_defaults(self, tmp_path):
        config = load_config(str(tmp_path), global_dir=tmp_path / "global")

        assert config.provider[0].id == "openai"
        assert config.limits.max_steps == 50
        assert config.auto_title is False

    def test_project_overrides_global(self, tmp_path):
        (tmp_path / "global").mkdir()
        (tmp_path / "global" / "config.yaml").write_text("limits:\n  max_steps: 10\n  max_tokens: 100\n")
        (tmp_path / "nano_code.yaml").write_text(
            "limits:\n  max_steps: 20\n"
            "permission:\n  bash: ask\n  edit:\n    '*.md': allow\n"
        )

        config = load_config(str(tmp_path), global_dir=tmp_path / "global")

        assert config.limits.max_steps == 20
        assert config.limits.max_tokens == 100
        assert config.permission == {"bash": "ask", "edit": {"*.md": "allow"}}

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "nano_code.yaml").write_text("limits: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(str(tmp_path), global_dir=tmp_path / "global")

    def test_invalid_value(self, tmp_path):
        (tmp_path / "nano_code.yaml").write_text("permission:\n  bash: sometimes\n")
        with pytest.raises(ConfigError):
            load_config(str(tmp_path), global_dir=tmp_path / "global")

    def test_deep_merge(self):
        merged = deep_merge({"a": {"b": 1, "c": 2}, "d": 1}, {"a": {"b": 3}})
        assert merged == {"a": {"b": 3, "c": 2}, "d": 1}

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("TEST_PROVIDER_KEY", "secret")
        config = Config(provider=[{"id": "p", "env": ["MISSING_KEY", "TEST_PROVIDER_KEY"], "model": "m"}])

        model = ProviderRegistry.from_config(config).first_model()
        assert model.api_key == "secret"
        assert (model.provider_id, model.id) == ("p", "m")


class TestAgentRegistry:
    """测试内置 agent 与配置覆盖"""

    def test_builtin(self):
        registry = AgentRegistry.from_config()

        assert registry.default_agent() == "build"
        assert registry.require("compaction").hidden
        assert registry.require("explore").mode == "subagent"
        with pytest.raises(AgentNotFoundError):
            registry.require("nope")

    def test_plan_denies_edits(self):
        plan = AgentRegistry.from_config().require("plan")

        assert permission.evaluate("edit", "src/app.py", plan.permission).action == PermissionAction.DENY
        assert permission.evaluate("edit", ".nano_code/plans/x.md", plan.permission).action == PermissionAction.ALLOW

    def test_rules_name_registered_tools(self):
        """内置规则只引用已注册工具的权限"""
        registry = ToolRegistry()
        register_builtin_tools(registry)
        known = {"*"} | {"edit" if t in permission.EDIT_TOOLS else t for t in registry.ids()}

        for agent in AgentRegistry.from_config().list():
            assert {r.permission for r in agent.permission} <= known, agent.name

    def test_env_files_ask(self):
        build = AgentRegistry.from_config().require("build")

        assert permission.evaluate("read", "app/.env", build.permission).action == PermissionAction.ASK
        assert permission.evaluate("read", "app/main.py", build.permission).action == PermissionAction.ALLOW

    def test_user_permission_wins(self):
        config = Config(permission={"edit": "allow"}, agent={"review": {"prompt": "Review code", "mode": "primary"}})
        registry = AgentRegistry.from_config(config)

        plan = registry.require("plan")
        assert permission.evaluate("edit", "src/app.py", plan.permission).action == PermissionAction.ALLOW
        assert registry.require("review").prompt == "Review code"

    def test_disable_and_default(self):
        config = Config(default_agent="plan", agent={"general": {"disable": True}})
        registry = AgentRegistry.from_config(config)

        assert registry.get("general") is None
        assert registry.default_agent() == "plan"


class TestProviderRegistry:

    def test_resolve(self):
        config = Config(provider=[
            {"id": "a", "model": "small", "models": {"big": {"context": 200000, "output": 8000}}},
        ])
        registry = ProviderRegistry.from_config(config)

        assert registry.resolve(None).id == "small"
        assert registry.resolve(ModelRef.parse("a/big")).context == 200000
        assert registry.resolve(ModelRef.parse("big")).provider_id == "a"
        assert registry.resolve(ModelRef.parse("b/other")).id == "other"

    def test_no_models(self):
        with pytest.raises(ModelNotFoundError):
            ProviderRegistry().first_model()
