"""
配置加载器 - 支持YAML配置文件
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .core.errors import ConfigError

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".nano_code"
CONFIG_FILES = ["nano_code.yaml", "nano_code.yml", ".nano_code.yaml"]

PermissionValue = Union[
    Literal["allow", "deny", "ask"],
    Dict[str, Literal["allow", "deny", "ask"]],
]


class ModelConfig(BaseModel):
    """模型上下文限制, 0 表示未知"""
    context: int = 0
    output: int = 0


class ProviderConfig(BaseModel):
    id: str
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    env: List[str] = Field(default_factory=list)
    model: Optional[str] = None
    models: Dict[str, ModelConfig] = Field(default_factory=dict)

    def resolve_api_key(self) -> Optional[str]:
        """配置的 api_key 优先, 否则取第一个已设置的环境变量"""
        if self.api_key:
            return self.api_key
        for name in self.env:
            value = os.getenv(name)
            if value:
                return value
        return None


class AgentConfig(BaseModel):
    model: Optional[str] = None
    prompt: Optional[str] = None
    description: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    mode: Optional[Literal["primary", "subagent", "all"]] = None
    hidden: Optional[bool] = None
    permission: Optional[Dict[str, PermissionValue]] = None
    steps: Optional[int] = Field(default=None, gt=0)
    disable: bool = False


class LimitsConfig(BaseModel):
    max_tokens: int = 4096
    max_steps: int = 50


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None


class StorageConfig(BaseModel):
    path: Optional[str] = None


class Config(BaseModel):
    provider: List[ProviderConfig] = Field(default_factory=list)
    default_agent: Optional[str] = None
    agent: Dict[str, AgentConfig] = Field(default_factory=dict)
    permission: Optional[Dict[str, PermissionValue]] = None
    instructions: List[str] = Field(default_factory=list)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    auto_title: bool = False


def get_default_config() -> Dict[str, Any]:
    """获取默认配置"""
    return {
        'provider': [
            {
                'id': 'openai',
                'env': ['OPENAI_API_KEY'],
                'model': 'gpt-4o-mini',
                'models': {'gpt-4o-mini': {'context': 128000, 'output': 16384}},
            }
        ],
        'limits': {'max_tokens': 4096, 'max_steps': 50},
        'logging': {'level': os.getenv('NANO_CODE_LOG_LEVEL', 'INFO'), 'file': os.getenv('NANO_CODE_LOG')},
        'auto_title': False,
    }


def deep_merge(base: Dict, update: Dict) -> Dict:
    """深度合并两个字典"""
    result = base.copy()
    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.debug(f"loaded config {path}")
    return data


def load_config(directory: str = ".", global_dir: Optional[Path] = None) -> Config:
    """加载配置: 默认值 < 全局配置 < 项目配置"""
    config = get_default_config()

    global_file = _read_yaml((global_dir or GLOBAL_DIR) / "config.yaml")
    if global_file:
        config = deep_merge(config, global_file)

    for name in CONFIG_FILES:
        project_file = _read_yaml(Path(directory) / name)
        if project_file is not None:
            config = deep_merge(config, project_file)
            break

    try:
        return Config.model_validate(config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def save_config(config: Config, config_path: str = "nano_code.yaml") -> None:
    """保存配置到文件"""
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(config.model_dump(exclude_none=True), f, default_flow_style=False, allow_unicode=True)
