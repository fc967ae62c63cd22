"""
模型提供方注册表
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import ModelNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ModelInfo:
    """模型信息"""
    id: str
    provider_id: str
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    context: int = 0
    output: int = 0


@dataclass
class ModelRef:
    provider_id: str
    model_id: str

    @classmethod
    def parse(cls, value: str) -> "ModelRef":
        """解析 "provider/model" 形式; 只有模型名时 provider 为空"""
        if "/" in value:
            provider_id, model_id = value.split("/", 1)
            return cls(provider_id, model_id)
        return cls("", value)


class ProviderRegistry:
    """提供方与模型"""

    def __init__(self, models: Optional[List[ModelInfo]] = None):
        self._models: Dict[str, Dict[str, ModelInfo]] = {}
        for model in models or []:
            self.add(model)

    @classmethod
    def from_config(cls, config) -> "ProviderRegistry":
        registry = cls()
        for provider in config.provider:
            api_key = provider.resolve_api_key()
            names = dict(provider.models)
            if provider.model and provider.model not in names:
                names = {provider.model: None, **names}
            for model_id, limits in names.items():
                registry.add(ModelInfo(
                    id=model_id,
                    provider_id=provider.id,
                    base_url=provider.base_url,
                    api_key=api_key,
                    context=limits.context if limits else 0,
                    output=limits.output if limits else 0,
                ))
            logger.info(f"registered provider {provider.id}")
        return registry

    def add(self, model: ModelInfo) -> None:
        self._models.setdefault(model.provider_id, {})[model.id] = model

    def list(self) -> List[ModelInfo]:
        return [m for models in self._models.values() for m in models.values()]

    def get_model(self, provider_id: str, model_id: str) -> Optional[ModelInfo]:
        if not provider_id:
            for models in self._models.values():
                if model_id in models:
                    return models[model_id]
            return None
        return self._models.get(provider_id, {}).get(model_id)

    def first_model(self) -> ModelInfo:
        for models in self._models.values():
            for model in models.values():
                return model
        raise ModelNotFoundError("No model configured. Add a provider to nano_code.yaml.")

    def resolve(self, ref: Optional[ModelRef]) -> ModelInfo:
        """agent 指定的模型, 否则第一个配置的模型"""
        if ref is None:
            return self.first_model()
        found = self.get_model(ref.provider_id, ref.model_id)
        if found:
            return found
        logger.warning(f"model {ref.provider_id}/{ref.model_id} not configured, using defaults")
        return ModelInfo(id=ref.model_id, provider_id=ref.provider_id or "openai")
