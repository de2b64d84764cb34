"""Provider 与模型配置。

本模块将"逻辑模型名"与"具体厂商模型名"解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "concierge-chat"。
- provider_model：厂商实际提供的模型 ID，例如 "claude-sonnet-4-5-20250929"。

上层只关心逻辑名，具体用哪个底层模型由这里集中配置，便于后续升级或切换。"""

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]

    def resolve_model(self, logical_name: str) -> ModelConfig:
        """逻辑名未登记时，直接把它当作厂商模型 ID 透传。"""

        cfg = self.models.get(logical_name)
        if cfg is not None:
            return cfg
        default = next(iter(self.models.values()))
        return ModelConfig(logical_name=logical_name, provider_model=logical_name, max_tokens=default.max_tokens)


ANTHROPIC_CONFIG = ProviderConfig(
    name="anthropic",
    base_url="https://api.anthropic.com",
    models={
        "concierge-chat": ModelConfig(
            logical_name="concierge-chat",
            provider_model="claude-sonnet-4-5-20250929",
            max_tokens=4096,
        )
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "anthropic": ANTHROPIC_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
