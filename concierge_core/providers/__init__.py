"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供具体厂商实现 (anthropic_client)。
"""

from typing import Optional

from concierge_core.config.settings import settings
from concierge_core.providers.base import ProviderClient
from concierge_core.providers.anthropic_client import AnthropicClient
from concierge_core.providers.registry import get_provider_config


def create_provider(name: Optional[str] = None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider；未知名称抛出 KeyError。"""

    provider_name = (name or getattr(settings, "default_provider", "anthropic")).lower()
    cfg = get_provider_config(provider_name)
    if cfg.name == "anthropic":
        return AnthropicClient(settings)
    raise KeyError(f"No client implementation for provider: {provider_name!r}")
