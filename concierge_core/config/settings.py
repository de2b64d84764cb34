"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CONCIERGE_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class ConciergeSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(default="anthropic", description="默认使用的 Provider 名称")
    default_model: str = Field(
        default="concierge-chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型",
    )
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(default="https://api.anthropic.com", description="Anthropic API 基础URL")
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")
    max_output_tokens: Optional[int] = Field(default=None, ge=1, description="覆盖模型默认的最大输出 token 数")
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    max_tool_rounds: int = Field(
        default=20,
        ge=1,
        le=20,
        description="单条用户消息内工具调用最大轮数（硬上限 20）",
    )

    # ---- 存储 ----
    storage_backend: Literal["memory", "json"] = Field(default="memory", description="会话存储后端")
    storage_root: str = Field(default=".storage", description="JSON 存储根目录")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 工具 ----
    exa_api_key: Optional[str] = Field(default=None, description="Exa 搜索 API 密钥")
    exa_base_url: str = Field(default="https://api.exa.ai", description="Exa API 基础URL")
    search_num_results: int = Field(default=5, ge=1, le=25, description="web_search 返回条数")
    search_highlight_chars: int = Field(default=2000, ge=100, description="每条搜索结果高亮片段的最大字符数")
    mapbox_access_token: Optional[str] = Field(default=None, description="Mapbox 访问令牌")
    mapbox_base_url: str = Field(default="https://api.mapbox.com", description="Mapbox API 基础URL")
    geocode_bbox: str = Field(default="-74.26,40.49,-73.70,40.92", description="地理编码限定范围（默认纽约）")

    # ---- HTTP 服务 ----
    server_host: str = Field(default="0.0.0.0", description="HTTP 服务监听地址")
    server_port: int = Field(default=3000, ge=1, le=65535, description="HTTP 服务端口")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("anthropic_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = ConciergeSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = ConciergeSettings
