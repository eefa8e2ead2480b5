"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
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


class Settings(BaseSettings):
    """客户端配置。"""

    # ---- 服务端 ----
    api_base_url: str = Field(
        default="http://localhost:9090/api/ragent",
        description="REST 与流式接口的基础 URL",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="普通 REST 请求超时时间（秒）")

    # ---- 流式 ----
    stream_idle_timeout: Optional[float] = Field(
        default=None,
        description="流式通道空闲超时（秒）；为空表示不限制，通道停滞时保持 streaming",
    )
    deep_thinking_default: bool = Field(default=False, description="新消息默认是否开启深度思考")
    default_session_title: str = Field(default="新对话", description="新会话的默认标题")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_file: str = Field(default="chat.log", description="日志文件名（JSON Lines）")
    log_level: str = Field(default="INFO", description="日志级别，DEBUG 会记录被丢弃的过期事件")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志中的提问与回复内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("stream_idle_timeout")
    @classmethod
    def validate_idle_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("stream_idle_timeout must be positive or unset")
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


settings = Settings()
