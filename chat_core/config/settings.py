"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
这里只提供启动时的默认值；用户在设置界面保存的配置由
JsonConfigStore 持久化，并以 ChatConfig 快照的形式传给会话。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chat_core.prompts import DEFAULT_BOT_NAME, DEFAULT_SYSTEM_PROMPT


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
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


class ChatSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Azure OpenAI ----
    azure_openai_api_key: Optional[str] = Field(default=None, description="Azure OpenAI API 密钥")
    azure_openai_endpoint: str = Field(
        default="",
        description="Azure OpenAI 资源地址，如 https://xxx.openai.azure.com/",
    )
    azure_openai_deployment: str = Field(default="", description="部署名")

    # ---- 对话 ----
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="系统提示词")
    temperature: float = Field(default=1.0, ge=0.0, le=2.0, description="采样温度")
    bot_name: str = Field(default=DEFAULT_BOT_NAME, description="机器人显示名称")

    # ---- 运行环境 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="连接/写入超时时间（秒），不限制流式读取")
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("azure_openai_api_key")
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


settings = ChatSettings()

