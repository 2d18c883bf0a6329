"""配置管理模块。

支持从 .env、autochat.yaml 以及环境变量（前缀 AUTOCHAT_）加载配置。
优先级：构造参数 > 环境变量 > .env > YAML 文件 > 默认值。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 autochat.yaml 加载配置（若存在）。YAML 中的 key 允许使用连字符。"""
    candidates = []
    explicit = os.getenv("AUTOCHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "autochat.yaml",
        Path(__file__).resolve().parents[2] / "autochat.yaml",
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
                    return {str(k).replace("-", "_"): v for k, v in data.items()}
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """运行配置。"""

    # ---- 通用 ----
    ai: Literal["openai", "bing"] = Field(default="openai", description="主对话后端")
    goal: str = Field(default="", description="auto/pair 模式的目标（提供 prompt 时忽略）")
    prompt: str = Field(default="", description="替代默认模板的 prompt")
    model: str = Field(default="gpt-3.5-turbo", description="模型名")
    proxy: Optional[str] = Field(default=None, description="HTTP/WebSocket 代理地址")
    output_dir: str = Field(default="output", description="文件类命令的根目录")
    log_dir: str = Field(default="logs", description="日志与对话记录目录，空字符串表示只输出到控制台")
    debug_dir: str = Field(default=".", description="无法解析的模型输出的保存目录")
    log_redact_content: bool = Field(default=False, description="是否截断日志内容")
    steps: int = Field(default=0, ge=0, description="最大步数，0 表示不限制")
    http_timeout: float = Field(default=300.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- bulk ----
    bulk_input: str = Field(default="", description="bulk 模式输入文件（.json 或文本）")
    bulk_output: str = Field(default="", description="bulk 模式输出 JSON 文件")

    # ---- Google 搜索 ----
    google_key: Optional[str] = Field(default=None, description="Google Custom Search API key")
    google_cx: Optional[str] = Field(default=None, description="Google 搜索引擎 ID")

    # ---- OpenAI 兼容接口 ----
    openai_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    openai_wait: float = Field(default=5.0, ge=0.0, description="两次请求之间的等待（秒）")
    openai_max_tokens: int = Field(default=5000, ge=0, description="单次请求的上下文 token 上限")

    # ---- 实时 socket 后端 ----
    bing_wait: float = Field(default=5.0, ge=0.0, description="两次请求之间的等待（秒）")
    bing_session_file: str = Field(default="bing-session.yaml", description="会话凭据 YAML 文件")

    model_config = SettingsConfigDict(
        env_prefix="AUTOCHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_key")
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


settings = Settings()
