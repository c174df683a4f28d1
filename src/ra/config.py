"""
RA 服务配置。

来源优先级（高 -> 低）：构造参数 > 环境变量 > .env > JSON 配置文件 > secrets 目录。
JSON 配置文件默认为工作目录下的 config.json，可通过 CONFIG_FILE 环境变量指定其他路径。
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple

from loguru import logger
from pydantic import field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


def _config_file_path() -> Path:
    override = os.environ.get("CONFIG_FILE")
    return Path(override) if override else Path.cwd() / "config.json"


class ConfigFileSource(PydanticBaseSettingsSource):
    """读取 JSON 配置文件；文件缺失或内容无效时视为空配置。"""

    def __init__(self, settings_cls: type[BaseSettings]):
        super().__init__(settings_cls)
        self._values = self._read(_config_file_path())

    @staticmethod
    def _read(path: Path) -> Dict[str, Any]:
        if not path.is_file():
            return {}
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"忽略无法解析的配置文件 {path}: {e}")
            return {}
        if not isinstance(loaded, dict):
            logger.warning(f"忽略配置文件 {path}：顶层必须是 JSON 对象")
            return {}
        return loaded

    def get_field_value(self, field, field_name: str) -> Tuple[Any, str, bool]:  # type: ignore[override]
        for key in (field.alias, field_name):
            if key and key in self._values:
                return self._values[key], key, True
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        found: Dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            value, _, present = self.get_field_value(field, field_name)
            if present:
                found[field_name] = value
        return found


class Config(BaseSettings):
    # 令牌签发
    jwt_secret: str = "change-this-secret-key-in-production-min-256-bits"
    jwt_expiration_seconds: int = 86400
    jwt_issuer: str = "RA-Service"

    # 挑战缓存
    challenge_ttl_seconds: int = 300
    challenge_sweep_interval_seconds: float = 60.0

    # 身份目录（开发用静态目录文件）
    directory_file: Optional[str] = None
    document_signing_group: str = "Document-Signing"

    # 上游 CA
    ca_mode: Literal["local", "remote"] = "local"
    ca_base_url: str = "https://ca.company.com/api/v1"
    ca_username: str = ""
    ca_password: str = ""
    ca_timeout_seconds: float = 30.0
    dev_ca_dir: Optional[str] = None
    ca_root_common_name: str = "RA Development Root CA"
    ca_root_organization_name: str = "RA Development"

    # 审计
    audit_log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("ca_mode", mode="before")
    @classmethod
    def normalize_ca_mode(cls, value: Any) -> Any:
        """环境变量里的 CA 模式允许大小写混写和首尾空白。"""
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, dotenv_settings, ConfigFileSource(settings_cls), file_secret_settings


config = Config()
