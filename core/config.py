"""
配置文件 - 项目配置管理
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Booking Payment Checkout")
    VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=True)
    ENVIRONMENT: str = Field(default="development")
    # 未设置时 DEBUG 为 DEBUG 级别，否则 INFO
    LOG_LEVEL: Optional[str] = Field(default=None)

    # 日志脱敏：这些键对应的值在日志中以掩码输出
    LOG_REDACT_KEYS: list[str] = Field(
        default=["client_secret", "api_key", "authorization", "signature", "webhook_secret"],
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @field_validator("LOG_REDACT_KEYS", mode="before")
    @classmethod
    def _parse_redact_keys(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return [str(item).lower() for item in v]
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                import json
                try:
                    arr = json.loads(s)
                    if isinstance(arr, list):
                        return [str(item).lower() for item in arr]
                except ValueError:
                    pass
            return [item.strip().lower() for item in s.split(",") if item.strip()]
        return v


settings = Settings()
