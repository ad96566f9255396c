"""Runtime settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="UNIGATE_", extra="ignore")

    log_level: str = "info"
    # optional YAML file; its values win over the environment
    config_path: str = ""

    default_provider: str = "openai"
    model_mappings: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=30.0, gt=0)
    rate_limit_per_minute: int = Field(default=60, gt=0)
    cache_ttl_seconds: float = Field(default=60.0, gt=0)

    guardrails_enabled: bool = False
    guardrails_mode: str = "log"  # log | block
    pii_service_url: str = ""
    pii_timeout_ms: int = 2000

    openai_endpoint: str = "https://api.openai.com/v1/chat/completions"
    openai_api_key_env: str = "OPENAI_API_KEY"
    anthropic_endpoint: str = "https://api.anthropic.com/v1/messages"
    anthropic_api_key_env: str = "ANTHROPIC_API_KEY"
    anthropic_version: str = "2023-06-01"

    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20

    cors_enabled: bool = True
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    cors_allow_methods: list[str] = Field(default_factory=lambda: ["GET", "POST", "OPTIONS"])
    cors_allow_headers: list[str] = Field(default_factory=lambda: ["Content-Type", "Authorization"])
    cors_expose_headers: list[str] = Field(default_factory=lambda: ["Content-Length"])
    cors_allow_credentials: bool = True
    cors_max_age: int = Field(default=600, ge=0)
