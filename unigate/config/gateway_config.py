"""Resolved gateway configuration.

``load_gateway_config`` runs once at startup: it starts from ``Settings``
(environment), overlays the optional YAML file and resolves provider
credentials. The result is immutable and handed to each component.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from unigate.config.settings import Settings
from unigate.core.errors import ConfigurationError
from unigate.core.models import ProviderName
from unigate.filters.pii_guard import GUARDRAIL_MODES
from unigate.util.logger import logger


@dataclass(frozen=True, slots=True)
class ProviderEndpoint:
    endpoint: str
    api_key_env: str
    api_key: str = ""


@dataclass(frozen=True, slots=True)
class GuardrailConfig:
    enabled: bool = False
    mode: str = "log"
    service_url: str = ""
    timeout_ms: int = 2000


@dataclass(frozen=True, slots=True)
class CorsConfig:
    enabled: bool = True
    allow_origins: tuple[str, ...] = ("*",)
    allow_methods: tuple[str, ...] = ("GET", "POST", "OPTIONS")
    allow_headers: tuple[str, ...] = ("Content-Type", "Authorization")
    expose_headers: tuple[str, ...] = ("Content-Length",)
    allow_credentials: bool = True
    max_age: int = 600


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    default_provider: ProviderName
    providers: Mapping[ProviderName, ProviderEndpoint]
    model_mappings: Mapping[str, ProviderName] = field(default_factory=dict)
    timeout_seconds: float = 30.0
    rate_limit_per_minute: int = 60
    cache_ttl_seconds: float = 60.0
    guardrails: GuardrailConfig = field(default_factory=GuardrailConfig)
    cors: CorsConfig = field(default_factory=CorsConfig)
    anthropic_version: str = "2023-06-01"
    max_connections: int = 100
    max_keepalive_connections: int = 20
    log_level: str = "info"


def _provider_name(raw: Any, where: str) -> ProviderName:
    try:
        return ProviderName(str(raw).strip().lower())
    except ValueError as exc:
        raise ConfigurationError(f"{where}: unknown provider {raw!r}") from exc


def _str_tuple(raw: Any, where: str) -> tuple[str, ...]:
    if not isinstance(raw, (list, tuple)):
        raise ConfigurationError(f"{where} must be a list")
    return tuple(str(item) for item in raw)


def _read_yaml(path_str: str) -> dict[str, Any]:
    if not path_str.strip():
        return {}
    path = Path(path_str)
    if not path.is_file():
        raise ConfigurationError(f"config file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"config file must contain a mapping: {path}")
    logger.info("gateway config loaded from %s", path)
    return loaded


def load_gateway_config(settings: Settings | None = None, environ: Mapping[str, str] | None = None) -> GatewayConfig:
    settings = settings or Settings()
    env = os.environ if environ is None else environ
    raw = _read_yaml(settings.config_path)

    default_provider = _provider_name(raw.get("default_provider", settings.default_provider), "default_provider")

    raw_mappings = raw.get("model_mappings")
    if raw_mappings is None:
        raw_mappings = settings.model_mappings
    if not isinstance(raw_mappings, Mapping):
        raise ConfigurationError("model_mappings must be a mapping")
    model_mappings = {
        str(model): _provider_name(provider, f"model_mappings[{model}]") for model, provider in raw_mappings.items()
    }

    timeout_seconds = settings.timeout_seconds
    if raw.get("timeout_ms") is not None:
        timeout_seconds = float(raw["timeout_ms"]) / 1000.0
    if timeout_seconds <= 0:
        raise ConfigurationError("timeout must be positive")

    rate_limit = int((raw.get("rate_limits") or {}).get("per_minute", settings.rate_limit_per_minute))
    if rate_limit <= 0:
        raise ConfigurationError("rate_limits.per_minute must be positive")

    cache_ttl = float((raw.get("cache") or {}).get("ttl_seconds", settings.cache_ttl_seconds))
    if cache_ttl <= 0:
        raise ConfigurationError("cache.ttl_seconds must be positive")

    raw_guardrails = raw.get("guardrails") or {}
    guardrail_mode = str(raw_guardrails.get("mode", settings.guardrails_mode)).strip().lower()
    if guardrail_mode not in GUARDRAIL_MODES:
        raise ConfigurationError(f"guardrails.mode must be one of {sorted(GUARDRAIL_MODES)}")
    guardrails = GuardrailConfig(
        enabled=bool(raw_guardrails.get("enabled", settings.guardrails_enabled)),
        mode=guardrail_mode,
        service_url=str(raw_guardrails.get("service_url", settings.pii_service_url) or ""),
        timeout_ms=int(raw_guardrails.get("timeout_ms", settings.pii_timeout_ms)),
    )

    raw_cors = raw.get("cors") or {}
    cors = CorsConfig(
        enabled=bool(raw_cors.get("enabled", settings.cors_enabled)),
        allow_origins=_str_tuple(raw_cors.get("allow_origins", settings.cors_allow_origins), "cors.allow_origins"),
        allow_methods=_str_tuple(raw_cors.get("allow_methods", settings.cors_allow_methods), "cors.allow_methods"),
        allow_headers=_str_tuple(raw_cors.get("allow_headers", settings.cors_allow_headers), "cors.allow_headers"),
        expose_headers=_str_tuple(raw_cors.get("expose_headers", settings.cors_expose_headers), "cors.expose_headers"),
        allow_credentials=bool(raw_cors.get("allow_credentials", settings.cors_allow_credentials)),
        max_age=int(raw_cors.get("max_age", settings.cors_max_age)),
    )
    if cors.max_age < 0:
        raise ConfigurationError("cors.max_age must not be negative")

    defaults = {
        ProviderName.OPENAI: (settings.openai_endpoint, settings.openai_api_key_env),
        ProviderName.ANTHROPIC: (settings.anthropic_endpoint, settings.anthropic_api_key_env),
    }
    raw_providers = raw.get("providers") or {}
    providers: dict[ProviderName, ProviderEndpoint] = {}
    for name, (endpoint, key_env) in defaults.items():
        section = raw_providers.get(name.value) or {}
        endpoint = str(section.get("endpoint", endpoint))
        key_env = str(section.get("api_key_env", key_env))
        api_key = env.get(key_env, "")
        if not api_key:
            logger.warning("missing api key env=%s provider=%s", key_env, name.value)
        providers[name] = ProviderEndpoint(endpoint=endpoint, api_key_env=key_env, api_key=api_key)

    return GatewayConfig(
        default_provider=default_provider,
        providers=providers,
        model_mappings=model_mappings,
        timeout_seconds=timeout_seconds,
        rate_limit_per_minute=rate_limit,
        cache_ttl_seconds=cache_ttl,
        guardrails=guardrails,
        cors=cors,
        anthropic_version=settings.anthropic_version,
        max_connections=settings.upstream_max_connections,
        max_keepalive_connections=settings.upstream_max_keepalive_connections,
        log_level=str((raw.get("logging") or {}).get("level", settings.log_level)),
    )
