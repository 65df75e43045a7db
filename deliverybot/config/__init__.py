"""Configuration management.

Configuration is layered: `DEFAULT_CONFIG` (whose values reference the
environment through ${VAR} placeholders) is deep-merged with an optional YAML
file, then placeholders are expanded. `.env` is loaded first so it can feed
the placeholders.

    from deliverybot.config import load_config
    config = load_config()

A placeholder whose variable is not set, or an empty string, means "unset".
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from deliverybot.config.schema import SweepScheduleConfig
from deliverybot.constants import (
    DEFAULT_API_HOST,
    DEFAULT_API_PORT,
    DEFAULT_LICENSE_TABLE,
    DEFAULT_PROVIDER_CALL_TIMEOUT_S,
)
from deliverybot.core.models import PlanTier
from deliverybot.utils import expand_env_vars, is_unresolved

logger = logging.getLogger(__name__)

# Project root (relative to this file)
_project_root = Path(__file__).parent.parent.parent


@dataclass
class DiscordConfig:
    token: str | None
    guild_id: str | None  # enables membership/grant logic when set
    role_ids: dict[PlanTier, str]  # plan tier -> role id, only configured tiers
    call_timeout: float = DEFAULT_PROVIDER_CALL_TIMEOUT_S


@dataclass
class LicenseStoreConfig:
    url: str | None
    key: str | None
    table: str = DEFAULT_LICENSE_TABLE

    @property
    def enabled(self) -> bool:
        """The expiry sweep runs only with both address and key."""
        return bool(self.url and self.key)


@dataclass
class ApiConfig:
    host: str = DEFAULT_API_HOST
    port: int = DEFAULT_API_PORT


@dataclass
class BrandingConfig:
    """Texts shown in buyer-facing messages."""

    name: str = "PropQuant.ai"
    footer: str = "PropQuant.ai - Automated Trading Excellence"
    renew_url: str | None = None


@dataclass
class Config:
    discord: DiscordConfig
    license_store: LicenseStoreConfig
    api: ApiConfig = field(default_factory=ApiConfig)
    sweep: SweepScheduleConfig = field(default_factory=SweepScheduleConfig)
    branding: BrandingConfig = field(default_factory=BrandingConfig)


# Default configuration values (single source of truth for configurable keys)
DEFAULT_CONFIG: dict[str, Any] = {
    "discord": {
        "token": "${DISCORD_BOT_TOKEN}",
        "guild_id": "${GUILD_ID}",
        "roles": {
            "monthly": "${MONTHLY_ROLE_ID}",
            "quarterly": "${QUARTERLY_ROLE_ID}",
            "lifetime": "${LIFETIME_ROLE_ID}",
        },
        "call_timeout": DEFAULT_PROVIDER_CALL_TIMEOUT_S,
    },
    "license_store": {
        "url": "${SUPABASE_URL}",
        "key": "${SUPABASE_KEY}",
        "table": DEFAULT_LICENSE_TABLE,
    },
    "api": {
        "host": DEFAULT_API_HOST,
        "port": "${PORT}",
    },
    "sweep": {},
    "branding": {},
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _optional_str(value: object) -> str | None:
    """Normalize a config scalar: None for empty or unresolved placeholders."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or is_unresolved(text):
        return None
    return text


def _parse_role_ids(raw_roles: object) -> dict[PlanTier, str]:
    if not isinstance(raw_roles, dict):
        raise ValueError(f"discord.roles must be a mapping, got {type(raw_roles).__name__}")
    role_ids: dict[PlanTier, str] = {}
    for key, value in raw_roles.items():
        tier = PlanTier.parse(key)
        if tier is None:
            raise ValueError(f"Unknown plan tier in discord.roles: {key}")
        role_id = _optional_str(value)
        if role_id:
            role_ids[tier] = role_id
    return role_ids


def _parse_port(value: object) -> int:
    text = _optional_str(value)
    if text is None:
        return DEFAULT_API_PORT
    try:
        return int(text)
    except ValueError as e:
        raise ValueError(f"Invalid api.port: {text}") from e


def _build_config(raw: dict[str, Any]) -> Config:
    """Build typed Config from the merged, expanded raw dict."""
    discord_raw = raw["discord"]
    store_raw = raw["license_store"]
    api_raw = raw["api"]
    branding_raw = raw.get("branding") or {}
    defaults = BrandingConfig()

    return Config(
        discord=DiscordConfig(
            token=_optional_str(discord_raw.get("token")),
            guild_id=_optional_str(discord_raw.get("guild_id")),
            role_ids=_parse_role_ids(discord_raw.get("roles", {})),
            call_timeout=float(discord_raw.get("call_timeout", DEFAULT_PROVIDER_CALL_TIMEOUT_S)),
        ),
        license_store=LicenseStoreConfig(
            url=_optional_str(store_raw.get("url")),
            key=_optional_str(store_raw.get("key")),
            table=_optional_str(store_raw.get("table")) or DEFAULT_LICENSE_TABLE,
        ),
        api=ApiConfig(
            host=_optional_str(api_raw.get("host")) or DEFAULT_API_HOST,
            port=_parse_port(api_raw.get("port")),
        ),
        sweep=SweepScheduleConfig.model_validate(raw.get("sweep") or {}),
        branding=BrandingConfig(
            name=_optional_str(branding_raw.get("name")) or defaults.name,
            footer=_optional_str(branding_raw.get("footer")) or defaults.footer,
            renew_url=_optional_str(branding_raw.get("renew_url")),
        ),
    )


def _resolve_path(env_var: str, default: Path) -> Path:
    env_value = os.getenv(env_var)
    path = Path(env_value).expanduser() if env_value else default
    if not path.is_absolute():
        path = (_project_root / path).resolve()
    return path


def load_config(config_path: Path | None = None, env_path: Path | None = None) -> Config:
    """Load `.env`, merge the optional YAML file over the defaults and build Config.

    Args:
        config_path: YAML file; default `DELIVERYBOT_CONFIG_PATH` or `<root>/config.yml`.
        env_path: dotenv file; default `DELIVERYBOT_ENV_PATH` or `<root>/.env`.
    """
    load_dotenv(env_path or _resolve_path("DELIVERYBOT_ENV_PATH", _project_root / ".env"))

    path = config_path or _resolve_path("DELIVERYBOT_CONFIG_PATH", _project_root / "config.yml")
    user_config: dict[str, Any] = {}
    if path.exists():
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        user_config = loaded or {}
    else:
        logger.debug("No config file at %s; using environment and defaults", path)

    merged = _deep_merge(DEFAULT_CONFIG, user_config)
    expanded = expand_env_vars(merged)
    assert isinstance(expanded, dict)
    return _build_config(expanded)
