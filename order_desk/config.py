from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "config.yaml"

# env var -> (section, key)
_ENV_KEYS = {
    "ORDER_DESK_DB_PATH": ("database", "path"),
    "WHATSAPP_ACCESS_TOKEN": ("whatsapp", "access_token"),
    "WHATSAPP_PHONE_NUMBER_ID": ("whatsapp", "phone_number_id"),
    "WHATSAPP_API_VERSION": ("whatsapp", "api_version"),
    "WHATSAPP_TEMPLATE_NAME": ("whatsapp", "template_name"),
    "WHATSAPP_DEFAULT_COUNTRY_CODE": ("whatsapp", "default_country_code"),
    "WHATSAPP_APP_SECRET": ("webhook", "app_secret"),
    "WHATSAPP_WEBHOOK_VERIFY_TOKEN": ("webhook", "verify_token"),
    "BUSINESS_NAME": ("business", "name"),
    "BUSINESS_ADDRESS": ("business", "address"),
    "ORDER_TRACKING_URL": ("business", "tracking_url"),
}

PLACEHOLDER_TOKEN = "your_whatsapp_access_token_here"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, (section, key) in _ENV_KEYS.items():
        value = os.getenv(env_name)
        if value is None or not value.strip():
            continue
        overrides.setdefault(section, {})[key] = value.strip()

    enabled = os.getenv("WHATSAPP_ENABLED", "").strip()
    if enabled:
        overrides.setdefault("whatsapp", {})["enabled"] = _as_bool(enabled)

    return overrides


def resolve_path(path_value: str, *, base_dir: Optional[Path] = None) -> Path:
    candidate = Path(path_value)
    if not candidate.is_absolute():
        candidate = (base_dir or BASE_DIR) / candidate
    return candidate.resolve()


@lru_cache(maxsize=1)
def load_config() -> Dict[str, Any]:
    # Load .env once through a single interface.
    load_dotenv(dotenv_path=BASE_DIR / ".env")

    config_path = os.getenv("ORDER_DESK_CONFIG")
    path = resolve_path(config_path, base_dir=Path.cwd()) if config_path else DEFAULT_CONFIG_PATH

    data: Dict[str, Any] = {}
    if path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            data = loaded

    return _deep_merge(data, _env_overrides())


def reload_config() -> Dict[str, Any]:
    load_config.cache_clear()
    return load_config()


def get_db_path(config: Optional[Dict[str, Any]] = None) -> Path:
    cfg = config if config is not None else load_config()
    db_path = str(cfg.get("database", {}).get("path", "data/orders.db"))
    return resolve_path(db_path)


def get_log_path(config: Optional[Dict[str, Any]] = None) -> Path:
    cfg = config if config is not None else load_config()
    log_path = str(cfg.get("paths", {}).get("log_file", "logs/order-desk.log"))
    return resolve_path(log_path)


@dataclass(frozen=True)
class MessagingSettings:
    """Outbound WhatsApp Cloud API settings plus the business details used in message bodies."""

    enabled: bool = False
    access_token: str = ""
    phone_number_id: str = ""
    api_version: str = "v21.0"
    template_name: str = ""
    template_language: str = "es_MX"
    default_country_code: str = "52"
    timeout_seconds: float = 10.0
    business_name: str = "Clean Master Shoes"
    business_address: str = ""
    tracking_url: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(
            self.enabled
            and self.access_token
            and self.phone_number_id
            and self.access_token != PLACEHOLDER_TOKEN
        )

    @property
    def messages_url(self) -> str:
        return f"https://graph.facebook.com/{self.api_version}/{self.phone_number_id}/messages"

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "MessagingSettings":
        cfg = config if config is not None else load_config()
        wa = cfg.get("whatsapp", {}) or {}
        business = cfg.get("business", {}) or {}
        return cls(
            enabled=_as_bool(wa.get("enabled", False)),
            access_token=str(wa.get("access_token") or "").strip(),
            phone_number_id=str(wa.get("phone_number_id") or "").strip(),
            api_version=str(wa.get("api_version") or "v21.0").strip(),
            template_name=str(wa.get("template_name") or "").strip(),
            template_language=str(wa.get("template_language") or "es_MX").strip(),
            default_country_code=str(wa.get("default_country_code") or "52").strip(),
            timeout_seconds=float(wa.get("timeout_seconds", 10) or 10),
            business_name=str(business.get("name") or "Clean Master Shoes").strip(),
            business_address=str(business.get("address") or "").strip(),
            tracking_url=str(business.get("tracking_url") or "").strip(),
        )


@dataclass(frozen=True)
class WebhookSettings:
    app_secret: str = ""
    verify_token: str = ""
    require_signature: bool = False
    dedupe_incoming: bool = False

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "WebhookSettings":
        cfg = config if config is not None else load_config()
        hook = cfg.get("webhook", {}) or {}
        return cls(
            app_secret=str(hook.get("app_secret") or "").strip(),
            verify_token=str(hook.get("verify_token") or "").strip(),
            require_signature=_as_bool(hook.get("require_signature", False)),
            dedupe_incoming=_as_bool(hook.get("dedupe_incoming", False)),
        )
