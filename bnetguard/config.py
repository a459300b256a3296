from __future__ import annotations

import json
from pathlib import Path

from bnetguard.models import AppConfig, EnforcementConfig
from bnetguard.platforms import normalize_platform

_ALLOWED_LISTERS = {"auto", "command", "psutil"}
_ALLOWED_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _build_enforcement(raw: dict) -> EnforcementConfig:
    return EnforcementConfig(
        enabled=bool(raw.get("enabled", False)),
        force=bool(raw.get("force", False)),
        include_launcher=bool(raw.get("include_launcher", True)),
        include_games=bool(raw.get("include_games", True)),
    )


def default_config() -> AppConfig:
    return parse_config({})


def parse_config(payload: dict) -> AppConfig:
    lister = str(payload.get("process_lister", "auto")).strip().lower()
    if lister not in _ALLOWED_LISTERS:
        raise ValueError(f"Invalid process_lister: {lister}. Expected one of {_ALLOWED_LISTERS}")

    log_level = str(payload.get("log_level", "INFO")).strip().upper()
    if log_level not in _ALLOWED_LEVELS:
        raise ValueError(f"Invalid log_level: {log_level}. Expected one of {_ALLOWED_LEVELS}")

    raw_enforcement = payload.get("enforcement", {})
    if not isinstance(raw_enforcement, dict):
        raw_enforcement = {}

    return AppConfig(
        platform=normalize_platform(_optional_str(payload.get("platform"))),
        log_level=log_level,
        cache_expiry_ms=max(int(payload.get("cache_expiry_ms", 5000)), 0),
        grace_period_ms=max(int(payload.get("grace_period_ms", 5000)), 0),
        monitor_interval_ms=max(int(payload.get("monitor_interval_ms", 5000)), 100),
        process_lister=lister,
        hosts_path=_optional_str(payload.get("hosts_path")),
        loopback_address=_optional_str(payload.get("loopback_address")) or "127.0.0.1",
        catalog_path=_optional_str(payload.get("catalog_path")),
        enforcement=_build_enforcement(raw_enforcement),
    )


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    if not config_path.exists():
        return default_config()

    payload = json.loads(config_path.read_text(encoding="utf-8"))
    return parse_config(payload)
