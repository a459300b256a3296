from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType

from bnetguard.models import (
    ApplicationCatalog,
    PlatformCatalog,
    PortRange,
    ProcessSignature,
    RegistryKeys,
    StartupEntry,
)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "data" / "catalog.json"


def _strings(values: object) -> tuple[str, ...]:
    if not isinstance(values, list):
        return ()
    return tuple(str(item).strip() for item in values if str(item).strip())


def _build_signature(raw: dict, where: str) -> ProcessSignature:
    names = _strings(raw.get("process_names"))
    if not names:
        raise ValueError(f"Catalog entry {where} has no process_names")

    service_name = raw.get("service_name")
    return ProcessSignature(
        process_names=names,
        default_paths=_strings(raw.get("default_paths")),
        service_name=str(service_name) if service_name else None,
    )


def _build_platform(name: str, raw: dict) -> PlatformCatalog:
    if "launcher" not in raw:
        raise ValueError(f"Catalog platform {name} has no launcher entry")

    games = {
        game: _build_signature(entry, f"{name}/{game}")
        for game, entry in raw.get("games", {}).items()
        if isinstance(entry, dict)
    }
    return PlatformCatalog(
        launcher=_build_signature(raw["launcher"], f"{name}/launcher"),
        games=MappingProxyType(games),
    )


def parse_catalog(payload: dict) -> ApplicationCatalog:
    raw_platforms = payload.get("platforms", {})
    if not raw_platforms:
        raise ValueError("Catalog defines no platforms")

    platforms = {
        name: _build_platform(name, raw)
        for name, raw in raw_platforms.items()
        if isinstance(raw, dict)
    }

    ports = tuple(
        PortRange(
            start=int(item["start"]),
            end=int(item.get("end", item["start"])),
            description=str(item.get("description", "")),
        )
        for item in payload.get("ports", [])
    )

    raw_startup = payload.get("startup", {})
    startup = StartupEntry(
        run_keys=_strings(raw_startup.get("run_keys")),
        value_name=str(raw_startup.get("value_name", "Battle.net")),
        login_item=str(raw_startup.get("login_item", "Battle.net")),
    )

    config_paths = {
        name: MappingProxyType({key: str(value) for key, value in entries.items()})
        for name, entries in payload.get("config_paths", {}).items()
    }

    raw_registry = payload.get("registry", {})
    registry = RegistryKeys(
        launcher=str(raw_registry.get("launcher", "")),
        games=str(raw_registry.get("games", "")),
    )

    return ApplicationCatalog(
        version=int(payload.get("version", 1)),
        platforms=MappingProxyType(platforms),
        domains=_strings(payload.get("domains")),
        ports=ports,
        startup=startup,
        config_paths=MappingProxyType(config_paths),
        registry=registry,
    )


@lru_cache(maxsize=None)
def _load_cached(path: str) -> ApplicationCatalog:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_catalog(payload)


def load_catalog(path: str | Path | None = None) -> ApplicationCatalog:
    """Load the application catalog once per path; later calls share the instance."""
    resolved = Path(path) if path else DEFAULT_CATALOG_PATH
    return _load_cached(str(resolved.resolve()))
