from __future__ import annotations

import ntpath
import os
import sys
from typing import Mapping

from bnetguard.models import Platform

SUPPORTED_PLATFORMS: tuple[Platform, ...] = ("windows", "macos", "linux")

_ALIASES: dict[str, Platform] = {
    "windows": "windows",
    "win32": "windows",
    "nt": "windows",
    "macos": "macos",
    "darwin": "macos",
    "osx": "macos",
    "linux": "linux",
}

DEFAULT_SYSTEM_ROOT = r"C:\Windows"
POSIX_HOSTS_PATH = "/etc/hosts"


def normalize_platform(value: str | None) -> Platform:
    if not value:
        return host_platform()

    key = value.strip().lower()
    if key.startswith("linux"):
        return "linux"

    try:
        return _ALIASES[key]
    except KeyError:
        raise ValueError(f"Invalid platform: {value}. Expected one of {SUPPORTED_PLATFORMS}") from None


def host_platform() -> Platform:
    if sys.platform == "win32":
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


def default_hosts_path(platform: Platform, environ: Mapping[str, str] | None = None) -> str:
    if platform != "windows":
        return POSIX_HOSTS_PATH

    env = os.environ if environ is None else environ
    system_root = next((value for key, value in env.items() if key.upper() == "SYSTEMROOT" and value), None)
    return ntpath.join(system_root or DEFAULT_SYSTEM_ROOT, "System32", "drivers", "etc", "hosts")
