from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Mapping

from bnetguard.catalog import load_catalog
from bnetguard.models import ActionResult, ApplicationCatalog, Platform
from bnetguard.runner import CommandError, CommandRunner, SubprocessRunner, run_checked

LOGGER = logging.getLogger("bnetguard.paths")

DISABLED_SUFFIX = ".disabled"
DATA_LOCATION = "battlenet_data"

_WINDOWS_VARIABLE = re.compile(r"%([^%]+)%")


class ConfigPathResolver:
    """Resolves launcher config locations and toggles them by renaming.

    Nothing is cached between calls: the filesystem and the environment are
    read again on every operation because an install may appear or vanish
    while the process is running.
    """

    def __init__(
        self,
        platform: Platform,
        catalog: ApplicationCatalog | None = None,
        runner: CommandRunner | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._platform = platform
        self._catalog = catalog or load_catalog()
        self._runner = runner or SubprocessRunner()
        self._environ = environ

    def expand_path(self, template: str) -> str:
        env = self._environ if self._environ is not None else os.environ
        if self._platform == "windows":
            lookup = {key.upper(): value for key, value in env.items()}
            return _WINDOWS_VARIABLE.sub(lambda match: lookup.get(match.group(1).upper(), match.group(0)), template)

        expanded = template
        if expanded == "~" or expanded.startswith("~/"):
            home = env.get("HOME") or str(Path.home())
            expanded = home + expanded[1:]
        user = env.get("USER") or env.get("USERNAME")
        if user:
            expanded = expanded.replace("{user}", user)
        return expanded

    def get_config_locations(self) -> dict[str, str]:
        templates = self._catalog.config_paths.get(self._platform, {})
        return {name: self.expand_path(template) for name, template in templates.items()}

    async def disable_via_config_rename(self) -> ActionResult:
        source = self._data_dir()
        if source is None:
            return ActionResult(success=False, method="config rename", error="No config location for platform")

        target = Path(str(source) + DISABLED_SUFFIX)
        if not await asyncio.to_thread(source.exists):
            return ActionResult(success=False, method="config rename", error="Battle.net config directory not found")
        if await asyncio.to_thread(target.exists):
            return ActionResult(
                success=False,
                method="config rename",
                error=f"Disabled config already exists: {target}",
            )

        try:
            await asyncio.to_thread(source.rename, target)
        except OSError as exc:
            LOGGER.warning("Config rename failed source=%s error=%s", source, exc)
            return ActionResult(
                success=False,
                method="config rename",
                error=str(exc),
                requires_elevated_privilege=isinstance(exc, PermissionError),
            )

        LOGGER.info("Disabled config %s -> %s", source, target)
        return ActionResult(
            success=True,
            method="config rename",
            details={"original": str(source), "renamed": str(target)},
        )

    async def restore_config(self) -> ActionResult:
        original = self._data_dir()
        if original is None:
            return ActionResult(success=False, method="config restore", error="No config location for platform")

        disabled = Path(str(original) + DISABLED_SUFFIX)
        if not await asyncio.to_thread(disabled.exists):
            return ActionResult(success=False, method="config restore", error="No disabled config found")
        if await asyncio.to_thread(original.exists):
            return ActionResult(
                success=False,
                method="config restore",
                error=f"Config directory already exists: {original}",
            )

        try:
            await asyncio.to_thread(disabled.rename, original)
        except OSError as exc:
            LOGGER.warning("Config restore failed source=%s error=%s", disabled, exc)
            return ActionResult(
                success=False,
                method="config restore",
                error=str(exc),
                requires_elevated_privilege=isinstance(exc, PermissionError),
            )

        LOGGER.info("Restored config %s", original)
        return ActionResult(success=True, method="config restore", details={"restored": str(original)})

    async def read_registry(self) -> ActionResult:
        if self._platform != "windows":
            return ActionResult.unsupported(self._platform, method="registry")

        key = self._catalog.registry.launcher
        try:
            result = await run_checked(self._runner, "reg", ["query", key])
        except CommandError as exc:
            return ActionResult(
                success=False,
                method="registry",
                error=str(exc),
                requires_elevated_privilege=exc.requires_elevated_privilege,
            )

        return ActionResult(success=True, method="registry", details={"path": key, "registry": result.stdout})

    async def disable_via_registry(self) -> ActionResult:
        if self._platform != "windows":
            return ActionResult.unsupported(self._platform, method="registry")

        key = self._catalog.registry.launcher
        changes: list[str] = []
        try:
            for value_name in ("LaunchOnStartup", "AutoLogin"):
                await run_checked(
                    self._runner,
                    "reg",
                    ["add", key, "/v", value_name, "/t", "REG_DWORD", "/d", "0", "/f"],
                )
                changes.append(f"{value_name}=0")
        except CommandError as exc:
            LOGGER.warning("Registry update failed key=%s error=%s", key, exc)
            return ActionResult(
                success=False,
                method="registry",
                error=str(exc),
                requires_elevated_privilege=True,
                details={"changes": changes},
            )

        LOGGER.info("Disabled launcher autostart and autologin in %s", key)
        return ActionResult(success=True, method="registry", details={"changes": changes})

    def _data_dir(self) -> Path | None:
        template = self._catalog.config_paths.get(self._platform, {}).get(DATA_LOCATION)
        if not template:
            return None
        return Path(self.expand_path(template))
