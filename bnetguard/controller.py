from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, Protocol

from bnetguard.detector import ProcessDetector, parse_tasklist
from bnetguard.models import (
    ActionResult,
    CommandResult,
    Platform,
    ProcessRecord,
    TerminationMethod,
    TerminationOutcome,
    TerminationReport,
)
from bnetguard.runner import CommandError, CommandRunner, SubprocessRunner, needs_elevation, run_checked
from bnetguard.utils import normalize_name

LOGGER = logging.getLogger("bnetguard.controller")

DEFAULT_GRACE_PERIOD_MS = 5000

Command = tuple[str, list[str]]
Sleeper = Callable[[float], Awaitable[None]]

_REGISTRY_NOT_FOUND = "unable to find"


class Terminator(Protocol):
    def graceful(self, pid: int) -> Command: ...

    def forced(self, pid: int) -> Command: ...

    def liveness(self, pid: int) -> Command: ...

    def is_alive(self, pid: int, result: CommandResult) -> bool: ...

    def by_image_name(self, name: str, force: bool) -> Command | None: ...


class WindowsTerminator:
    def graceful(self, pid: int) -> Command:
        return "taskkill", ["/PID", str(pid)]

    def forced(self, pid: int) -> Command:
        return "taskkill", ["/PID", str(pid), "/F"]

    def liveness(self, pid: int) -> Command:
        return "tasklist", ["/FI", f"PID eq {pid}", "/FO", "CSV", "/NH"]

    def is_alive(self, pid: int, result: CommandResult) -> bool:
        if not result.ok:
            return False
        return any(proc.pid == pid for proc in parse_tasklist(result.stdout))

    def by_image_name(self, name: str, force: bool) -> Command | None:
        args = ["/IM", name]
        if force:
            args.append("/F")
        return "taskkill", args


class PosixTerminator:
    def graceful(self, pid: int) -> Command:
        return "kill", [str(pid)]

    def forced(self, pid: int) -> Command:
        return "kill", ["-9", str(pid)]

    def liveness(self, pid: int) -> Command:
        return "kill", ["-0", str(pid)]

    def is_alive(self, pid: int, result: CommandResult) -> bool:
        # kill -0 on a process owned by someone else fails with EPERM but it still exists
        return result.ok or needs_elevation(result.output)

    def by_image_name(self, name: str, force: bool) -> Command | None:
        return None


def build_terminator(platform: Platform) -> Terminator:
    return WindowsTerminator() if platform == "windows" else PosixTerminator()


class ProcessController:
    def __init__(
        self,
        detector: ProcessDetector,
        runner: CommandRunner | None = None,
        terminator: Terminator | None = None,
        grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS,
        dry_run: bool = False,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._detector = detector
        self._platform = detector.platform
        self._runner = runner or SubprocessRunner()
        self._terminator = terminator or build_terminator(self._platform)
        self._grace_period_ms = grace_period_ms
        self._dry_run = dry_run
        self._sleep = sleep

    @property
    def detector(self) -> ProcessDetector:
        return self._detector

    async def terminate_process(
        self,
        pid: int,
        force: bool = False,
        grace_period_ms: int | None = None,
        process_name: str = "",
    ) -> TerminationOutcome:
        if pid <= 0:
            LOGGER.warning("Refusing to terminate invalid pid=%s name=%s", pid, process_name)
            return TerminationOutcome(
                pid=pid,
                process_name=process_name,
                success=False,
                error=f"Invalid pid: {pid}",
            )

        grace_ms = self._grace_period_ms if grace_period_ms is None else max(grace_period_ms, 0)

        if self._dry_run:
            method: TerminationMethod = "forced" if force else "graceful"
            LOGGER.info("[dry-run] terminate pid=%s name=%s method=%s", pid, process_name, method)
            return TerminationOutcome(pid=pid, process_name=process_name, success=True, method=method)

        try:
            method = await self._terminate(pid, force, grace_ms, process_name)
        except CommandError as exc:
            LOGGER.warning("Terminate failed pid=%s name=%s error=%s", pid, process_name, exc)
            return TerminationOutcome(
                pid=pid,
                process_name=process_name,
                success=False,
                error=f"Failed to terminate process {pid}: {exc}",
                requires_elevated_privilege=exc.requires_elevated_privilege,
            )
        except OSError as exc:
            LOGGER.warning("Terminate failed pid=%s name=%s error=%s", pid, process_name, exc)
            return TerminationOutcome(
                pid=pid,
                process_name=process_name,
                success=False,
                error=f"Failed to terminate process {pid}: {exc}",
            )

        LOGGER.info("Terminated pid=%s name=%s method=%s", pid, process_name, method)
        return TerminationOutcome(pid=pid, process_name=process_name, success=True, method=method)

    async def terminate_all_processes(
        self,
        force: bool = False,
        grace_period_ms: int | None = None,
        include_launcher: bool = True,
        include_games: bool = True,
    ) -> TerminationReport:
        targets = [
            record
            for record in await self._fresh_detection()
            if (include_launcher or not record.is_launcher) and (include_games or record.is_launcher)
        ]

        outcomes = await self._terminate_each(targets, force, grace_period_ms)
        report = TerminationReport.from_outcomes(outcomes)
        LOGGER.info(
            "Terminated %s of %s processes (failed=%s)",
            report.terminated_count,
            report.total,
            report.failed_count,
        )
        return report

    async def terminate_game(
        self,
        game_name: str,
        force: bool = False,
        grace_period_ms: int | None = None,
    ) -> TerminationReport:
        wanted = normalize_name(game_name)
        targets = [
            record
            for record in await self._fresh_detection()
            if wanted and not record.is_launcher and wanted in normalize_name(record.type)
        ]

        if not targets:
            return TerminationReport.failure(f"No processes found for game: {game_name}", game=game_name)

        outcomes = await self._terminate_each(targets, force, grace_period_ms)
        return TerminationReport.from_outcomes(outcomes, game=game_name)

    async def block_launcher_startup(self) -> ActionResult:
        if self._platform == "windows":
            return await self._remove_run_keys()
        if self._platform == "macos":
            return await self._remove_login_item()
        return ActionResult.unsupported(self._platform, method="startup")

    async def _terminate(self, pid: int, force: bool, grace_ms: int, process_name: str) -> TerminationMethod:
        initial = self._terminator.forced(pid) if force else self._terminator.graceful(pid)
        try:
            await run_checked(self._runner, *initial)
        except CommandError:
            fallback = self._terminator.by_image_name(process_name, force) if process_name else None
            if fallback is None:
                raise
            LOGGER.info("PID-based termination of %s failed, retrying by image name %s", pid, process_name)
            await run_checked(self._runner, *fallback)
            return "image-name-fallback"

        if force:
            return "forced"

        await self._sleep(grace_ms / 1000)
        if not await self._is_alive(pid):
            return "graceful"

        LOGGER.info("Process pid=%s survived grace period of %sms, escalating", pid, grace_ms)
        try:
            await run_checked(self._runner, *self._terminator.forced(pid))
        except CommandError:
            if await self._is_alive(pid):
                raise
            return "graceful"
        return "graceful-then-forced"

    async def _is_alive(self, pid: int) -> bool:
        result = await self._runner.run(*self._terminator.liveness(pid))
        return self._terminator.is_alive(pid, result)

    async def _fresh_detection(self) -> tuple[ProcessRecord, ...]:
        self._detector.clear_cache()
        records = await self._detector.detect()
        own_pid = os.getpid()
        return tuple(record for record in records if record.pid != own_pid)

    async def _terminate_each(
        self,
        targets: list[ProcessRecord],
        force: bool,
        grace_period_ms: int | None,
    ) -> list[TerminationOutcome]:
        outcomes: list[TerminationOutcome] = []
        for record in targets:
            try:
                outcome = await self.terminate_process(
                    record.pid,
                    force=force,
                    grace_period_ms=grace_period_ms,
                    process_name=record.name,
                )
            except Exception as exc:
                LOGGER.exception("Unexpected error terminating pid=%s name=%s", record.pid, record.name)
                outcome = TerminationOutcome(
                    pid=record.pid,
                    process_name=record.name,
                    success=False,
                    error=str(exc),
                )
            outcomes.append(outcome)

        if targets:
            self._detector.clear_cache()
        return outcomes

    async def _remove_run_keys(self) -> ActionResult:
        startup = self._detector.catalog.startup
        keys: dict[str, str] = {}
        errors: list[str] = []
        elevation = False

        for key in startup.run_keys:
            result = await self._runner.run("reg", ["delete", key, "/v", startup.value_name, "/f"])
            if result.ok:
                keys[key] = "removed"
                LOGGER.info("Removed startup value %s from %s", startup.value_name, key)
            elif _REGISTRY_NOT_FOUND in result.output.lower():
                keys[key] = "not_found"
            else:
                keys[key] = result.output or f"exit code {result.exit_code}"
                errors.append(f"{key}: {keys[key]}")
                elevation = elevation or needs_elevation(result.output)

        if errors:
            LOGGER.warning("Failed to remove startup entries: %s", "; ".join(errors))
            return ActionResult(
                success=False,
                method="registry",
                error="; ".join(errors),
                requires_elevated_privilege=elevation,
                details={"keys": keys},
            )
        return ActionResult(success=True, method="registry", details={"keys": keys})

    async def _remove_login_item(self) -> ActionResult:
        login_item = self._detector.catalog.startup.login_item
        script = f'tell application "System Events" to delete login item "{login_item}"'
        result = await self._runner.run("osascript", ["-e", script])
        if not result.ok:
            LOGGER.warning("Failed to remove login item %s: %s", login_item, result.output)
            return ActionResult(
                success=False,
                method="login items",
                error=result.output or f"osascript exit code {result.exit_code}",
                requires_elevated_privilege=needs_elevation(result.output),
            )

        LOGGER.info("Removed login item %s", login_item)
        return ActionResult(success=True, method="login items", details={"login_item": login_item})
