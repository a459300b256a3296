from __future__ import annotations

import asyncio
import csv
import inspect
import logging
import time
from datetime import UTC, datetime
from typing import Awaitable, Callable, Protocol, Sequence, Union

import psutil

from bnetguard.catalog import load_catalog
from bnetguard.models import (
    LAUNCHER_TYPE,
    ApplicationCatalog,
    DetectionCache,
    MonitorStatus,
    Platform,
    PlatformCatalog,
    ProcessLister,
    ProcessRecord,
    RawProcess,
)
from bnetguard.runner import CommandRunner, SubprocessRunner
from bnetguard.utils import normalize_name, process_name_from_command

LOGGER = logging.getLogger("bnetguard.detector")

DEFAULT_CACHE_EXPIRY_MS = 5000
DEFAULT_MONITOR_INTERVAL_MS = 5000

MonitorCallback = Callable[[MonitorStatus], Union[None, Awaitable[None]]]


class ProcessListingError(RuntimeError):
    pass


class Lister(Protocol):
    name: str

    async def list_processes(self, runner: CommandRunner) -> list[RawProcess]: ...


class TasklistLister:
    """Windows process table via ``tasklist`` CSV output."""

    name = "tasklist"

    async def list_processes(self, runner: CommandRunner) -> list[RawProcess]:
        result = await runner.run("tasklist", ["/FO", "CSV", "/V", "/NH"])
        if not result.ok:
            raise ProcessListingError(f"tasklist failed: {result.output or result.exit_code}")
        return parse_tasklist(result.stdout)


class PsLister:
    """POSIX process table via ``ps aux``, shared by macOS and Linux."""

    name = "ps"

    async def list_processes(self, runner: CommandRunner) -> list[RawProcess]:
        result = await runner.run("ps", ["aux"])
        if not result.ok:
            raise ProcessListingError(f"ps failed: {result.output or result.exit_code}")
        return parse_ps_aux(result.stdout)


class PsutilLister:
    name = "psutil"

    async def list_processes(self, runner: CommandRunner) -> list[RawProcess]:
        return await asyncio.to_thread(self._snapshot)

    @staticmethod
    def _snapshot() -> list[RawProcess]:
        processes: list[RawProcess] = []
        try:
            for proc in psutil.process_iter(["pid", "name"]):
                name = proc.info.get("name")
                if name:
                    processes.append(RawProcess(pid=int(proc.info["pid"]), name=str(name)))
        except psutil.Error as exc:
            raise ProcessListingError(f"psutil listing failed: {exc}") from exc
        return processes


def parse_tasklist(output: str) -> list[RawProcess]:
    processes: list[RawProcess] = []
    for row in csv.reader(line for line in output.splitlines() if line.strip()):
        if len(row) < 2:
            continue
        name, raw_pid = row[0].strip(), row[1].strip()
        if not name or not raw_pid.isdigit():
            continue
        processes.append(RawProcess(pid=int(raw_pid), name=name))
    return processes


def parse_ps_aux(output: str) -> list[RawProcess]:
    processes: list[RawProcess] = []
    for line in output.splitlines():
        parts = line.strip().split(None, 10)
        if len(parts) < 11 or not parts[1].isdigit():
            continue
        command = parts[10]
        processes.append(
            RawProcess(pid=int(parts[1]), name=process_name_from_command(command), command=command)
        )
    return processes


def build_listers(platform: Platform, mode: ProcessLister = "auto") -> list[Lister]:
    if mode == "psutil":
        return [PsutilLister()]

    command: Lister = TasklistLister() if platform == "windows" else PsLister()
    if mode == "command":
        return [command]
    return [command, PsutilLister()]


class ProcessMatcher:
    def __init__(self, catalog: PlatformCatalog) -> None:
        self._launcher = [normalize_name(name) for name in catalog.launcher.process_names]
        self._games = [
            (game, [normalize_name(name) for name in signature.process_names])
            for game, signature in catalog.games.items()
        ]

    def classify(self, text: str | None) -> str | None:
        haystack = normalize_name(text)
        if not haystack:
            return None

        if any(needle and needle in haystack for needle in self._launcher):
            return LAUNCHER_TYPE

        for game, needles in self._games:
            if any(needle and needle in haystack for needle in needles):
                return game

        return None


class ProcessDetector:
    def __init__(
        self,
        platform: Platform,
        catalog: ApplicationCatalog | None = None,
        runner: CommandRunner | None = None,
        listers: Sequence[Lister] | None = None,
        cache_expiry_ms: int = DEFAULT_CACHE_EXPIRY_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._platform = platform
        self._catalog = catalog or load_catalog()
        self._runner = runner or SubprocessRunner()
        self._listers = list(listers) if listers is not None else build_listers(platform)
        self._cache_expiry_ms = cache_expiry_ms
        self._clock = clock
        self._matcher = ProcessMatcher(self._catalog.for_platform(platform))

        self._cache: DetectionCache | None = None
        self._monitor_task: asyncio.Task[None] | None = None

    @property
    def platform(self) -> Platform:
        return self._platform

    @property
    def catalog(self) -> ApplicationCatalog:
        return self._catalog

    @property
    def is_monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    def classify(self, text: str | None) -> str | None:
        return self._matcher.classify(text)

    async def detect(self) -> tuple[ProcessRecord, ...]:
        cache = self._cache
        now = self._clock()
        if cache is not None and (now - cache.captured_at) * 1000 < self._cache_expiry_ms:
            return cache.records

        records = await self._enumerate()
        self._cache = DetectionCache(records=records, captured_at=now)
        return records

    detect_processes = detect

    def clear_cache(self) -> None:
        self._cache = None

    async def snapshot(self) -> MonitorStatus:
        processes = await self.detect()
        return MonitorStatus(
            processes=processes,
            count=len(processes),
            active=bool(processes),
            timestamp=datetime.now(UTC),
        )

    def start_monitoring(
        self,
        callback: MonitorCallback,
        interval_ms: int = DEFAULT_MONITOR_INTERVAL_MS,
    ) -> asyncio.Task[None]:
        """Start the periodic detection task, replacing any previous one.

        Must be called from inside a running event loop. The first detection
        happens one interval after the call.
        """
        self.stop_monitoring()
        interval = max(interval_ms, 1) / 1000
        task = asyncio.get_running_loop().create_task(
            self._monitor_loop(callback, interval),
            name="bnetguard-monitor",
        )
        self._monitor_task = task
        LOGGER.info("Started process monitoring interval_ms=%s", interval_ms)
        return task

    def stop_monitoring(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task and not task.done():
            task.cancel()
            LOGGER.info("Stopped process monitoring")

    async def _monitor_loop(self, callback: MonitorCallback, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            status = await self.snapshot()
            try:
                outcome = callback(status)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                LOGGER.exception("Monitoring callback failed")

    async def _enumerate(self) -> tuple[ProcessRecord, ...]:
        for lister in self._listers:
            try:
                raw_processes = await lister.list_processes(self._runner)
            except ProcessListingError as exc:
                LOGGER.warning("Process listing via %s failed: %s", lister.name, exc)
                continue
            except Exception:
                LOGGER.exception("Unexpected error listing processes via %s", lister.name)
                continue

            return self._classify_all(raw_processes)

        LOGGER.warning("Could not enumerate processes on %s; treating as none running", self._platform)
        return ()

    def _classify_all(self, raw_processes: list[RawProcess]) -> tuple[ProcessRecord, ...]:
        detected_at = datetime.now(UTC)
        records: list[ProcessRecord] = []
        for raw in raw_processes:
            process_type = self._matcher.classify(raw.command or raw.name)
            if process_type is None:
                continue
            records.append(
                ProcessRecord(
                    name=raw.name,
                    pid=raw.pid,
                    platform=self._platform,
                    type=process_type,
                    detected_at=detected_at,
                    raw_command=raw.command,
                )
            )

        LOGGER.debug("Detected %s target processes out of %s", len(records), len(raw_processes))
        return tuple(records)
