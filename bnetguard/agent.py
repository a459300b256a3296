from __future__ import annotations

import asyncio
import logging
import threading

from bnetguard.controller import ProcessController
from bnetguard.detector import ProcessDetector
from bnetguard.models import AgentStatus, AppConfig, MonitorStatus, TerminationReport

LOGGER = logging.getLogger("bnetguard.agent")


class EnforcementAgent:
    def __init__(
        self,
        config: AppConfig,
        detector: ProcessDetector,
        controller: ProcessController,
        once: bool = False,
    ) -> None:
        self._config = config
        self._detector = detector
        self._controller = controller
        self._once = once

        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._is_running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None

        self._latest_status: MonitorStatus | None = None
        self._last_report: TerminationReport | None = None
        self._last_active: bool | None = None

    def run(self) -> None:
        with self._state_lock:
            if self._is_running:
                LOGGER.warning("Enforcement agent is already running")
                return
            self._is_running = True
            self._stop_event.clear()

        LOGGER.info(
            "Starting enforcement platform=%s enforcing=%s interval_ms=%s",
            self._config.platform,
            self._config.enforcement.enabled,
            self._config.monitor_interval_ms,
        )

        try:
            asyncio.run(self.run_async())
        except KeyboardInterrupt:
            LOGGER.info("Received interrupt, stopping enforcement agent")
        finally:
            with self._state_lock:
                self._is_running = False
                self._loop = None
                self._wakeup = None

    async def run_async(self) -> None:
        wakeup = asyncio.Event()
        with self._state_lock:
            self._loop = asyncio.get_running_loop()
            self._wakeup = wakeup

        interval = self._config.monitor_interval_ms / 1000
        while not self._stop_event.is_set():
            await self.run_cycle()

            if self._once:
                break

            try:
                await asyncio.wait_for(wakeup.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        self._stop_event.set()
        with self._state_lock:
            loop = self._loop
            wakeup = self._wakeup
        if loop and wakeup and not loop.is_closed():
            loop.call_soon_threadsafe(wakeup.set)

    def status(self) -> AgentStatus:
        with self._state_lock:
            latest = self._latest_status
            return AgentStatus(
                running=self._is_running and not self._stop_event.is_set(),
                platform=self._config.platform,
                enforcing=self._config.enforcement.enabled,
                active=latest.active if latest else False,
                process_count=latest.count if latest else 0,
                last_checked=latest.timestamp if latest else None,
                last_report=self._last_report,
            )

    async def run_cycle(self) -> TerminationReport | None:
        try:
            status = await self._detector.snapshot()
            with self._state_lock:
                self._latest_status = status
            self._log_activity(status)

            enforcement = self._config.enforcement
            if not status.active or not enforcement.enabled:
                return None

            report = await self._controller.terminate_all_processes(
                force=enforcement.force,
                include_launcher=enforcement.include_launcher,
                include_games=enforcement.include_games,
            )
            with self._state_lock:
                self._last_report = report

            if report.failed_count:
                LOGGER.warning(
                    "Enforcement left %s of %s processes running",
                    report.failed_count,
                    report.total,
                )
            return report

        except Exception:
            LOGGER.exception("Unhandled error during enforcement cycle")
            return None

    def _log_activity(self, status: MonitorStatus) -> None:
        if status.active == self._last_active:
            return

        self._last_active = status.active
        if status.active:
            LOGGER.info(
                "Battle.net active processes=%s at %s",
                ", ".join(f"{record.name} ({record.type})" for record in status.processes),
                status.timestamp.isoformat(),
            )
        else:
            LOGGER.info("Battle.net is not running")
