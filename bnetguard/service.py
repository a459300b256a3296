from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from bnetguard.agent import EnforcementAgent
from bnetguard.components import Components, build_components
from bnetguard.config import load_config
from bnetguard.logging_setup import LOG_FORMAT, configure_logging
from bnetguard.models import ActionResult, AppConfig

LOGGER = logging.getLogger("bnetguard.service")

SERVICE_NAME = "BnetGuard"
SERVICE_DISPLAY_NAME = "BnetGuard Enforcement"
SERVICE_DESCRIPTION = "Terminates Battle.net launcher and game processes and keeps Battle.net domains blocked"
SERVICE_CLASS = "bnetguard.service.BnetGuardWindowsService"
SERVICE_METHOD = "windows service"

_ERROR_ACCESS_DENIED = 5
_ERROR_SERVICE_NOT_ACTIVE = 1062


try:
    import pywintypes
    import servicemanager
    import win32event
    import win32service
    import win32serviceutil

    PYWIN32_AVAILABLE = True
except ImportError:  # pragma: no cover - platform dependency
    pywintypes = None
    servicemanager = None
    win32event = None
    win32service = None
    win32serviceutil = None
    PYWIN32_AVAILABLE = False


@dataclass(frozen=True)
class ServiceSettings:
    config_path: str
    dry_run: bool = False
    block_network: bool = False
    unblock_on_stop: bool = True


def _program_data_root() -> Path:
    program_data = Path(os.environ.get("PROGRAMDATA", r"C:\ProgramData"))
    return program_data / "bnetguard"


def service_settings_path() -> Path:
    return _program_data_root() / "service_settings.json"


def service_log_path() -> Path:
    return _program_data_root() / "service.log"


def write_service_settings(settings: ServiceSettings, path: Path | None = None) -> Path:
    output_path = path or service_settings_path()
    output_path.parent.mkdir(parents=True, exist_ok=True)

    payload = {
        "config_path": str(Path(settings.config_path).resolve()),
        "dry_run": settings.dry_run,
        "block_network": settings.block_network,
        "unblock_on_stop": settings.unblock_on_stop,
    }
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return output_path


def read_service_settings(path: Path | None = None) -> ServiceSettings:
    settings_path = path or service_settings_path()
    if not settings_path.exists():
        raise FileNotFoundError(f"Service settings not found at {settings_path}")

    payload = json.loads(settings_path.read_text(encoding="utf-8"))
    return ServiceSettings(
        config_path=str(payload.get("config_path", "config/default.json")),
        dry_run=bool(payload.get("dry_run", False)),
        block_network=bool(payload.get("block_network", False)),
        unblock_on_stop=bool(payload.get("unblock_on_stop", True)),
    )


class ServiceSession:
    """One run of the service: optional network blocks plus the enforcement agent.

    Blocks applied by ``start`` are reverted by ``stop`` unless the settings ask
    to keep them. The agent runs in a background thread so the service control
    handler stays responsive.
    """

    def __init__(
        self,
        settings: ServiceSettings,
        config: AppConfig | None = None,
        components: Components | None = None,
    ) -> None:
        self._settings = settings
        self._config = config or load_config(settings.config_path)
        self._components = components or build_components(self._config, dry_run=settings.dry_run)
        self._agent = EnforcementAgent(
            config=self._config,
            detector=self._components.detector,
            controller=self._components.controller,
        )
        self._thread: threading.Thread | None = None
        self._blocked = False

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def agent(self) -> EnforcementAgent:
        return self._agent

    @property
    def network_blocked(self) -> bool:
        return self._blocked

    def start(self) -> list[ActionResult]:
        results: list[ActionResult] = []
        if self._settings.block_network:
            if self._settings.dry_run:
                LOGGER.info("[dry-run] skipping hosts file and firewall blocks")
            else:
                results = asyncio.run(self._apply_blocks())
                self._blocked = any(result.success for result in results)

        self._thread = threading.Thread(target=self._agent.run, name="bnetguard-service-agent", daemon=True)
        self._thread.start()
        return results

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float = 10.0) -> list[ActionResult]:
        self._agent.stop()
        deadline = time.monotonic() + timeout
        # A stop that lands before the agent loop has started is repeated until the thread exits.
        while self.is_alive() and time.monotonic() < deadline:
            self._thread.join(timeout=0.2)
            self._agent.stop()

        if not self._blocked or not self._settings.unblock_on_stop:
            return []

        results = asyncio.run(self._components.blocker.unblock_all())
        self._blocked = False
        for result in results:
            if not result.success:
                LOGGER.warning("Could not revert %s block: %s", result.method, result.error)
        return results

    async def _apply_blocks(self) -> list[ActionResult]:
        blocker = self._components.blocker
        results = [await blocker.block_via_hosts_file(), await blocker.block_via_firewall()]
        for result in results:
            if result.success:
                LOGGER.info("Applied %s block", result.method)
            elif not result.not_supported:
                LOGGER.warning("Could not apply %s block: %s", result.method, result.error)
        return results


def _missing_pywin32() -> ActionResult | None:
    if PYWIN32_AVAILABLE:
        return None
    return ActionResult(
        success=False,
        method=SERVICE_METHOD,
        error="pywin32 is required for service commands. Install it with: pip install pywin32",
        not_supported=True,
    )


def _service_failure(action: str, exc: Exception) -> ActionResult:
    code = getattr(exc, "winerror", None)
    message = getattr(exc, "strerror", None) or str(exc)
    LOGGER.warning("Service %s failed code=%s error=%s", action, code, message)
    return ActionResult(
        success=False,
        method=SERVICE_METHOD,
        error=f"Service {action} failed: {message}",
        requires_elevated_privilege=code == _ERROR_ACCESS_DENIED,
        details={"action": action},
    )


def _state_name(code: int) -> str:
    mapping = {
        win32service.SERVICE_STOPPED: "stopped",
        win32service.SERVICE_START_PENDING: "start_pending",
        win32service.SERVICE_STOP_PENDING: "stop_pending",
        win32service.SERVICE_RUNNING: "running",
        win32service.SERVICE_PAUSED: "paused",
    }
    return mapping.get(code, f"unknown({code})")


def _query_state() -> str | None:
    try:
        code = win32serviceutil.QueryServiceStatus(SERVICE_NAME)[1]
    except pywintypes.error:
        return None
    return _state_name(code)


def install_service(
    settings: ServiceSettings,
    auto_start: bool = True,
    settings_path: Path | None = None,
) -> ActionResult:
    missing = _missing_pywin32()
    if missing:
        return missing

    settings_file = write_service_settings(settings, settings_path)
    options = {
        "pythonClassString": SERVICE_CLASS,
        "serviceName": SERVICE_NAME,
        "displayName": SERVICE_DISPLAY_NAME,
        "startType": win32service.SERVICE_AUTO_START if auto_start else win32service.SERVICE_DEMAND_START,
        "description": SERVICE_DESCRIPTION,
    }

    action = "updated" if _query_state() is not None else "installed"
    try:
        if action == "updated":
            win32serviceutil.ChangeServiceConfig(**options)
        else:
            win32serviceutil.InstallService(**options)
    except pywintypes.error as exc:
        return _service_failure("install", exc)

    LOGGER.info("Service %s settings=%s block_network=%s", action, settings_file, settings.block_network)
    return ActionResult(
        success=True,
        method=SERVICE_METHOD,
        details={
            "action": action,
            "settings": str(settings_file),
            "auto_start": auto_start,
            "block_network": settings.block_network,
        },
    )


def remove_service() -> ActionResult:
    missing = _missing_pywin32()
    if missing:
        return missing

    state = _query_state()
    if state is None:
        return ActionResult(success=True, method=SERVICE_METHOD, details={"action": "remove", "state": "not_installed"})

    if state != "stopped":
        try:
            win32serviceutil.StopService(SERVICE_NAME)
        except pywintypes.error as exc:
            LOGGER.debug("Service was not running before removal: %s", exc)

    try:
        win32serviceutil.RemoveService(SERVICE_NAME)
    except pywintypes.error as exc:
        return _service_failure("remove", exc)
    return ActionResult(success=True, method=SERVICE_METHOD, details={"action": "remove", "state": "removed"})


def start_service() -> ActionResult:
    missing = _missing_pywin32()
    if missing:
        return missing

    try:
        win32serviceutil.StartService(SERVICE_NAME)
    except pywintypes.error as exc:
        return _service_failure("start", exc)
    return ActionResult(success=True, method=SERVICE_METHOD, details={"action": "start", "state": "start_pending"})


def stop_service() -> ActionResult:
    missing = _missing_pywin32()
    if missing:
        return missing

    try:
        win32serviceutil.StopService(SERVICE_NAME)
    except pywintypes.error as exc:
        if getattr(exc, "winerror", None) != _ERROR_SERVICE_NOT_ACTIVE:
            return _service_failure("stop", exc)
        return ActionResult(success=True, method=SERVICE_METHOD, details={"action": "stop", "state": "stopped"})
    return ActionResult(success=True, method=SERVICE_METHOD, details={"action": "stop", "state": "stop_pending"})


def service_status() -> ActionResult:
    missing = _missing_pywin32()
    if missing:
        return missing

    state = _query_state()
    details: dict[str, object] = {"action": "status", "state": state or "not_installed"}
    if state is not None and service_settings_path().exists():
        settings = read_service_settings()
        details["block_network"] = settings.block_network
        details["dry_run"] = settings.dry_run
    return ActionResult(success=True, method=SERVICE_METHOD, details=details)


if PYWIN32_AVAILABLE:  # pragma: no branch

    class BnetGuardWindowsService(win32serviceutil.ServiceFramework):
        _svc_name_ = SERVICE_NAME
        _svc_display_name_ = SERVICE_DISPLAY_NAME
        _svc_description_ = SERVICE_DESCRIPTION

        def __init__(self, args: list[str]) -> None:
            super().__init__(args)
            self.hWaitStop = win32event.CreateEvent(None, 0, 0, None)

        def SvcStop(self) -> None:  # noqa: N802 (pywin32 naming)
            self.ReportServiceStatus(win32service.SERVICE_STOP_PENDING)
            win32event.SetEvent(self.hWaitStop)

        def SvcDoRun(self) -> None:  # noqa: N802 (pywin32 naming)
            session = ServiceSession(read_service_settings())
            _configure_service_logging(session.config.log_level)

            for result in session.start():
                servicemanager.LogInfoMsg(f"BnetGuard {result.method} block success={result.success}")
            servicemanager.LogInfoMsg("BnetGuard service started")

            while win32event.WaitForSingleObject(self.hWaitStop, 1000) != win32event.WAIT_OBJECT_0:
                if not session.is_alive():
                    LOGGER.error("Enforcement agent thread exited unexpectedly")
                    break

            session.stop()
            servicemanager.LogInfoMsg("BnetGuard service stopped")


def _configure_service_logging(level: str) -> None:
    configure_logging(level)
    service_log_path().parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(service_log_path(), encoding="utf-8")
    file_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
