from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping, Union

Platform = Literal["windows", "macos", "linux"]
ProcessLister = Literal["auto", "command", "psutil"]
TerminationMethod = Literal["graceful", "forced", "graceful-then-forced", "image-name-fallback"]
Direction = Literal["in", "out"]

LAUNCHER_TYPE = "launcher"
UNKNOWN_TYPE = "unknown"


@dataclass(frozen=True)
class ProcessSignature:
    process_names: tuple[str, ...]
    default_paths: tuple[str, ...] = ()
    service_name: str | None = None


@dataclass(frozen=True)
class PlatformCatalog:
    launcher: ProcessSignature
    games: Mapping[str, ProcessSignature]


@dataclass(frozen=True)
class PortRange:
    start: int
    end: int
    description: str

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port <= self.end


@dataclass(frozen=True)
class StartupEntry:
    run_keys: tuple[str, ...]
    value_name: str
    login_item: str


@dataclass(frozen=True)
class RegistryKeys:
    launcher: str
    games: str


@dataclass(frozen=True)
class ApplicationCatalog:
    version: int
    platforms: Mapping[str, PlatformCatalog]
    domains: tuple[str, ...]
    ports: tuple[PortRange, ...]
    startup: StartupEntry
    config_paths: Mapping[str, Mapping[str, str]]
    registry: RegistryKeys

    def for_platform(self, platform: Platform) -> PlatformCatalog:
        try:
            return self.platforms[platform]
        except KeyError:
            raise KeyError(f"Catalog has no entry for platform: {platform}") from None


@dataclass(frozen=True)
class RawProcess:
    pid: int
    name: str
    command: str | None = None


@dataclass(frozen=True)
class ProcessRecord:
    name: str
    pid: int
    platform: Platform
    type: str
    detected_at: datetime
    raw_command: str | None = None

    @property
    def is_launcher(self) -> bool:
        return self.type == LAUNCHER_TYPE


@dataclass(frozen=True)
class DetectionCache:
    records: tuple[ProcessRecord, ...]
    captured_at: float


@dataclass(frozen=True)
class MonitorStatus:
    processes: tuple[ProcessRecord, ...]
    count: int
    active: bool
    timestamp: datetime


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return (self.stderr or self.stdout).strip()


@dataclass(frozen=True)
class TerminationOutcome:
    pid: int
    process_name: str
    success: bool
    method: TerminationMethod | None = None
    error: str | None = None
    requires_elevated_privilege: bool = False


@dataclass(frozen=True)
class TerminationReport:
    total: int
    terminated_count: int
    failed_count: int
    outcomes: tuple[TerminationOutcome, ...]
    game: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.failed_count == 0

    @classmethod
    def from_outcomes(
        cls,
        outcomes: list[TerminationOutcome],
        game: str | None = None,
    ) -> TerminationReport:
        terminated = sum(1 for item in outcomes if item.success)
        return cls(
            total=len(outcomes),
            terminated_count=terminated,
            failed_count=len(outcomes) - terminated,
            outcomes=tuple(outcomes),
            game=game,
        )

    @classmethod
    def failure(cls, error: str, game: str | None = None) -> TerminationReport:
        return cls(total=0, terminated_count=0, failed_count=0, outcomes=(), game=game, error=error)


@dataclass(frozen=True)
class HostsEntryRule:
    domain: str
    kind: Literal["hosts-entry"] = "hosts-entry"


@dataclass(frozen=True)
class FirewallRule:
    direction: Direction
    target: str
    rule_name: str
    target_kind: Literal["program", "remoteip"] = "program"
    kind: Literal["firewall-rule"] = "firewall-rule"


BlockingRule = Union[HostsEntryRule, FirewallRule]


@dataclass(frozen=True)
class ActionResult:
    success: bool
    method: str | None = None
    error: str | None = None
    requires_elevated_privilege: bool = False
    not_supported: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unsupported(cls, platform: str, method: str | None = None) -> ActionResult:
        return cls(
            success=False,
            method=method,
            error=f"Platform not supported: {platform}",
            not_supported=True,
        )


@dataclass(frozen=True)
class EnforcementConfig:
    enabled: bool
    force: bool
    include_launcher: bool
    include_games: bool


@dataclass(frozen=True)
class AppConfig:
    platform: Platform
    log_level: str
    cache_expiry_ms: int
    grace_period_ms: int
    monitor_interval_ms: int
    process_lister: ProcessLister
    hosts_path: str | None
    loopback_address: str
    catalog_path: str | None
    enforcement: EnforcementConfig


@dataclass(frozen=True)
class AgentStatus:
    running: bool
    platform: Platform
    enforcing: bool
    active: bool
    process_count: int
    last_checked: datetime | None
    last_report: TerminationReport | None


def to_payload(value: Any) -> Any:
    """Convert result dataclasses into JSON-friendly structures."""
    if isinstance(value, (list, tuple)):
        return [to_payload(item) for item in value]
    if hasattr(value, "__dataclass_fields__"):
        payload = asdict(value)
        if isinstance(value, TerminationReport):
            payload["success"] = value.success
        return _stringify_datetimes(payload)
    return _stringify_datetimes(value)


def _stringify_datetimes(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _stringify_datetimes(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify_datetimes(item) for item in value]
    return value
