from __future__ import annotations

import asyncio

from bnetguard.controller import ProcessController
from bnetguard.detector import ProcessDetector, PsLister, TasklistLister
from bnetguard.models import CommandResult

OK = CommandResult(stdout="", stderr="", exit_code=0)
GONE = CommandResult(stdout="", stderr="kill: (4242) - No such process", exit_code=1)

PS_OUTPUT = """USER PID %CPU %MEM VSZ RSS TTY STAT START TIME COMMAND
kid 61100 1.0 2.0 1000 2000 ? S 10:00 0:01 C:\\Program Files (x86)\\Battle.net\\Battle.net.exe
kid 61200 9.0 9.0 1000 2000 ? S 10:01 0:09 C:\\Program Files (x86)\\World of Warcraft\\_retail_\\Wow.exe
kid 300 0.0 0.1 1000 2000 ? S 10:02 0:00 /usr/bin/bash
"""

TASKLIST_OUTPUT = '"Battle.net.exe","61100","Console","1","1 K"\r\n"Wow.exe","61200","Console","1","1 K"\r\n'


class _ScriptedRunner:
    def __init__(self, handler) -> None:
        self._handler = handler
        self.calls: list[str] = []

    async def run(self, command: str, args) -> CommandResult:
        line = " ".join([command, *args])
        self.calls.append(line)
        return self._handler(line)


def _posix_handler(overrides: dict[str, CommandResult] | None = None):
    overrides = overrides or {}

    def handler(line: str) -> CommandResult:
        if line == "ps aux":
            return CommandResult(stdout=PS_OUTPUT, stderr="", exit_code=0)
        return overrides.get(line, OK)

    return handler


def _make_controller(platform: str, runner: _ScriptedRunner, dry_run: bool = False):
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    lister = TasklistLister() if platform == "windows" else PsLister()
    detector = ProcessDetector(platform=platform, runner=runner, listers=[lister])
    controller = ProcessController(
        detector=detector,
        runner=runner,
        grace_period_ms=5000,
        dry_run=dry_run,
        sleep=fake_sleep,
    )
    return controller, sleeps


def test_force_skips_graceful_signal() -> None:
    runner = _ScriptedRunner(_posix_handler())
    controller, sleeps = _make_controller("linux", runner)

    outcome = asyncio.run(controller.terminate_process(4242, force=True))

    assert outcome.success is True
    assert outcome.method == "forced"
    assert runner.calls == ["kill -9 4242"]
    assert sleeps == []


def test_graceful_escalates_when_process_survives_grace_period() -> None:
    runner = _ScriptedRunner(_posix_handler())
    controller, sleeps = _make_controller("linux", runner)

    outcome = asyncio.run(controller.terminate_process(4242, grace_period_ms=1500))

    assert outcome.method == "graceful-then-forced"
    assert runner.calls == ["kill 4242", "kill -0 4242", "kill -9 4242"]
    assert sleeps == [1.5]


def test_graceful_only_when_liveness_check_reports_gone() -> None:
    runner = _ScriptedRunner(_posix_handler({"kill -0 4242": GONE}))
    controller, sleeps = _make_controller("linux", runner)

    outcome = asyncio.run(controller.terminate_process(4242))

    assert outcome.success is True
    assert outcome.method == "graceful"
    assert "kill -9 4242" not in runner.calls
    assert sleeps == [5.0]


def test_permission_denied_is_reported_with_elevation_flag() -> None:
    denied = CommandResult(stdout="", stderr="kill: (1) - Operation not permitted", exit_code=1)
    runner = _ScriptedRunner(_posix_handler({"kill 1": denied}))
    controller, _ = _make_controller("linux", runner)

    outcome = asyncio.run(controller.terminate_process(1))

    assert outcome.success is False
    assert outcome.requires_elevated_privilege is True
    assert "Operation not permitted" in outcome.error


def test_windows_falls_back_to_image_name() -> None:
    missing = CommandResult(stdout="", stderr='ERROR: The process "4242" not found.', exit_code=128)
    runner = _ScriptedRunner(lambda line: missing if line.startswith("taskkill /PID") else OK)
    controller, _ = _make_controller("windows", runner)

    outcome = asyncio.run(controller.terminate_process(4242, force=True, process_name="Battle.net.exe"))

    assert outcome.success is True
    assert outcome.method == "image-name-fallback"
    assert runner.calls == ["taskkill /PID 4242 /F", "taskkill /IM Battle.net.exe /F"]


def test_windows_without_name_reports_failure() -> None:
    missing = CommandResult(stdout="", stderr='ERROR: The process "4242" not found.', exit_code=128)
    runner = _ScriptedRunner(lambda line: missing)
    controller, _ = _make_controller("windows", runner)

    outcome = asyncio.run(controller.terminate_process(4242))

    assert outcome.success is False
    assert outcome.method is None
    assert "4242" in outcome.error


def test_windows_liveness_check_uses_tasklist_filter() -> None:
    def handler(line: str) -> CommandResult:
        if line.startswith("tasklist /FI"):
            return CommandResult(stdout='"Wow.exe","61200","Console","1","1 K"\r\n', stderr="", exit_code=0)
        return OK

    runner = _ScriptedRunner(handler)
    controller, _ = _make_controller("windows", runner)

    outcome = asyncio.run(controller.terminate_process(61200, process_name="Wow.exe"))

    assert outcome.method == "graceful-then-forced"
    assert runner.calls == [
        "taskkill /PID 61200",
        "tasklist /FI PID eq 61200 /FO CSV /NH",
        "taskkill /PID 61200 /F",
    ]


def test_terminate_all_continues_after_a_failure() -> None:
    failure = CommandResult(stdout="", stderr="kill: (61100) - Operation not permitted", exit_code=1)
    runner = _ScriptedRunner(_posix_handler({"kill -9 61100": failure}))
    controller, _ = _make_controller("linux", runner)

    report = asyncio.run(controller.terminate_all_processes(force=True))

    assert report.total == 2
    assert report.terminated_count == 1
    assert report.failed_count == 1
    assert report.success is False
    assert {item.pid: item.success for item in report.outcomes} == {61100: False, 61200: True}
    assert "kill -9 61200" in runner.calls


def test_terminate_all_respects_launcher_filter() -> None:
    runner = _ScriptedRunner(_posix_handler())
    controller, _ = _make_controller("linux", runner)

    report = asyncio.run(controller.terminate_all_processes(force=True, include_launcher=False))

    assert [item.pid for item in report.outcomes] == [61200]
    assert "kill -9 61100" not in runner.calls


def test_terminate_all_redetects_instead_of_using_cache() -> None:
    runner = _ScriptedRunner(_posix_handler())
    controller, _ = _make_controller("linux", runner)

    asyncio.run(controller.detector.detect())
    asyncio.run(controller.terminate_all_processes(force=True, include_games=False))

    assert runner.calls.count("ps aux") == 2


def test_terminate_game_without_matches_returns_failure() -> None:
    runner = _ScriptedRunner(lambda line: CommandResult(stdout="", stderr="", exit_code=0))
    controller, _ = _make_controller("windows", runner)

    report = asyncio.run(controller.terminate_game("World of Warcraft"))

    assert report.success is False
    assert report.error == "No processes found for game: World of Warcraft"
    assert report.total == 0


def test_terminate_game_matches_type_case_insensitively() -> None:
    def handler(line: str) -> CommandResult:
        if line == "tasklist /FO CSV /V /NH":
            return CommandResult(stdout=TASKLIST_OUTPUT, stderr="", exit_code=0)
        return OK

    runner = _ScriptedRunner(handler)
    controller, _ = _make_controller("windows", runner)

    report = asyncio.run(controller.terminate_game("world of warcraft", force=True))

    assert report.success is True
    assert report.game == "world of warcraft"
    assert [item.pid for item in report.outcomes] == [61200]
    assert "taskkill /PID 61100 /F" not in runner.calls


def test_dry_run_does_not_dispatch_kill_commands() -> None:
    runner = _ScriptedRunner(_posix_handler())
    controller, _ = _make_controller("linux", runner, dry_run=True)

    report = asyncio.run(controller.terminate_all_processes())

    assert report.terminated_count == 2
    assert runner.calls == ["ps aux"]


def test_block_startup_tolerates_missing_registry_value() -> None:
    not_found = CommandResult(
        stdout="",
        stderr="ERROR: The system was unable to find the specified registry key or value.",
        exit_code=1,
    )

    def handler(line: str) -> CommandResult:
        return not_found if "HKCU" in line else OK

    runner = _ScriptedRunner(handler)
    controller, _ = _make_controller("windows", runner)

    result = asyncio.run(controller.block_launcher_startup())

    assert result.success is True
    assert result.method == "registry"
    assert list(result.details["keys"].values()) == ["not_found", "removed"]
    assert all(call.startswith("reg delete") and "/v Battle.net /f" in call for call in runner.calls)


def test_block_startup_reports_access_denied() -> None:
    denied = CommandResult(stdout="", stderr="ERROR: Access is denied.", exit_code=1)
    runner = _ScriptedRunner(lambda line: denied if "HKLM" in line else OK)
    controller, _ = _make_controller("windows", runner)

    result = asyncio.run(controller.block_launcher_startup())

    assert result.success is False
    assert result.requires_elevated_privilege is True


def test_block_startup_on_macos_removes_login_item() -> None:
    runner = _ScriptedRunner(lambda line: OK)
    controller, _ = _make_controller("macos", runner)

    result = asyncio.run(controller.block_launcher_startup())

    assert result.success is True
    assert result.method == "login items"
    assert runner.calls == ['osascript -e tell application "System Events" to delete login item "Battle.net"']


def test_block_startup_on_linux_is_not_supported() -> None:
    runner = _ScriptedRunner(lambda line: OK)
    controller, _ = _make_controller("linux", runner)

    result = asyncio.run(controller.block_launcher_startup())

    assert result.success is False
    assert result.not_supported is True
    assert runner.calls == []


def test_failed_escalation_is_reported_without_image_name_retry() -> None:
    denied = CommandResult(stdout="", stderr="ERROR: Access is denied.", exit_code=1)
    still_listed = CommandResult(stdout='"Wow.exe","61200","Console","1","1 K"\r\n', stderr="", exit_code=0)

    def handler(line: str) -> CommandResult:
        if line == "taskkill /PID 61200 /F":
            return denied
        if line.startswith("tasklist /FI"):
            return still_listed
        return OK

    runner = _ScriptedRunner(handler)
    controller, _ = _make_controller("windows", runner)

    outcome = asyncio.run(controller.terminate_process(61200, process_name="Wow.exe"))

    assert outcome.success is False
    assert outcome.method is None
    assert outcome.requires_elevated_privilege is True
    assert not any(call.startswith("taskkill /IM") for call in runner.calls)
    assert runner.calls[-1].startswith("tasklist /FI")


def test_non_positive_pids_are_refused() -> None:
    runner = _ScriptedRunner(_posix_handler())
    controller, _ = _make_controller("linux", runner)

    for pid in (0, -1):
        outcome = asyncio.run(controller.terminate_process(pid, force=True))

        assert outcome.success is False
        assert outcome.error == f"Invalid pid: {pid}"

    assert runner.calls == []
