from __future__ import annotations

import asyncio

from bnetguard.models import CommandResult
from bnetguard.paths import ConfigPathResolver

OK = CommandResult(stdout="", stderr="", exit_code=0)


class _ScriptedRunner:
    def __init__(self, handler=None) -> None:
        self._handler = handler or (lambda line: OK)
        self.calls: list[str] = []

    async def run(self, command: str, args) -> CommandResult:
        line = " ".join([command, *args])
        self.calls.append(line)
        return self._handler(line)


def _macos_resolver(home, runner: _ScriptedRunner | None = None) -> ConfigPathResolver:
    return ConfigPathResolver(
        platform="macos",
        runner=runner or _ScriptedRunner(),
        environ={"HOME": str(home), "USER": "kid"},
    )


def test_windows_locations_expand_environment_variables() -> None:
    resolver = ConfigPathResolver(
        platform="windows",
        runner=_ScriptedRunner(),
        environ={"appdata": r"C:\Users\kid\AppData\Roaming", "LOCALAPPDATA": r"C:\Users\kid\AppData\Local"},
    )

    locations = resolver.get_config_locations()

    assert locations["battlenet_data"] == r"C:\Users\kid\AppData\Roaming\Battle.net"
    assert locations["battlenet_cache"] == r"C:\Users\kid\AppData\Local\Battle.net"
    assert locations["games"] == r"%ProgramData%\Blizzard Entertainment"


def test_posix_locations_expand_home_and_user(tmp_path) -> None:
    linux = ConfigPathResolver(platform="linux", runner=_ScriptedRunner(), environ={"HOME": "/home/kid", "USER": "kid"})

    assert linux.get_config_locations()["battlenet_data"] == (
        "/home/kid/.wine/drive_c/users/kid/AppData/Roaming/Battle.net"
    )
    assert _macos_resolver(tmp_path).get_config_locations()["battlenet_cache"] == (
        f"{tmp_path}/Library/Caches/Battle.net"
    )


def test_rename_and_restore_round_trip(tmp_path) -> None:
    data_dir = tmp_path / "Library" / "Application Support" / "Battle.net"
    data_dir.mkdir(parents=True)
    (data_dir / "Battle.net.config").write_text("{}", encoding="utf-8")
    resolver = _macos_resolver(tmp_path)

    disabled = asyncio.run(resolver.disable_via_config_rename())

    assert disabled.success is True
    assert not data_dir.exists()
    assert (tmp_path / "Library" / "Application Support" / "Battle.net.disabled" / "Battle.net.config").exists()

    restored = asyncio.run(resolver.restore_config())

    assert restored.success is True
    assert (data_dir / "Battle.net.config").read_text(encoding="utf-8") == "{}"


def test_rename_without_install_reports_not_found(tmp_path) -> None:
    result = asyncio.run(_macos_resolver(tmp_path).disable_via_config_rename())

    assert result.success is False
    assert result.error == "Battle.net config directory not found"


def test_rename_refuses_to_overwrite_disabled_copy(tmp_path) -> None:
    support = tmp_path / "Library" / "Application Support"
    (support / "Battle.net").mkdir(parents=True)
    (support / "Battle.net.disabled").mkdir()

    result = asyncio.run(_macos_resolver(tmp_path).disable_via_config_rename())

    assert result.success is False
    assert result.error.startswith("Disabled config already exists")
    assert (support / "Battle.net").exists()


def test_restore_without_disabled_copy_fails(tmp_path) -> None:
    result = asyncio.run(_macos_resolver(tmp_path).restore_config())

    assert result.success is False
    assert result.error == "No disabled config found"


def test_restore_refuses_when_original_reappeared(tmp_path) -> None:
    support = tmp_path / "Library" / "Application Support"
    (support / "Battle.net").mkdir(parents=True)
    (support / "Battle.net.disabled").mkdir()

    result = asyncio.run(_macos_resolver(tmp_path).restore_config())

    assert result.success is False
    assert result.error.startswith("Config directory already exists")


def test_filesystem_is_checked_on_every_call(tmp_path) -> None:
    resolver = _macos_resolver(tmp_path)
    assert asyncio.run(resolver.disable_via_config_rename()).success is False

    (tmp_path / "Library" / "Application Support" / "Battle.net").mkdir(parents=True)

    assert asyncio.run(resolver.disable_via_config_rename()).success is True


def test_registry_operations_are_windows_only(tmp_path) -> None:
    runner = _ScriptedRunner()
    resolver = _macos_resolver(tmp_path, runner)

    read = asyncio.run(resolver.read_registry())
    disable = asyncio.run(resolver.disable_via_registry())

    assert read.not_supported is True
    assert disable.error == "Platform not supported: macos"
    assert runner.calls == []


def test_windows_registry_read_and_disable() -> None:
    def handler(line: str) -> CommandResult:
        if line.startswith("reg query"):
            return CommandResult(stdout="    LaunchOnStartup    REG_DWORD    0x1\r\n", stderr="", exit_code=0)
        return OK

    runner = _ScriptedRunner(handler)
    resolver = ConfigPathResolver(platform="windows", runner=runner, environ={})

    read = asyncio.run(resolver.read_registry())
    disable = asyncio.run(resolver.disable_via_registry())

    assert "LaunchOnStartup" in read.details["registry"]
    assert disable.success is True
    assert disable.details["changes"] == ["LaunchOnStartup=0", "AutoLogin=0"]
    assert runner.calls[1] == (
        r"reg add HKCU\Software\Blizzard Entertainment\Battle.net /v LaunchOnStartup /t REG_DWORD /d 0 /f"
    )


def test_windows_registry_failure_is_reported() -> None:
    denied = CommandResult(stdout="", stderr="ERROR: Access is denied.", exit_code=1)
    resolver = ConfigPathResolver(platform="windows", runner=_ScriptedRunner(lambda line: denied), environ={})

    result = asyncio.run(resolver.disable_via_registry())

    assert result.success is False
    assert result.requires_elevated_privilege is True
    assert result.details["changes"] == []


def test_linux_locations_have_no_unfilled_placeholders() -> None:
    resolver = ConfigPathResolver(platform="linux", runner=_ScriptedRunner(), environ={"HOME": "/home/kid", "USER": "kid"})

    locations = resolver.get_config_locations()

    assert locations
    assert not any("{" in path or "}" in path for path in locations.values())
