from __future__ import annotations

import asyncio
import locale

import pytest

from bnetguard.models import CommandResult
from bnetguard.runner import (
    COMMAND_NOT_FOUND,
    CommandError,
    SubprocessRunner,
    default_encoding,
    needs_elevation,
    run_checked,
)


class _FixedRunner:
    def __init__(self, result: CommandResult) -> None:
        self.result = result

    async def run(self, command: str, args) -> CommandResult:
        return self.result


def test_windows_output_is_decoded_with_oem_code_page() -> None:
    assert default_encoding("win32") == "oem"


def test_posix_output_uses_locale_encoding() -> None:
    assert default_encoding("linux") == locale.getencoding()
    assert default_encoding("darwin") == locale.getencoding()


def test_missing_command_maps_to_not_found_exit_code() -> None:
    result = asyncio.run(SubprocessRunner(encoding="utf-8").run("bnetguard-no-such-tool", ["--version"]))

    assert result.exit_code == COMMAND_NOT_FOUND
    assert "command not found" in result.stderr


def test_run_checked_raises_with_elevation_flag() -> None:
    runner = _FixedRunner(CommandResult(stdout="", stderr="ERROR: Access is denied.", exit_code=1))

    with pytest.raises(CommandError) as excinfo:
        asyncio.run(run_checked(runner, "taskkill", ["/PID", "4"]))

    assert excinfo.value.requires_elevated_privilege is True
    assert excinfo.value.args_list == ["/PID", "4"]


def test_elevation_markers_are_case_insensitive() -> None:
    assert needs_elevation("kill: (1) - Operation not permitted")
    assert not needs_elevation("ERROR: The process was not found.")
    assert not needs_elevation(None)
