from __future__ import annotations

import asyncio
import locale
import logging
import sys
from typing import Protocol, Sequence

from bnetguard.models import CommandResult

LOGGER = logging.getLogger("bnetguard.runner")

COMMAND_NOT_FOUND = 127

# Substrings that OS tools print when the caller lacks the required rights.
_ELEVATION_MARKERS = (
    "access is denied",
    "access denied",
    "operation not permitted",
    "permission denied",
    "requires elevation",
    "run as administrator",
    "not authorized",
)


class CommandError(RuntimeError):
    def __init__(self, command: str, args: Sequence[str], result: CommandResult) -> None:
        self.command = command
        self.args_list = list(args)
        self.result = result
        detail = result.output or f"exit code {result.exit_code}"
        super().__init__(f"{command} failed: {detail}")

    @property
    def requires_elevated_privilege(self) -> bool:
        return needs_elevation(self.result.output)


class CommandRunner(Protocol):
    async def run(self, command: str, args: Sequence[str]) -> CommandResult: ...


class SubprocessRunner:
    """Runs OS commands as asyncio subprocesses without a shell."""

    def __init__(self, encoding: str | None = None) -> None:
        self._encoding = encoding or default_encoding()

    async def run(self, command: str, args: Sequence[str]) -> CommandResult:
        LOGGER.debug("Running %s %s", command, " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return CommandResult(stdout="", stderr=f"{command}: command not found", exit_code=COMMAND_NOT_FOUND)
        except PermissionError as exc:
            return CommandResult(stdout="", stderr=f"{command}: permission denied ({exc})", exit_code=126)

        stdout, stderr = await proc.communicate()
        return CommandResult(
            stdout=stdout.decode(self._encoding, errors="replace"),
            stderr=stderr.decode(self._encoding, errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )


def default_encoding(platform: str | None = None) -> str:
    # Windows console tools such as tasklist and taskkill write in the OEM code page.
    if (platform or sys.platform) == "win32":
        return "oem"
    return locale.getencoding()


async def run_checked(runner: CommandRunner, command: str, args: Sequence[str]) -> CommandResult:
    result = await runner.run(command, args)
    if not result.ok:
        raise CommandError(command, args, result)
    return result


def needs_elevation(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(marker in lowered for marker in _ELEVATION_MARKERS)
