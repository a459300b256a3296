from __future__ import annotations

import re

_PATH_SEPARATORS = re.compile(r"[\\/]")


def normalize_name(value: str | None) -> str:
    if not value:
        return ""
    return value.strip().lower()


def process_name_from_command(command: str) -> str:
    segments = _PATH_SEPARATORS.split(command.strip())
    return segments[-1] if segments else command
