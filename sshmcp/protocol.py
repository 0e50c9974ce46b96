"""
Completion framing for commands sent to an interactive shell.

An interactive shell gives us one combined byte stream, so each command is
followed by a printf that reports ``$?`` behind a per-invocation marker:

    <stdout and stderr of the command>\\n<marker>:<exit status>\\n

Everything before the marker is the command output, the text between
``<marker>:`` and the next newline is the status line.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sshmcp.config import MARKER_PREFIX, MARKER_SEPARATOR
from sshmcp.utils import clean_output


@dataclass
class CommandResult:
    stdout: str
    exit_code: int

    def to_dict(self) -> Dict[str, Any]:
        return {"stdout": self.stdout, "exitCode": self.exit_code}


def make_marker(session_id: str, sequence: int, now: Optional[float] = None) -> str:
    """Marker for one invocation: time, session id prefix and the per-session
    command number, so two commands started in the same millisecond differ."""
    millis = int((time.time() if now is None else now) * 1000)
    return f"{MARKER_PREFIX}{millis}_{session_id[:8]}_{sequence}"


def wrap_command(command: str, marker: str) -> str:
    # The marker goes to printf in two halves: the tty echoes the typed line
    # back, and that echo must not contain the contiguous marker.
    half = len(marker) // 2
    head, tail = marker[:half], marker[half:]
    return (
        f"{command}\n"
        f"printf '\\n%s%s{MARKER_SEPARATOR}%s\\n' '{head}' '{tail}' \"$?\"\n"
    )


def parse_exit_code(status_line: str) -> int:
    try:
        return int(status_line.strip())
    except ValueError:
        return -1


def parse_completion(buffer: str, marker: str, final: bool = False) -> Optional[CommandResult]:
    """Return the result once ``buffer`` holds a complete status report.

    The status line normally ends with a newline; until it arrives the exit
    code may still be split across chunks, so ``None`` is returned. With
    ``final=True`` a status line running to the end of the buffer is
    accepted as is.
    """
    token = marker + MARKER_SEPARATOR
    index = buffer.find(token)
    if index == -1:
        return None

    remainder = buffer[index + len(token):]
    newline = remainder.find("\n")
    if newline == -1:
        if not final:
            return None
        status_line = remainder
    else:
        status_line = remainder[:newline]

    return CommandResult(stdout=clean_output(buffer[:index]), exit_code=parse_exit_code(status_line))
