"""
Shared pytest fixtures for sshmcp tests.

- FakeChannel: stands in for ShellChannel and answers wrapped commands the
  way a shell would, from a small script of canned results
- FakeParamikoChannel: minimal paramiko.Channel for the reader thread
- manager: SessionManager wired to FakeChannel, reaper disabled
"""

import re
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

from sshmcp.config import config
from sshmcp.ssh import SessionManager

WRAPPED = re.compile(
    r"^(?P<command>.*)\nprintf '\\n%s%s:%s\\n' '(?P<head>[^']*)' '(?P<tail>[^']*)' \"\$\?\"\n$",
    re.S,
)

HANG = object()

DEFAULT_SCRIPT: Dict[str, Any] = {
    "printf 'hi'": ("hi", 0),
    "false": ("", 1),
    "true": ("", 0),
    "pwd": ("/home/agent", 0),
    "sleep 5": HANG,
}


class FakeChannel:
    """Shell channel double.

    ``script`` maps command text to ``(output, exit_code)``, to ``HANG`` for
    commands that never finish, or to a callable receiving the channel.
    Unknown commands succeed silently.
    """

    def __init__(self, script: Optional[Dict[str, Any]] = None, echo: bool = False):
        self.script = dict(DEFAULT_SCRIPT if script is None else script)
        self.echo = echo
        self.writes: List[str] = []
        self.closed = False
        self.farewell: Optional[str] = None
        self.interrupts = 0
        self.fail_writes = False
        self.pending_marker: Optional[str] = None
        self.connect_kwargs: Dict[str, Any] = {}
        self.on_data: Optional[Callable[[str], None]] = None
        self.on_close: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[BaseException], None]] = None

    def start(self, on_data, on_close, on_error) -> None:
        self.on_data = on_data
        self.on_close = on_close
        self.on_error = on_error

    def emit(self, text: str) -> None:
        self.on_data(text)

    def write(self, data: str) -> None:
        if self.closed or self.fail_writes:
            raise OSError("channel is closed")
        self.writes.append(data)
        if self.echo:
            self.emit(data.replace("\n", "\r\n"))

        match = WRAPPED.match(data)
        if match is None:
            return
        self.pending_marker = match.group("head") + match.group("tail")
        reply = self.script.get(match.group("command"), ("", 0))
        if reply is HANG:
            return
        if callable(reply):
            reply(self)
            return
        output, exit_code = reply
        self.complete(output, exit_code)

    def complete(self, output: str = "", exit_code: Any = 0) -> None:
        self.emit(f"{output}\r\n{self.pending_marker}:{exit_code}\r\n")

    def interrupt(self) -> None:
        self.interrupts += 1

    def close(self, farewell: Optional[str] = None) -> None:
        if self.closed:
            return
        self.closed = True
        self.farewell = farewell
        if self.on_close:
            self.on_close()

    def remote_close(self) -> None:
        self.close()


class FakeParamikoChannel:
    def __init__(self, chunks=None, fail_after: Optional[Exception] = None):
        self.chunks = list(chunks or [])
        self.fail_after = fail_after
        self.closed = False
        self.eof_received = True
        self.sent: List[bytes] = []

    def recv_ready(self) -> bool:
        if not self.chunks and self.fail_after is not None:
            raise self.fail_after
        return bool(self.chunks)

    def recv(self, size: int) -> bytes:
        return self.chunks.pop(0)

    def sendall(self, data: bytes) -> None:
        if self.closed:
            raise OSError("Socket is closed")
        self.sent.append(data)

    def close(self) -> None:
        self.closed = True


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(autouse=True)
def reset_config(monkeypatch):
    monkeypatch.setattr(config, "SSH_PRIVATE_KEY", None)
    monkeypatch.setattr(config, "SSH_KEY_PATH", None)
    monkeypatch.setattr(config, "SSH_KEY_PASSPHRASE", None)
    monkeypatch.setattr(config, "SSH_VERIFY_HOST_KEY", True)
    monkeypatch.setattr(config, "INTERRUPT_ON_TIMEOUT", False)
    monkeypatch.setattr(config, "LOG_DIR", "")


@pytest.fixture
def channels() -> List[FakeChannel]:
    return []


@pytest.fixture
def connector(channels):
    def connect(**kwargs):
        channel = FakeChannel()
        channel.connect_kwargs = kwargs
        channels.append(channel)
        return channel
    return connect


@pytest.fixture
def manager(connector):
    mgr = SessionManager(connector=connector, idle_timeout=60, log_dir="", start_reaper=False)
    yield mgr
    mgr.close_all()
