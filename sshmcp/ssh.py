import io
import os
import time
import uuid
import codecs
import threading
from typing import Any, Callable, Dict, List, Optional
import paramiko

from sshmcp.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, BUFFER_SIZE, POLL_INTERVAL,
    DEFAULT_SSH_PORT, DEFAULT_EXEC_TIMEOUT_MS, MAX_EXEC_TIMEOUT_MS, MIN_IDLE_TIMEOUT,
    HISTORY_OFF_COMMAND, EXIT_COMMAND, CTRL_C, config
)
from sshmcp.errors import (
    AuthError, ChannelError, CommandTimeoutError, SessionBusyError,
    SessionClosedError, SessionConnectionError, SessionNotFoundError
)
from sshmcp.protocol import CommandResult, make_marker, parse_completion, wrap_command
from sshmcp.utils import clamp_int, iso_from_epoch, iso_now, json_line, log_error, safe_name

KEY_CLASSES = [
    ("Ed25519", "Ed25519Key"),
    ("ECDSA", "ECDSAKey"),
    ("RSA", "RSAKey"),
]


class ShellChannel:
    """Interactive shell on one paramiko connection.

    A daemon reader thread pumps the channel into ``on_data`` callbacks,
    reports receive failures through ``on_error`` and always finishes with a
    single ``on_close``. Channel and connection are only ever closed together.
    """

    def __init__(self, client: paramiko.SSHClient, channel: paramiko.Channel):
        self.client = client
        self.channel = channel
        self.reader_thread: Optional[threading.Thread] = None
        self._closing = threading.Event()
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closing.is_set()

    def start(
        self,
        on_data: Callable[[str], None],
        on_close: Callable[[], None],
        on_error: Callable[[BaseException], None],
    ) -> None:
        thread = threading.Thread(
            target=self._reader_loop, args=(on_data, on_close, on_error), daemon=True
        )
        self.reader_thread = thread
        thread.start()

    def _reader_loop(self, on_data, on_close, on_error) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while not self._closing.is_set():
                if self.channel.recv_ready():
                    chunk = self.channel.recv(BUFFER_SIZE)
                    if not chunk:
                        break
                    text = decoder.decode(chunk)
                    if text:
                        on_data(text)
                    continue
                if self.channel.closed or self.channel.eof_received:
                    break
                time.sleep(POLL_INTERVAL)
            tail = decoder.decode(b"", final=True)
            if tail:
                on_data(tail)
        except Exception as exc:
            if not self._closing.is_set():
                on_error(exc)
        finally:
            try:
                on_close()
            except Exception as exc:
                log_error(f"close handler failed: {exc}")

    def write(self, data: str) -> None:
        if self._closing.is_set():
            raise OSError("channel is closed")
        self.channel.sendall(data.encode("utf-8"))

    def interrupt(self) -> None:
        self.write(CTRL_C)

    def close(self, farewell: Optional[str] = None) -> None:
        with self._lock:
            if self._closing.is_set():
                return
            self._closing.set()

        if farewell:
            try:
                self.channel.sendall(farewell.encode("utf-8"))
            except Exception as exc:
                log_error(f"failed to send {farewell.strip()!r} before close: {exc}")
        try:
            self.channel.close()
        except Exception as exc:
            log_error(f"channel close failed: {exc}")
        try:
            self.client.close()
        except Exception as exc:
            log_error(f"connection close failed: {exc}")


def load_private_key(key_data: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    if "\n" not in key_data and "\\n" in key_data:
        key_data = key_data.replace("\\n", "\n")

    last_error = ""
    for key_type_name, key_class_name in KEY_CLASSES:
        key_class = getattr(paramiko, key_class_name, None)
        if key_class is None:
            continue
        try:
            return key_class.from_private_key(io.StringIO(key_data), password=passphrase)
        except Exception as exc:
            last_error = f"{key_type_name}: {exc}"
    raise AuthError(f"could not parse private key: {last_error}")


def open_shell_channel(
    host: str,
    port: int,
    username: str,
    password: Optional[str] = None,
    private_key: Optional[str] = None,
) -> ShellChannel:
    """Connect, authenticate and open an interactive shell.

    A password wins over any key. Without either, the configured key file is
    tried. Nothing is left open when this raises.
    """
    connect_kwargs: Dict[str, Any] = {
        "hostname": host,
        "port": port,
        "username": username,
        "timeout": CONNECT_TIMEOUT,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if password:
        connect_kwargs["password"] = password
    elif private_key:
        connect_kwargs["pkey"] = load_private_key(private_key, config.SSH_KEY_PASSPHRASE)
    elif config.SSH_KEY_PATH:
        connect_kwargs["key_filename"] = os.path.expanduser(config.SSH_KEY_PATH)
        if config.SSH_KEY_PASSPHRASE:
            connect_kwargs["passphrase"] = config.SSH_KEY_PASSPHRASE
    else:
        raise AuthError("either password or private key must be provided")

    client = paramiko.SSHClient()
    if config.SSH_VERIFY_HOST_KEY:
        client.load_system_host_keys()
    else:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    try:
        client.connect(**connect_kwargs)
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        channel = client.invoke_shell()
    except paramiko.AuthenticationException as exc:
        client.close()
        raise AuthError(f"authentication failed for {username}@{host}:{port}: {exc}") from exc
    except (paramiko.SSHException, OSError) as exc:
        client.close()
        raise SessionConnectionError(f"connect to {host}:{port} failed: {exc}") from exc

    return ShellChannel(client, channel)


class ShellSession:
    def __init__(
        self,
        session_id: str,
        channel: Any,
        host: str = "",
        port: int = DEFAULT_SSH_PORT,
        username: str = "",
        log_dir: str = "",
    ):
        self.id = session_id
        self.channel = channel
        self.host = host
        self.port = port
        self.username = username

        self.output_buffer = ""
        self.busy = False
        self.closed = False
        self.error: Optional[BaseException] = None
        self.created_at = time.time()
        self.last_active = self.created_at
        self.last_command = ""
        self.commands_sent = 0

        # Woken on every data, error and close event; an execution waits here.
        self.cond = threading.Condition()

        self.log_path = os.path.join(log_dir, f"{safe_name(session_id)}.log") if log_dir else ""

    def log(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "session_id": self.id}
        data.update(payload)
        json_line(self.log_path, data)

    def on_data(self, chunk: str) -> None:
        with self.cond:
            self.output_buffer += chunk
            self.cond.notify_all()

    def on_error(self, exc: BaseException) -> None:
        log_error(f"session {self.id} channel error: {exc}")
        with self.cond:
            self.error = exc
            self.cond.notify_all()

    def teardown(self, farewell: Optional[str] = None, reason: str = "") -> None:
        with self.cond:
            if self.closed:
                return
            self.closed = True
            self.last_active = time.time()
            self.cond.notify_all()
        self.log("SYS", {"event": "closed", "reason": reason})
        self.channel.close(farewell=farewell)

    def _begin(self) -> int:
        with self.cond:
            if self.closed:
                raise SessionClosedError(f"Session {self.id} is closed")
            if self.busy:
                raise SessionBusyError(f"Session {self.id} is busy")
            self.busy = True
            self.last_active = time.time()
            self.output_buffer = ""
            self.error = None
            self.commands_sent += 1
            return self.commands_sent

    def _finish(self) -> None:
        with self.cond:
            self.busy = False
            self.last_active = time.time()

    def run_command(self, command: str, timeout: float, interrupt_on_timeout: bool = False) -> CommandResult:
        sequence = self._begin()
        started = time.monotonic()
        deadline = started + timeout
        marker = make_marker(self.id, sequence)
        self.last_command = command
        self.log("IN", {"event": "command_sent", "command": command, "timeout": timeout})

        try:
            try:
                self.channel.write(wrap_command(command, marker))
            except Exception as exc:
                raise ChannelError(f"failed to send command: {exc}") from exc

            with self.cond:
                while True:
                    result = parse_completion(self.output_buffer, marker)
                    if result is not None:
                        break
                    if self.error is not None or self.closed:
                        # The status line may have arrived without its newline.
                        result = parse_completion(self.output_buffer, marker, final=True)
                        if result is not None:
                            break
                    if self.error is not None:
                        raise ChannelError(f"Channel error: {self.error}")
                    if self.closed:
                        raise SessionClosedError("Shell closed before command completed")
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        result = parse_completion(self.output_buffer, marker, final=True)
                        if result is not None:
                            break
                        raise CommandTimeoutError(f"Command timeout after {timeout:g}s")
                    self.cond.wait(min(POLL_INTERVAL, remaining))
        except CommandTimeoutError:
            self.log("SYS", {"event": "command_timeout", "timeout": timeout})
            if interrupt_on_timeout:
                try:
                    self.channel.interrupt()
                except Exception as exc:
                    log_error(f"session {self.id}: ctrl+c after timeout failed: {exc}")
            raise
        except (ChannelError, SessionClosedError) as exc:
            self.log("SYS", {"event": "command_failed", "error": str(exc)})
            raise
        finally:
            self._finish()

        self.log(
            "OUT",
            {
                "event": "command_finished",
                "exit_code": result.exit_code,
                "elapsed": round(time.monotonic() - started, 3),
                "output_chars": len(result.stdout),
            },
        )
        return result

    def info(self) -> Dict[str, Any]:
        with self.cond:
            busy = self.busy
        return {
            "id": self.id,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "status": "busy" if busy else "idle",
            "last_command": self.last_command,
            "created_at": iso_from_epoch(self.created_at),
            "last_active": iso_from_epoch(self.last_active),
        }


class SessionRegistry:
    def __init__(self):
        self.sessions: Dict[str, ShellSession] = {}
        self.lock = threading.Lock()

    def create(self, channel: Any, **meta: Any) -> str:
        with self.lock:
            sid = str(uuid.uuid4())
            while sid in self.sessions:
                sid = str(uuid.uuid4())
            self.sessions[sid] = ShellSession(sid, channel, **meta)
            return sid

    def get(self, session_id: str) -> Optional[ShellSession]:
        with self.lock:
            return self.sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[ShellSession]:
        with self.lock:
            return self.sessions.pop(session_id, None)

    def snapshot(self) -> List[ShellSession]:
        with self.lock:
            return list(self.sessions.values())

    def __len__(self) -> int:
        with self.lock:
            return len(self.sessions)

    def __contains__(self, session_id: object) -> bool:
        with self.lock:
            return session_id in self.sessions


class SessionManager:
    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        connector: Optional[Callable[..., Any]] = None,
        idle_timeout: Optional[float] = None,
        log_dir: Optional[str] = None,
        start_reaper: bool = True,
    ):
        self.registry = registry if registry is not None else SessionRegistry()
        self.connector = connector or open_shell_channel
        self.idle_timeout = max(MIN_IDLE_TIMEOUT, idle_timeout if idle_timeout is not None else config.IDLE_TIMEOUT)
        self.log_dir = config.LOG_DIR if log_dir is None else log_dir

        self.reaper_stop = threading.Event()
        self.reaper_thread: Optional[threading.Thread] = None
        if start_reaper:
            self.start_reaper()

    def open_session(
        self,
        host: str,
        username: str,
        port: int = DEFAULT_SSH_PORT,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
    ) -> str:
        if password:
            private_key = None
        elif not private_key:
            private_key = config.SSH_PRIVATE_KEY

        channel = self.connector(
            host=host, port=port, username=username, password=password or None, private_key=private_key
        )

        sid = self.registry.create(channel, host=host, port=port, username=username, log_dir=self.log_dir)
        session = self.registry.get(sid)
        channel.start(
            on_data=session.on_data,
            on_close=lambda: self._on_channel_closed(session),
            on_error=session.on_error,
        )
        try:
            channel.write(HISTORY_OFF_COMMAND)
        except Exception as exc:
            log_error(f"session {sid}: history setup failed: {exc}")

        session.log("SYS", {"event": "session_opened", "host": host, "port": port, "username": username})
        log_error(f"session {sid} opened for {username}@{host}:{port}")
        return sid

    def _on_channel_closed(self, session: ShellSession) -> None:
        if self.registry.remove(session.id) is not None:
            log_error(f"session {session.id} closed by remote side")
        session.teardown(reason="channel closed")

    def execute(self, session_id: str, command: str, timeout_ms: Any = DEFAULT_EXEC_TIMEOUT_MS) -> CommandResult:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        timeout_ms = clamp_int(timeout_ms, DEFAULT_EXEC_TIMEOUT_MS, 1, MAX_EXEC_TIMEOUT_MS)
        return session.run_command(
            command, timeout_ms / 1000.0, interrupt_on_timeout=config.INTERRUPT_ON_TIMEOUT
        )

    def close_session(self, session_id: str) -> bool:
        session = self.registry.remove(session_id)
        if session is None:
            return False
        session.teardown(farewell=EXIT_COMMAND, reason="closed by caller")
        log_error(f"session {session_id} closed")
        return True

    def list_sessions(self) -> List[Dict[str, Any]]:
        rows = [session.info() for session in self.registry.snapshot()]
        rows.sort(key=lambda item: item["created_at"])
        return rows

    def reap_idle(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        reaped = []
        for session in self.registry.snapshot():
            if now - session.last_active <= self.idle_timeout:
                continue
            if self.registry.remove(session.id) is None:
                continue
            session.teardown(reason="idle timeout")
            reaped.append(session.id)
            log_error(f"session {session.id} reaped after {self.idle_timeout:g}s idle")
        return reaped

    def start_reaper(self) -> None:
        if self.reaper_thread is not None and self.reaper_thread.is_alive():
            return
        self.reaper_stop.clear()
        self.reaper_thread = threading.Thread(target=self._reaper_loop, daemon=True)
        self.reaper_thread.start()

    def _reaper_loop(self) -> None:
        while not self.reaper_stop.wait(self.idle_timeout / 2):
            try:
                self.reap_idle()
            except Exception as exc:
                log_error(f"reaper loop error: {exc}")

    def close_all(self) -> None:
        self.reaper_stop.set()
        for session in self.registry.snapshot():
            if self.registry.remove(session.id) is not None:
                session.teardown(farewell=EXIT_COMMAND, reason="shutdown")
