import sys
import io
import json
import argparse
import threading
from typing import Any, Dict, List
from sshmcp.config import config
from sshmcp.utils import log_error, make_log_dir
from sshmcp.server import handle_request

manager = None

# UTF-8 wrappers over the process stdio, created in main()
_stdin = None
_stdout = None
_write_lock = threading.Lock()

# In-flight tools/call workers; only the reading loop touches this list.
_workers: List[threading.Thread] = []


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    with _write_lock:
        try:
            _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
            _stdout.flush()
        except Exception as exc:
            log_error(f"response write error: {exc}")
            # Fallback: escape all non-ASCII to guarantee safe output
            try:
                _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
                _stdout.flush()
            except Exception as exc2:
                log_error(f"response write fallback error: {exc2}")


def _serve(request: Dict[str, Any]) -> None:
    try:
        response = handle_request(request, manager)
    except Exception as exc:
        log_error(f"unexpected error: {exc}")
        response = {
            "jsonrpc": "2.0",
            "id": request.get("id"),
            "error": {"code": -32603, "message": f"Internal error: {exc}"},
        }
    if response is not None:
        _write_response(response)


def _dispatch(request: Dict[str, Any]) -> None:
    # Commands block until their marker arrives; other sessions must not wait on them.
    _workers[:] = [worker for worker in _workers if worker.is_alive()]
    worker = threading.Thread(target=_serve, args=(request,), daemon=True)
    _workers.append(worker)
    worker.start()


def _drain_workers() -> None:
    """Wait for every in-flight tools/call so each one gets its response."""
    pending = [worker for worker in _workers if worker.is_alive()]
    if pending:
        log_error(f"waiting for {len(pending)} running tool call(s)...")
    for worker in pending:
        worker.join()
    _workers.clear()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SSH MCP Server (persistent shell sessions: open, exec, close)"
    )
    parser.add_argument("--key", help="Fallback private key text (overrides SSH_PRIVATE_KEY env)")
    parser.add_argument("--key-path", help="Fallback private key file (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for private keys (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host keys against known_hosts (default)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--idle-timeout", type=float, help="Seconds before an idle session is reaped (overrides SSH_IDLE_TIMEOUT env)")
    parser.add_argument("--interrupt-on-timeout", action="store_true", help="Send Ctrl+C to the shell when a command times out")
    parser.add_argument("--log-dir", help="Directory for per-session JSON event logs (overrides SSH_MCP_LOG_DIR env)")
    parser.add_argument("--port", type=int, help="Listen port of the surrounding transport (overrides PORT env)")
    return parser


def main() -> None:
    global manager, _stdin, _stdout
    from sshmcp.ssh import SessionManager

    # Pre-load from environment
    config.load_from_env()

    args = build_parser().parse_args()

    # Apply args over env vars
    if args.key: config.SSH_PRIVATE_KEY = args.key
    if args.key_path: config.SSH_KEY_PATH = args.key_path
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.idle_timeout: config.IDLE_TIMEOUT = args.idle_timeout
    if args.interrupt_on_timeout: config.INTERRUPT_ON_TIMEOUT = True
    if args.log_dir: config.LOG_DIR = args.log_dir
    if args.port: config.PORT = args.port

    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False
    elif args.verify_host:
        config.SSH_VERIFY_HOST_KEY = True

    # Force UTF-8 I/O; remote output is arbitrary text
    if _stdin is None:
        _stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    if _stdout is None:
        _stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    config.LOG_DIR = make_log_dir(config.LOG_DIR)
    manager = SessionManager()

    log_error(
        f"SSH MCP (stdio) started. idle_timeout={config.IDLE_TIMEOUT:g}s "
        f"verify_host={config.SSH_VERIFY_HOST_KEY} log_dir={config.LOG_DIR or '-'} port={config.PORT}"
    )

    for line in _stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            _write_response({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": f"Parse error: {exc}"}})
            continue
        if not isinstance(request, dict):
            _write_response({"jsonrpc": "2.0", "id": None, "error": {"code": -32600, "message": "Invalid request"}})
            continue

        if request.get("method") == "tools/call":
            _dispatch(request)
        else:
            _serve(request)

    _drain_workers()
    log_error("shutting down...")
    manager.close_all()

if __name__ == "__main__":
    main()
