import os
import re
import sys
import json
from datetime import datetime
from typing import Any, Dict

def log_error(message: str) -> None:
    print(f"[SSH-MCP] {message}", file=sys.stderr, flush=True)

def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

def iso_from_epoch(ts: float) -> str:
    return datetime.fromtimestamp(ts).isoformat(timespec="milliseconds")

def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"

def clean_output(text: str) -> str:
    """Turn the terminal's CRLF line endings into LF; nothing else changes."""
    if not text:
        return ""
    return text.replace("\r\n", "\n")

def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")

def make_log_dir(log_dir: str) -> str:
    if not log_dir:
        return ""
    path = os.path.abspath(os.path.expanduser(log_dir))
    os.makedirs(path, exist_ok=True)
    return path
