import json
from typing import Any, Dict, Optional
from sshmcp.config import DEFAULT_SSH_PORT, DEFAULT_EXEC_TIMEOUT_MS
from sshmcp.errors import SessionError
from sshmcp.utils import log_error, clamp_int

SERVER_NAME = "ssh-session-mcp"
SERVER_VERSION = "0.1.0"
PROTOCOL_VERSION = "2024-11-05"


class ToolArgumentError(ValueError):
    pass


def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    payload: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        payload["isError"] = True
    else:
        payload["structuredContent"] = result
    return payload

def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}

def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}

def tools_list() -> Dict[str, Any]:
    annotations = {"readOnlyHint": False, "openWorldHint": True}
    tools = [
        {
            "name": "ssh_open",
            "title": "Open SSH session",
            "description": "Open a persistent SSH session and return a sessionId for later commands.",
            "annotations": annotations,
            "inputSchema": {
                "type": "object",
                "properties": {
                    "host": {"type": "string", "description": "SSH host name or IP address"},
                    "port": {"type": "integer", "minimum": 1, "maximum": 65535, "description": "SSH port (default 22)"},
                    "username": {"type": "string", "description": "SSH user"},
                    "password": {
                        "type": "string",
                        "description": "Password. If omitted, SSH_PRIVATE_KEY env var will be used.",
                    },
                    "privateKey": {
                        "type": "string",
                        "description": "Optional private key text. Ignored when password is given.",
                    },
                },
                "required": ["host", "username"],
            },
            "outputSchema": {
                "type": "object",
                "properties": {"sessionId": {"type": "string", "description": "Identifier of the opened SSH session"}},
                "required": ["sessionId"],
            },
        },
        {
            "name": "ssh_exec",
            "title": "Execute command on existing SSH session",
            "description": (
                "Run a shell command on an existing SSH session created by ssh_open. "
                "Shell state (cwd, env) persists between calls. One command at a time per session."
            ),
            "annotations": annotations,
            "inputSchema": {
                "type": "object",
                "properties": {
                    "sessionId": {"type": "string", "description": "Session ID from ssh_open"},
                    "command": {"type": "string", "description": "Shell command to execute"},
                    "timeoutMs": {"type": "integer", "description": "Timeout in milliseconds (default 60000)"},
                },
                "required": ["sessionId", "command"],
            },
            "outputSchema": {
                "type": "object",
                "properties": {
                    "stdout": {"type": "string", "description": "Combined stdout and stderr output"},
                    "exitCode": {"type": "integer", "description": "Exit code of the command"},
                },
                "required": ["stdout", "exitCode"],
            },
        },
        {
            "name": "ssh_close",
            "title": "Close SSH session",
            "description": "Close an existing SSH session.",
            "annotations": annotations,
            "inputSchema": {
                "type": "object",
                "properties": {"sessionId": {"type": "string", "description": "Session ID to close"}},
                "required": ["sessionId"],
            },
            "outputSchema": {
                "type": "object",
                "properties": {"closed": {"type": "boolean", "description": "Whether the session existed and closed"}},
                "required": ["closed"],
            },
        },
        {
            "name": "ssh_list",
            "title": "List SSH sessions",
            "description": "List open sessions with status (idle|busy), target and last activity.",
            "annotations": {"readOnlyHint": True, "openWorldHint": False},
            "inputSchema": {"type": "object", "properties": {}},
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}

def _require_str(args: Dict[str, Any], name: str) -> str:
    value = args.get(name)
    if not isinstance(value, str) or not value:
        raise ToolArgumentError(f"{name} is required and must be a non-empty string")
    return value

def _optional_str(args: Dict[str, Any], name: str) -> Optional[str]:
    value = args.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ToolArgumentError(f"{name} must be a string")
    return value

def open_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    session_id = manager.open_session(
        host=_require_str(args, "host"),
        username=_require_str(args, "username"),
        port=clamp_int(args.get("port"), DEFAULT_SSH_PORT, 1, 65535),
        password=_optional_str(args, "password"),
        private_key=_optional_str(args, "privateKey"),
    )
    return {"sessionId": session_id}

def exec_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    command = args.get("command")
    if not isinstance(command, str):
        raise ToolArgumentError("command is required and must be a string")
    timeout_ms = args.get("timeoutMs")
    if timeout_ms is None:
        timeout_ms = DEFAULT_EXEC_TIMEOUT_MS
    result = manager.execute(_require_str(args, "sessionId"), command, timeout_ms)
    return result.to_dict()

def close_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    return {"closed": manager.close_session(_require_str(args, "sessionId"))}

def list_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    sessions = manager.list_sessions()
    return {"sessions": sessions, "total": len(sessions)}

TOOL_DISPATCH = {
    "ssh_open": open_dispatch,
    "ssh_exec": exec_dispatch,
    "ssh_close": close_dispatch,
    "ssh_list": list_dispatch,
}

def call_tool(tool_name: str, args: Dict[str, Any], manager) -> Dict[str, Any]:
    handler = TOOL_DISPATCH[tool_name]
    try:
        return format_tool_result(handler(args, manager))
    except SessionError as exc:
        return format_tool_result({"error": str(exc), "error_type": exc.code}, is_error=True)
    except ToolArgumentError as exc:
        return format_tool_result({"error": str(exc), "error_type": "invalid_arguments"}, is_error=True)
    except Exception as exc:
        log_error(f"tool execution error ({tool_name}): {exc}")
        return format_tool_result({"error": str(exc), "error_type": "internal_error"}, is_error=True)

def handle_request(request: Dict[str, Any], manager) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        }

    if method is not None and method.startswith("notifications/"): return None
    if method == "ping": return {"jsonrpc": "2.0", "id": req_id, "result": {}}
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        if tool_name not in TOOL_DISPATCH:
            return make_error(req_id, -32601, f"Unknown tool: {tool_name}")
        if not isinstance(args, dict):
            return make_response(req_id, {"error": "arguments must be an object", "error_type": "invalid_arguments"}, is_error=True)
        return {"jsonrpc": "2.0", "id": req_id, "result": call_tool(str(tool_name), args, manager)}

    return make_error(req_id, -32601, f"Unknown method: {method}")
