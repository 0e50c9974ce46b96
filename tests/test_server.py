import json

from sshmcp.server import handle_request, tools_list


def call(manager, name, arguments=None, req_id=7):
    request = {"jsonrpc": "2.0", "id": req_id, "method": "tools/call",
               "params": {"name": name, "arguments": arguments or {}}}
    return handle_request(request, manager)


def payload(response):
    return json.loads(response["result"]["content"][0]["text"])


def open_session(manager):
    response = call(manager, "ssh_open", {"host": "example.org", "username": "agent", "password": "pw"})
    assert "isError" not in response["result"]
    return response["result"]["structuredContent"]["sessionId"]


def test_initialize(manager):
    response = handle_request({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}, manager)
    assert response["id"] == 1
    assert response["result"]["capabilities"] == {"tools": {}}
    assert response["result"]["serverInfo"]["name"] == "ssh-session-mcp"


def test_notifications_get_no_response(manager):
    assert handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"}, manager) is None


def test_tools_list_exposes_session_tools(manager):
    response = handle_request({"jsonrpc": "2.0", "id": 3, "method": "tools/list"}, manager)
    assert response["id"] == 3
    tools = {tool["name"]: tool for tool in response["result"]["tools"]}
    assert set(tools) == {"ssh_open", "ssh_exec", "ssh_close", "ssh_list"}
    assert tools["ssh_exec"]["inputSchema"]["required"] == ["sessionId", "command"]
    assert "exitCode" in tools["ssh_exec"]["outputSchema"]["properties"]


def test_tools_list_schemas_are_objects():
    for tool in tools_list()["result"]["tools"]:
        assert tool["inputSchema"]["type"] == "object"


def test_open_exec_close_round_trip(manager):
    sid = open_session(manager)

    response = call(manager, "ssh_exec", {"sessionId": sid, "command": "printf 'hi'"})
    result = response["result"]
    assert "isError" not in result
    assert result["structuredContent"]["exitCode"] == 0
    assert "hi" in result["structuredContent"]["stdout"]
    assert payload(response) == result["structuredContent"]

    response = call(manager, "ssh_exec", {"sessionId": sid, "command": "false", "timeoutMs": 5000})
    assert response["result"]["structuredContent"]["exitCode"] == 1

    response = call(manager, "ssh_close", {"sessionId": sid})
    assert response["result"]["structuredContent"] == {"closed": True}

    response = call(manager, "ssh_exec", {"sessionId": sid, "command": "true"})
    assert response["result"]["isError"] is True
    assert payload(response)["error_type"] == "not_found"


def test_close_unknown_session_is_not_an_error(manager):
    response = call(manager, "ssh_close", {"sessionId": "missing"})
    assert "isError" not in response["result"]
    assert response["result"]["structuredContent"] == {"closed": False}


def test_exec_timeout_is_reported(manager):
    sid = open_session(manager)
    response = call(manager, "ssh_exec", {"sessionId": sid, "command": "sleep 5", "timeoutMs": 50})
    assert response["result"]["isError"] is True
    assert payload(response)["error_type"] == "timeout"


def test_connection_errors_are_reported(manager):
    from sshmcp.errors import AuthError

    def refuse(**kwargs):
        raise AuthError("authentication failed for agent@example.org:22: denied")

    manager.connector = refuse
    response = call(manager, "ssh_open", {"host": "example.org", "username": "agent", "password": "bad"})
    assert response["result"]["isError"] is True
    assert payload(response)["error_type"] == "auth_error"


def test_port_defaults_and_is_clamped(manager, channels):
    call(manager, "ssh_open", {"host": "h", "username": "u", "password": "pw"})
    call(manager, "ssh_open", {"host": "h", "username": "u", "password": "pw", "port": 70000})
    assert [channel.connect_kwargs["port"] for channel in channels] == [22, 65535]


def test_missing_arguments(manager):
    response = call(manager, "ssh_open", {"host": "h"})
    assert response["result"]["isError"] is True
    assert payload(response)["error_type"] == "invalid_arguments"

    response = call(manager, "ssh_exec", {"sessionId": "x"})
    assert payload(response)["error_type"] == "invalid_arguments"


def test_list_sessions(manager):
    sid = open_session(manager)
    response = call(manager, "ssh_list")
    content = response["result"]["structuredContent"]
    assert content["total"] == 1
    assert content["sessions"][0]["id"] == sid


def test_unknown_tool_and_method(manager):
    response = call(manager, "ssh_teleport")
    assert response["error"]["code"] == -32601

    response = handle_request({"jsonrpc": "2.0", "id": 9, "method": "resources/list"}, manager)
    assert response["error"]["code"] == -32601
    assert response["id"] == 9


def test_ping(manager):
    assert handle_request({"jsonrpc": "2.0", "id": 2, "method": "ping"}, manager)["result"] == {}
