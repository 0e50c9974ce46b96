#!/usr/bin/env python3
"""
SSH MCP server with persistent interactive shell sessions.

Tools:
- ssh_open: connect and start an interactive shell, returns a sessionId
- ssh_exec: run a command in that shell, returns output and exit code
- ssh_close: end the shell and its connection
- ssh_list: show open sessions

Speaks JSON-RPC (MCP) over stdio. Idle sessions are reaped in the background.
"""

from sshmcp.main import main

if __name__ == "__main__":
    main()
