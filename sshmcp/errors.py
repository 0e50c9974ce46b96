"""
Errors raised by session operations.

Each error carries a stable ``code`` that the tool server reports back as
``error_type`` so agents can branch on it without parsing messages.
"""


class SessionError(Exception):
    """Base exception for session operations."""
    code = "session_error"


class SessionConnectionError(SessionError, ConnectionError):
    """Raised when the remote connection or shell cannot be established."""
    code = "connection_error"


class AuthError(SessionConnectionError):
    """Raised when credentials are missing, unreadable or rejected."""
    code = "auth_error"


class SessionNotFoundError(SessionError):
    """Raised for unknown or already removed session ids."""
    code = "not_found"


class SessionBusyError(SessionError):
    """Raised when a command is already running on the session."""
    code = "busy"


class CommandTimeoutError(SessionError, TimeoutError):
    """Raised when no completion marker arrives before the deadline."""
    code = "timeout"


class ChannelError(SessionError):
    """Raised when the shell channel reports a transport failure."""
    code = "channel_error"


class SessionClosedError(SessionError):
    """Raised when the shell closes before the command completes."""
    code = "session_closed"
