import os
from typing import Optional

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
POLL_INTERVAL = 0.05

DEFAULT_SSH_PORT = 22
DEFAULT_EXEC_TIMEOUT_MS = 60_000
MAX_EXEC_TIMEOUT_MS = 24 * 60 * 60 * 1000
DEFAULT_IDLE_TIMEOUT = 30 * 60.0
MIN_IDLE_TIMEOUT = 1.0

MARKER_PREFIX = "__END__"
MARKER_SEPARATOR = ":"

# Keeps typed commands (and any secrets in them) out of remote shell history.
HISTORY_OFF_COMMAND = "export HISTFILE=/dev/null HISTSIZE=0 HISTCONTROL=ignorespace,ignoredups\n"
EXIT_COMMAND = "exit\n"
CTRL_C = "\x03"

# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SSH_PRIVATE_KEY: Optional[str] = None
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.IDLE_TIMEOUT: float = DEFAULT_IDLE_TIMEOUT
        self.INTERRUPT_ON_TIMEOUT: bool = False
        self.LOG_DIR: str = ""
        self.PORT: int = 3000  # only reported; the server speaks stdio

    def load_from_env(self):
        self.SSH_PRIVATE_KEY = os.environ.get("SSH_PRIVATE_KEY", self.SSH_PRIVATE_KEY)
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.LOG_DIR = os.environ.get("SSH_MCP_LOG_DIR", self.LOG_DIR)
        self.PORT = int(os.environ.get("PORT", self.PORT))

        idle_env = os.environ.get("SSH_IDLE_TIMEOUT")
        if idle_env:
            self.IDLE_TIMEOUT = max(MIN_IDLE_TIMEOUT, float(idle_env))

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

        interrupt_env = os.environ.get("SSH_INTERRUPT_ON_TIMEOUT")
        if interrupt_env is not None:
            self.INTERRUPT_ON_TIMEOUT = interrupt_env.lower() in ("true", "1", "yes")

# Global instance
config = ServerConfig()
