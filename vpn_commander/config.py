import os
import re
from typing import List, Optional

# ========= Static config =========
CONNECT_TIMEOUT = 30
KEEPALIVE_INTERVAL = 30

DEFAULT_CONFIG_PATH = "/opt/etc/xray/configs/05_routing.json"
DEFAULT_PATH = "/opt/bin:/opt/sbin"

LOG_OUTPUT_MAX_CHARS = 500
SEND_MAX_RETRIES = 3
POLL_RETRY_SLEEP = 3.0
HANDLER_JOIN_TIMEOUT = 30.0

# ========= Routing vocabulary =========
OUTBOUND_VPN = "vless-reality"
OUTBOUND_DIRECT = "direct"
DEFAULT_RULE_INBOUND_TAGS = frozenset({"redirect", "tproxy"})
DEFAULT_RULE_NETWORK = "tcp,udp"

# ========= xkeen service control =========
SERVICE_RESTART_COMMAND = "xkeen -restart"
SERVICE_START_COMMAND = "xkeen -start"
SERVICE_STOP_COMMAND = "xkeen -stop"
SERVICE_STATUS_COMMAND = "xkeen -status"

SERVICE_STOPPED_PHRASE = "не запущен"
SERVICE_RUNNING_PHRASE = "запущен"
SERVICE_STATUS_NOISE = "can't access tty; job control turned off"

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
# Remnants left when the ESC byte is dropped by the remote shell.
BARE_COLOR_CODES = ("[31m", "[32m", "[33m", "[0m")

REQUIRED_ENV = (
    "TELEGRAM_BOT_TOKEN",
    "AUTH_CODE",
    "ROUTER_HOST",
    "ROUTER_USERNAME",
    "ROUTER_PASSWORD",
)


# ========= Runtime Configuration =========
class BotConfig:
    def __init__(self):
        self.TELEGRAM_BOT_TOKEN: Optional[str] = None
        self.TELEGRAM_API_BASE: str = "https://api.telegram.org"
        self.TELEGRAM_POLL_TIMEOUT: int = 60
        self.AUTH_CODE: Optional[str] = None
        self.ROUTER_HOST: Optional[str] = None
        self.ROUTER_USERNAME: Optional[str] = None
        self.ROUTER_PASSWORD: Optional[str] = None
        self.ROUTER_PORT: int = 22
        self.ROUTER_KEY_PATH: Optional[str] = None
        self.ROUTER_EXTRA_PATH: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = False
        self.XRAY_CONFIG_PATH: str = DEFAULT_CONFIG_PATH
        self.LOG_LEVEL: str = "info"
        self.HEALTH_PORT: int = 8080

    def load_from_env(self):
        self.TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", self.TELEGRAM_BOT_TOKEN)
        self.TELEGRAM_API_BASE = os.environ.get("TELEGRAM_API_BASE", self.TELEGRAM_API_BASE).rstrip("/")
        self.TELEGRAM_POLL_TIMEOUT = int(os.environ.get("TELEGRAM_POLL_TIMEOUT", self.TELEGRAM_POLL_TIMEOUT))
        self.AUTH_CODE = os.environ.get("AUTH_CODE", self.AUTH_CODE)
        self.ROUTER_HOST = os.environ.get("ROUTER_HOST", self.ROUTER_HOST)
        self.ROUTER_USERNAME = os.environ.get("ROUTER_USERNAME", self.ROUTER_USERNAME)
        self.ROUTER_PASSWORD = os.environ.get("ROUTER_PASSWORD", self.ROUTER_PASSWORD)
        self.ROUTER_PORT = int(os.environ.get("ROUTER_PORT", self.ROUTER_PORT))
        self.ROUTER_KEY_PATH = os.environ.get("ROUTER_KEY_PATH", self.ROUTER_KEY_PATH)
        self.ROUTER_EXTRA_PATH = os.environ.get("ROUTER_EXTRA_PATH", self.ROUTER_EXTRA_PATH)
        self.XRAY_CONFIG_PATH = os.environ.get("XRAY_CONFIG_PATH", self.XRAY_CONFIG_PATH)
        self.LOG_LEVEL = os.environ.get("LOG_LEVEL", self.LOG_LEVEL).lower()
        self.HEALTH_PORT = int(os.environ.get("HEALTH_PORT", self.HEALTH_PORT))

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

    def missing_required(self) -> List[str]:
        return [name for name in REQUIRED_ENV if not getattr(self, name)]

    def service_path(self) -> str:
        return self.ROUTER_EXTRA_PATH if self.ROUTER_EXTRA_PATH else DEFAULT_PATH


# Global instance
config = BotConfig()
