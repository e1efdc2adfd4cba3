import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional

from vpn_commander.config import BotConfig
from vpn_commander.utils import log_error, log_info


def run_health_check(cfg: BotConfig) -> int:
    missing = cfg.missing_required()
    for name in missing:
        log_error(f"Health check failed: {name} not set")
    if missing:
        return 1
    log_info("Health check passed")
    return 0


class ReuseAddrServer(ThreadingHTTPServer):
    allow_reuse_address = True
    daemon_threads = True


class HealthState:
    """What the health endpoints report. Filled in as the bot is wired up."""

    def __init__(self):
        self.client = None
        self.dispatcher = None

    def ready(self) -> bool:
        return self.client is not None and self.dispatcher is not None

    def status(self) -> Dict[str, Any]:
        username = getattr(self.client, "username", "") if self.client else ""
        authorized = self.dispatcher.cache.authorized_count() if self.dispatcher else 0
        return {
            "status": "running",
            "bot": {"username": username},
            "authorized_users": authorized,
        }


def make_handler(state: HealthState):
    class Handler(BaseHTTPRequestHandler):
        def _reply(self, code: int, body: bytes, content_type: str = "text/plain") -> None:
            self.send_response(code)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self):
            if self.path == "/health":
                self._reply(200, b"OK")
            elif self.path == "/ready":
                if state.ready():
                    self._reply(200, b"Ready")
                else:
                    self._reply(503, b"Bot not initialized")
            elif self.path == "/status":
                body = json.dumps(state.status(), ensure_ascii=False).encode("utf-8")
                self._reply(200, body, "application/json")
            else:
                self._reply(404, b"Not Found")

        def log_message(self, format, *args):
            pass

    return Handler


class HealthServer:
    def __init__(self, state: HealthState, port: int = 8080, host: str = ""):
        self.state = state
        self.server = ReuseAddrServer((host, port), make_handler(state))
        self.thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self.server.server_address[1]

    def start(self) -> None:
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        log_info("Starting health check server", port=self.port)

    def stop(self) -> None:
        self.server.shutdown()
        self.server.server_close()
