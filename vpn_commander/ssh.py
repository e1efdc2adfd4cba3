import shlex
import threading
from typing import Any, Callable, Dict, Optional, Tuple
import paramiko

from vpn_commander.config import CONNECT_TIMEOUT, KEEPALIVE_INTERVAL
from vpn_commander.utils import log_debug, log_error, log_info, log_warning, truncate


def split_host_port(host: str, default_port: int) -> Tuple[str, int]:
    if host and host.count(":") == 1:
        name, _, port = host.partition(":")
        if port.isdigit():
            return name, int(port)
    return host, default_port


class RouterSSH:
    """Runs shell commands on the router over one lazily opened SSH connection.

    The connection is established on first use and reused afterwards. When the
    transport goes away the next call reconnects. Each command runs on its own
    channel, so concurrent callers never share an output stream.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: Optional[str] = None,
        port: int = 22,
        key_path: Optional[str] = None,
        verify_host_key: bool = False,
        client_factory: Callable[[], Any] = paramiko.SSHClient,
    ):
        if not host or not username or not (password or key_path):
            raise ValueError("SSH connection parameters cannot be empty")
        self.host, self.port = split_host_port(host, port)
        self.username = username
        self.password = password
        self.key_path = key_path
        self.verify_host_key = verify_host_key
        self.client_factory = client_factory

        self.client: Optional[paramiko.SSHClient] = None
        self.is_dead = False
        self.death_reason = ""
        self.lock = threading.Lock()

    @staticmethod
    def _transport_active(client) -> bool:
        if not client:
            return False
        try:
            transport = client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    def _is_alive(self) -> bool:
        if self.is_dead:
            return False
        return self._transport_active(self.client)

    def _mark_dead_locked(self, reason: str) -> None:
        if self.is_dead:
            return
        self.is_dead = True
        self.death_reason = reason
        log_warning("SSH connection marked dead", host=self.host, reason=reason)

    def _mark_dead(self, reason: str, client) -> None:
        # A newer connection may already have replaced the failing one.
        with self.lock:
            if client is self.client:
                self._mark_dead_locked(reason)

    def _connect_locked(self) -> None:
        self._close_locked()
        client = self.client_factory()
        if self.verify_host_key:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if self.password:
            connect_kwargs["password"] = self.password
        if self.key_path:
            connect_kwargs["key_filename"] = self.key_path

        client.connect(**connect_kwargs)

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)

        self.client = client
        self.is_dead = False
        self.death_reason = ""
        log_info("SSH connection established", host=self.host, port=self.port)

    def ensure_connected(self) -> Optional[str]:
        with self.lock:
            if self._is_alive():
                return None
            try:
                self._connect_locked()
                return None
            except Exception as exc:
                self._close_locked()
                self._mark_dead_locked(f"connect failed: {exc}")
                log_error("SSH connection failed", host=self.host, error=str(exc))
                return f"failed to connect to SSH server {self.host}:{self.port}: {exc}"

    def execute(self, command: str) -> Dict[str, Any]:
        error = self.ensure_connected()
        if error:
            return {
                "success": False,
                "output": "",
                "error": error,
                "error_type": "connection",
                "exit_status": None,
            }

        with self.lock:
            client = self.client

        log_debug("Executing SSH command", command=command)
        try:
            channel = client.get_transport().open_session(timeout=CONNECT_TIMEOUT)
        except Exception as exc:
            self._mark_dead(f"open channel failed: {exc}", client)
            log_error("SSH channel open failed", command=command, error=str(exc))
            return {
                "success": False,
                "output": "",
                "error": f"failed to create SSH session: {exc}",
                "error_type": "connection",
                "exit_status": None,
            }

        try:
            channel.set_combined_stderr(True)
            channel.exec_command(command)
            with channel.makefile("rb") as stream:
                output = stream.read().decode("utf-8", errors="replace")
            exit_status = channel.recv_exit_status()
        except Exception as exc:
            # Only this channel is gone while the transport is up; other callers keep the session.
            transport_ok = self._transport_active(client)
            if not transport_ok:
                self._mark_dead(f"transport lost during command: {exc}", client)
            log_error("SSH command execution failed", command=command, error=str(exc))
            return {
                "success": False,
                "output": "",
                "error": f"command execution failed: {exc}",
                "error_type": "command" if transport_ok else "connection",
                "exit_status": None,
            }
        finally:
            try:
                channel.close()
            except Exception:
                pass

        if exit_status != 0:
            log_error(
                "SSH command execution failed",
                command=command,
                exit_status=exit_status,
                output=truncate(output),
            )
            return {
                "success": False,
                "output": output,
                "error": f"command exited with status {exit_status}",
                "error_type": "command",
                "exit_status": exit_status,
            }

        log_debug("SSH command executed successfully", command=command, output=truncate(output))
        return {"success": True, "output": output, "error": "", "exit_status": exit_status}

    def read_file(self, path: str) -> Dict[str, Any]:
        result = self.execute(f"cat {shlex.quote(path)}")
        result["content"] = result.get("output", "")
        return result

    def write_file(self, path: str, content: str) -> Dict[str, Any]:
        quoted = shlex.quote(path)
        backup = self.execute(f"cp {quoted} {quoted}.backup.$(date +%Y%m%d-%H%M%S)")
        if not backup.get("success"):
            log_warning("Failed to create backup, proceeding anyway", file=path, error=backup.get("error"))

        result = self.execute(f"cat > {quoted} << 'EOF'\n{content}\nEOF")
        if not result.get("success"):
            result["error"] = f"failed to write file {path}: {result.get('error')}"
            return result

        log_info("File written successfully", file=path)
        return result

    def check_connection(self) -> Dict[str, Any]:
        return self.execute("echo 'connection_test'")

    def _close_locked(self) -> None:
        try:
            if self.client:
                self.client.close()
        except Exception:
            pass
        self.client = None

    def close(self) -> None:
        with self.lock:
            had_client = self.client is not None
            self._close_locked()
        if had_client:
            log_info("SSH connection closed", host=self.host)

