import json
from enum import Enum
from typing import Any, Dict, List, Optional

from vpn_commander.config import (
    DEFAULT_CONFIG_PATH, DEFAULT_PATH, DEFAULT_RULE_INBOUND_TAGS, DEFAULT_RULE_NETWORK,
    OUTBOUND_DIRECT, OUTBOUND_VPN, SERVICE_RESTART_COMMAND, SERVICE_START_COMMAND,
    SERVICE_STATUS_COMMAND, SERVICE_STOP_COMMAND, SERVICE_RUNNING_PHRASE,
    SERVICE_STOPPED_PHRASE, SERVICE_STATUS_NOISE
)
from vpn_commander.utils import log_debug, log_error, log_info, log_warning, strip_colors


class RoutingState(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNKNOWN = "unknown"


class ServiceState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


OUTBOUND_STATES = {
    OUTBOUND_VPN: RoutingState.ENABLED,
    OUTBOUND_DIRECT: RoutingState.DISABLED,
}


class RouterError(Exception):
    """Base class for failures talking to or editing the router."""


class RemoteConnectionError(RouterError):
    pass


class RemoteCommandError(RouterError):
    pass


class ParseError(RouterError):
    pass


class NotFoundError(RouterError):
    pass


class StructuralError(RouterError):
    pass


class ServiceError(RouterError):
    pass


def is_default_rule(rule: Any) -> bool:
    """True for the catch-all rule: inbound tags exactly {redirect, tproxy} on tcp,udp."""
    if not isinstance(rule, dict):
        return False
    tags = rule.get("inboundTag")
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        return False
    return set(tags) == DEFAULT_RULE_INBOUND_TAGS and rule.get("network") == DEFAULT_RULE_NETWORK


def state_for_outbound(tag: Optional[str]) -> RoutingState:
    return OUTBOUND_STATES.get(tag, RoutingState.UNKNOWN)


def sanitize_service_status(raw: str) -> str:
    text = strip_colors(raw).replace("\r\n", "\n").replace("\r", "\n")
    lines = [line for line in text.split("\n") if SERVICE_STATUS_NOISE not in line]
    return "\n".join(lines).strip()


def classify_service_status(raw: str) -> ServiceState:
    # The stopped phrase contains the running one, so it must be checked first.
    clean = sanitize_service_status(raw)
    if SERVICE_STOPPED_PHRASE in clean:
        return ServiceState.STOPPED
    if SERVICE_RUNNING_PHRASE in clean:
        return ServiceState.RUNNING
    return ServiceState.UNKNOWN


class RoutingManager:
    """Reads and rewrites the Xray routing file on the router.

    The document is fetched and parsed again for every operation; nothing is
    cached between calls. Mutations always target the last rule in
    ``routing.rules`` and refuse to touch it unless it is the default rule.
    """

    def __init__(self, ssh, config_path: str = DEFAULT_CONFIG_PATH, service_path: str = DEFAULT_PATH):
        self.ssh = ssh
        self._config_path = config_path
        self.service_path = service_path

    @property
    def config_path(self) -> str:
        return self._config_path

    def set_config_path(self, path: str) -> None:
        self._config_path = path
        log_info("Configuration path updated", config_path=path)

    def _raise_for_result(self, result: Dict[str, Any], action: str) -> None:
        if result.get("success"):
            return
        message = f"{action}: {result.get('error') or 'unknown error'}"
        if result.get("error_type") == "connection":
            raise RemoteConnectionError(message)
        raise RemoteCommandError(message)

    def _load_document(self) -> Dict[str, Any]:
        result = self.ssh.read_file(self._config_path)
        self._raise_for_result(result, "failed to read config file")
        try:
            document = json.loads(result.get("content", ""))
        except ValueError as exc:
            raise ParseError(f"failed to parse config JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise ParseError("failed to parse config JSON: top level is not an object")
        return document

    def _rules(self, document: Dict[str, Any]) -> List[Any]:
        routing = document.get("routing")
        if not isinstance(routing, dict):
            raise NotFoundError("no routing configuration found")
        rules = routing.get("rules")
        return rules if isinstance(rules, list) else []

    def get_status(self) -> RoutingState:
        log_debug("Getting VPN status")
        rules = self._rules(self._load_document())
        for rule in rules:
            if not is_default_rule(rule):
                continue
            tag = rule.get("outboundTag")
            state = state_for_outbound(tag)
            if state is RoutingState.UNKNOWN:
                log_warning("Unknown outbound tag", outbound_tag=tag)
            else:
                log_debug("VPN status", status=state.value)
            return state
        raise NotFoundError("target routing rule not found")

    def enable(self) -> None:
        log_info("Enabling VPN routing")
        self._set_outbound_tag(OUTBOUND_VPN)

    def disable(self) -> None:
        log_info("Disabling VPN routing")
        self._set_outbound_tag(OUTBOUND_DIRECT)

    def _set_outbound_tag(self, outbound_tag: str) -> None:
        document = self._load_document()
        rules = self._rules(document)
        if not rules:
            raise NotFoundError("no routing rules found")

        # The default rule sits last so it only catches what earlier rules left.
        index = len(rules) - 1
        last_rule = rules[index]
        if not is_default_rule(last_rule):
            raise StructuralError("last rule is not the expected default routing rule")

        log_info(
            "Updating default routing rule",
            rule_index=index,
            old_outbound=last_rule.get("outboundTag"),
            new_outbound=outbound_tag,
        )
        last_rule["outboundTag"] = outbound_tag

        content = json.dumps(document, indent=2, ensure_ascii=False)
        result = self.ssh.write_file(self._config_path, content)
        self._raise_for_result(result, "failed to write updated config")

        try:
            self.restart_service()
        except ServiceError as exc:
            log_warning(
                "Failed to restart Xray service, changes may not be applied immediately",
                error=str(exc),
            )

        log_info("VPN routing configuration updated successfully", outbound_tag=outbound_tag)

    def validate(self) -> None:
        log_debug("Validating Xray configuration")
        rules = self._rules(self._load_document())
        matches = sum(1 for rule in rules if is_default_rule(rule))
        if matches == 0:
            raise NotFoundError("target routing rule not found")
        if matches > 1:
            raise StructuralError(f"expected one default routing rule, found {matches}")
        log_debug("Configuration validation passed")

    # ========= xkeen service control =========

    def _service_command(self, command: str) -> str:
        return f"export PATH={self.service_path}:$PATH && {command}"

    def _run_service(self, command: str, action: str) -> str:
        result = self.ssh.execute(self._service_command(command))
        if not result.get("success"):
            output = result.get("output", "").strip()
            raise ServiceError(f"failed to {action} Xray service: {result.get('error')} (output: {output})")
        return result.get("output", "")

    def restart_service(self) -> None:
        log_info("Restarting Xray service using xkeen")
        try:
            self._run_service(SERVICE_RESTART_COMMAND, "restart")
        except ServiceError as exc:
            log_error("Failed to restart Xray service with xkeen", error=str(exc))
            raise
        log_info("Successfully restarted Xray service")

    def start_service(self) -> None:
        log_info("Starting VPN service using xkeen")
        self._run_service(SERVICE_START_COMMAND, "start")

    def stop_service(self) -> None:
        log_info("Stopping VPN service using xkeen")
        self._run_service(SERVICE_STOP_COMMAND, "stop")

    def get_service_status(self) -> str:
        log_debug("Getting VPN service status using xkeen")
        return self._run_service(SERVICE_STATUS_COMMAND, "query status of")

    def get_service_state(self) -> ServiceState:
        raw = self.get_service_status()
        state = classify_service_status(raw)
        log_info("Service status decision", decision=state.value)
        return state
