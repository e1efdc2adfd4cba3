import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional, Set, Tuple

from vpn_commander.auth import AuthorizationCache
from vpn_commander.config import HANDLER_JOIN_TIMEOUT, POLL_RETRY_SLEEP
from vpn_commander.router import RouterError, RoutingState, ServiceState
from vpn_commander.telegram import TelegramError, reply_keyboard
from vpn_commander.utils import log_debug, log_error, log_info, log_warning

# ========= Command vocabulary =========
COMMAND_START = "/start"
COMMAND_AUTH = "/auth"
COMMAND_STATUS = "🔍 Quick Status"
COMMAND_ENABLE_VPN = "🔐 Route via VPN"
COMMAND_DISABLE_VPN = "🔓 Route Direct"
COMMAND_START_VPN = "🟢 Start VPN"
COMMAND_STOP_VPN = "🔴 Stop VPN"
COMMAND_SERVICE_STATUS = "🔋 Service Status"

MARKDOWN = "Markdown"

# Kinds of progress messages; a new one replaces the previous of the same kind.
MSG_VPN_STATUS = "vpn_status"
MSG_SERVICE_STATUS = "service_status"
MSG_ROUTING = "routing"
MSG_SERVICE_CONTROL = "service_control"

MAIN_KEYBOARD = reply_keyboard([
    [COMMAND_STATUS, COMMAND_SERVICE_STATUS],
    [COMMAND_ENABLE_VPN, COMMAND_DISABLE_VPN],
    [COMMAND_START_VPN, COMMAND_STOP_VPN],
])

WELCOME_TEXT = """🚀 *VPN Commander Bot*

🎯 *What this bot controls:*
• 🔋 *VPN Service* - Start/stop the VPN daemon
• 🔐 *Traffic Routing* - Choose VPN tunnel or direct internet

🔐 *Authentication required*
Send: /auth YOUR\\_CODE

📋 *Available controls after authentication:*
🔍 Quick Status - Check current traffic routing
🔋 Service Status - Check if VPN daemon is running
🔐 Route via VPN - Send traffic through secure tunnel
🔓 Route Direct - Send traffic directly to internet
🟢 Start VPN - Power on the VPN service
🔴 Stop VPN - Power off the VPN service

💡 *Pro tip:* Check status first, then choose your routing preference!"""

AUTH_USAGE_TEXT = "❌ Please provide the authentication code: /auth YOUR_CODE"
AUTH_FAILED_TEXT = "❌ Invalid authentication code. Access denied."
UNAUTHORIZED_TEXT = "🚫 Unauthorized access. Please authenticate first using /auth YOUR_CODE"
UNKNOWN_COMMAND_TEXT = "❓ Unknown command. Please use the keyboard buttons."

AUTH_STATE_LINES = {
    RoutingState.ENABLED: "🔐 Current routing: VPN TUNNEL",
    RoutingState.DISABLED: "🔓 Current routing: DIRECT",
    RoutingState.UNKNOWN: "❓ Current routing: UNKNOWN",
}


class CommandDispatcher:
    """Turns inbound chat messages into router operations and replies.

    ``messenger`` needs ``send_message``, ``edit_message_text`` and
    ``delete_message`` with the signatures of ``TelegramClient``.
    """

    def __init__(self, messenger, routing, auth_code: str, cache: Optional[AuthorizationCache] = None):
        if not auth_code:
            raise ValueError("auth code is required")
        self.messenger = messenger
        self.routing = routing
        self.auth_code = auth_code
        self.cache = cache if cache is not None else AuthorizationCache()
        self.last_messages: Dict[int, Tuple[int, str]] = {}
        self.messages_lock = threading.Lock()
        self.operations = {
            COMMAND_STATUS: self.handle_status,
            COMMAND_ENABLE_VPN: self.handle_enable,
            COMMAND_DISABLE_VPN: self.handle_disable,
            COMMAND_START_VPN: self.handle_start_service,
            COMMAND_STOP_VPN: self.handle_stop_service,
            COMMAND_SERVICE_STATUS: self.handle_service_status,
        }

    def handle_update(self, update: Dict[str, Any]) -> None:
        message = update.get("message")
        if not message or not isinstance(message.get("text"), str):
            return

        user_id = message.get("from", {}).get("id")
        text = message["text"]
        log_debug(
            "Received message",
            user_id=user_id,
            username=message.get("from", {}).get("username"),
            text=text,
        )

        if text.startswith(COMMAND_START):
            self.handle_start(message)
        elif text.startswith(COMMAND_AUTH):
            self.handle_auth(message)
        elif self.cache.is_authorized(user_id):
            self.handle_authorized(message)
        else:
            self.messenger.send_message(message["chat"]["id"], UNAUTHORIZED_TEXT)

    def handle_start(self, message: Dict[str, Any]) -> None:
        self.messenger.send_message(message["chat"]["id"], WELCOME_TEXT, parse_mode=MARKDOWN)

    def handle_auth(self, message: Dict[str, Any]) -> None:
        chat_id = message["chat"]["id"]
        user = message.get("from", {})
        if user.get("id") is None:
            log_warning("Authentication ignored - message has no sender", chat_id=chat_id)
            return
        args = message["text"].split()
        if len(args) != 2:
            self.messenger.send_message(chat_id, AUTH_USAGE_TEXT)
            return

        if args[1] != self.auth_code:
            log_warning(
                "Authentication failed - invalid code",
                user_id=user.get("id"),
                username=user.get("username"),
            )
            self.messenger.send_message(chat_id, AUTH_FAILED_TEXT)
            return

        try:
            state = self.routing.get_status()
        except RouterError as exc:
            log_error("Failed to get initial VPN status during auth", error=str(exc))
            state = RoutingState.UNKNOWN

        self.cache.authorize(user.get("id"), state)
        text = (
            f"✅ *Authentication successful!*\n\n{AUTH_STATE_LINES[state]}\n\n"
            "🎛️ You now have access to VPN controls."
        )
        self.messenger.send_message(chat_id, text, parse_mode=MARKDOWN, reply_markup=MAIN_KEYBOARD)
        log_info(
            "User authenticated successfully with initial VPN status",
            user_id=user.get("id"),
            username=user.get("username"),
            vpn_status=state.value,
        )

    def handle_authorized(self, message: Dict[str, Any]) -> None:
        chat_id = message["chat"]["id"]
        if message.get("message_id"):
            self.messenger.delete_message(chat_id, message["message_id"])

        operation = self.operations.get(message["text"])
        if operation is None:
            self.messenger.send_message(chat_id, UNKNOWN_COMMAND_TEXT, reply_markup=MAIN_KEYBOARD)
            return
        operation(message)

    def _remember(self, chat_id: int, message_id: Optional[int], msg_type: str) -> Optional[Tuple[int, str]]:
        """Record the chat's latest bot message and return the one it replaces."""
        with self.messages_lock:
            previous = self.last_messages.get(chat_id)
            if message_id:
                self.last_messages[chat_id] = (message_id, msg_type)
        return previous

    def _progress(self, chat_id: int, text: str, msg_type: str) -> Optional[int]:
        progress_id = self.messenger.send_message(chat_id, text)
        previous = self._remember(chat_id, progress_id, msg_type)
        # Repeated checks of one kind replace each other instead of piling up.
        if previous and previous[1] == msg_type and previous[0] != progress_id:
            self.messenger.delete_message(chat_id, previous[0])
        return progress_id

    def _finish(self, chat_id: int, progress_id: Optional[int], text: str, msg_type: str) -> None:
        if progress_id and self.messenger.edit_message_text(chat_id, progress_id, text, parse_mode=MARKDOWN):
            return
        sent_id = self.messenger.send_message(chat_id, text, parse_mode=MARKDOWN, reply_markup=MAIN_KEYBOARD)
        self._remember(chat_id, sent_id, msg_type)

    def handle_status(self, message: Dict[str, Any]) -> None:
        chat_id = message["chat"]["id"]
        user_id = message["from"]["id"]
        log_info("Status check requested", user_id=user_id)
        progress_id = self._progress(chat_id, "🔍 Checking traffic routing status...", MSG_VPN_STATUS)

        try:
            state = self.routing.get_status()
            self.cache.update_cached(user_id, state)
        except RouterError as exc:
            log_error("Failed to get VPN status", error=str(exc))
            state = self.cache.get_cached(user_id)
            if state is RoutingState.UNKNOWN:
                self._finish(chat_id, progress_id, "❌ Status check failed", MSG_VPN_STATUS)
                return
            log_warning("Using cached status due to error", cached_status=state.value)

        checked = _checked_at(message)
        if state is RoutingState.ENABLED:
            text = f"🔐 *VPN ROUTING ACTIVE*\n↳ All traffic routes through VPN tunnel\n📊 Checked at {checked}"
        elif state is RoutingState.DISABLED:
            text = f"🔓 *DIRECT ROUTING ACTIVE*\n↳ Traffic goes directly to internet\n📊 Checked at {checked}"
        else:
            text = f"❓ *ROUTING STATUS UNKNOWN* • {checked}"
        self._finish(chat_id, progress_id, text, MSG_VPN_STATUS)

    def _switch_routing(self, message: Dict[str, Any], enable: bool) -> None:
        chat_id = message["chat"]["id"]
        user_id = message["from"]["id"]
        action = "enable" if enable else "disable"
        log_info(f"VPN {action} requested", user_id=user_id)
        progress_id = self._progress(chat_id, "⏳ Switching traffic routing...", MSG_ROUTING)

        try:
            if enable:
                self.routing.enable()
            else:
                self.routing.disable()
        except RouterError as exc:
            log_error(f"Failed to {action} VPN", error=str(exc))
            self._finish(chat_id, progress_id, f"❌ Failed to {action} VPN", MSG_ROUTING)
            return

        if enable:
            self.cache.update_cached(user_id, RoutingState.ENABLED)
            text = "✅ *ROUTING SWITCHED TO VPN*\n🔐 Traffic now flows through secure tunnel\n⚡ Applied instantly"
        else:
            self.cache.update_cached(user_id, RoutingState.DISABLED)
            text = "✅ *ROUTING SWITCHED TO DIRECT*\n🔓 Traffic now goes directly to internet\n⚡ Applied instantly"
        self._finish(chat_id, progress_id, text, MSG_ROUTING)

    def handle_enable(self, message: Dict[str, Any]) -> None:
        self._switch_routing(message, enable=True)

    def handle_disable(self, message: Dict[str, Any]) -> None:
        self._switch_routing(message, enable=False)

    def handle_start_service(self, message: Dict[str, Any]) -> None:
        chat_id = message["chat"]["id"]
        log_info("VPN service start requested", user_id=message["from"]["id"])
        progress_id = self._progress(chat_id, "⏳ Starting VPN service...", MSG_SERVICE_CONTROL)
        try:
            self.routing.start_service()
        except RouterError as exc:
            log_error("Failed to start VPN service", error=str(exc))
            self._finish(chat_id, progress_id, "❌ Failed to start service", MSG_SERVICE_CONTROL)
            return
        self._finish(chat_id, progress_id, "✅ *VPN SERVICE STARTED*\n🟢 Daemon is now running and ready", MSG_SERVICE_CONTROL)

    def handle_stop_service(self, message: Dict[str, Any]) -> None:
        chat_id = message["chat"]["id"]
        log_info("VPN service stop requested", user_id=message["from"]["id"])
        progress_id = self._progress(chat_id, "⏳ Stopping VPN service...", MSG_SERVICE_CONTROL)
        try:
            self.routing.stop_service()
        except RouterError as exc:
            log_error("Failed to stop VPN service", error=str(exc))
            self._finish(chat_id, progress_id, "❌ Failed to stop service", MSG_SERVICE_CONTROL)
            return
        self._finish(chat_id, progress_id, "✅ *VPN SERVICE STOPPED*\n🔴 Daemon has been shut down", MSG_SERVICE_CONTROL)

    def handle_service_status(self, message: Dict[str, Any]) -> None:
        chat_id = message["chat"]["id"]
        log_info("VPN service status check requested", user_id=message["from"]["id"])
        progress_id = self._progress(chat_id, "🔋 Checking VPN daemon status...", MSG_SERVICE_STATUS)
        try:
            state = self.routing.get_service_state()
        except RouterError as exc:
            log_error("Failed to get VPN service status", error=str(exc))
            self._finish(chat_id, progress_id, "❌ Service status check failed", MSG_SERVICE_STATUS)
            return

        checked = _checked_at(message)
        if state is ServiceState.STOPPED:
            text = f"🔴 *VPN SERVICE STOPPED*\n↳ Daemon is not running\n🔋 Checked at {checked}"
        elif state is ServiceState.RUNNING:
            text = f"🟢 *VPN SERVICE RUNNING*\n↳ Daemon is active and ready\n🔋 Checked at {checked}"
        else:
            text = f"🟡 *VPN SERVICE STATUS UNKNOWN* • {checked}"
        self._finish(chat_id, progress_id, text, MSG_SERVICE_STATUS)


def _checked_at(message: Dict[str, Any]) -> str:
    stamp = message.get("date")
    moment = datetime.fromtimestamp(stamp) if stamp else datetime.now()
    return moment.strftime("%H:%M")


class BotPoller:
    """Long-polls for updates and hands each one to its own thread."""

    def __init__(self, client, dispatcher: CommandDispatcher):
        self.client = client
        self.dispatcher = dispatcher
        self.offset = 0
        self.stop_event = threading.Event()
        self.handlers: Set[threading.Thread] = set()
        self.handlers_lock = threading.Lock()

    def _dispatch(self, update: Dict[str, Any]) -> None:
        try:
            self.dispatcher.handle_update(update)
        except Exception as exc:
            log_error("Update handler failed", update_id=update.get("update_id"), error=str(exc))
        finally:
            with self.handlers_lock:
                self.handlers.discard(threading.current_thread())

    def poll_once(self) -> int:
        updates = self.client.get_updates(self.offset)
        dispatched = 0
        for update in updates:
            # Updates left unconfirmed here are redelivered after a restart.
            if self.stop_event.is_set():
                break
            self.offset = max(self.offset, update.get("update_id", 0) + 1)
            thread = threading.Thread(target=self._dispatch, args=(update,), daemon=True)
            with self.handlers_lock:
                self.handlers.add(thread)
            thread.start()
            dispatched += 1
        return dispatched

    def run(self) -> None:
        log_info("Telegram bot started", username=getattr(self.client, "username", ""))
        while not self.stop_event.is_set():
            try:
                self.poll_once()
            except TelegramError as exc:
                log_error("Failed to poll updates", error=str(exc))
                self.stop_event.wait(POLL_RETRY_SLEEP)
        log_info("Telegram bot shutting down")

    def stop(self) -> None:
        self.stop_event.set()

    def join(self, timeout: float = HANDLER_JOIN_TIMEOUT) -> int:
        """Wait for in-flight handlers. Returns how many are still running."""
        deadline = time.monotonic() + timeout
        while True:
            with self.handlers_lock:
                pending = list(self.handlers)
            if not pending:
                return 0
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log_warning("Handlers still running at shutdown", count=len(pending))
                return len(pending)
            pending[0].join(remaining)
