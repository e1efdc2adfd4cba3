from typing import Any, Dict, List, Optional
import requests

from vpn_commander.config import SEND_MAX_RETRIES
from vpn_commander.utils import log_debug, log_warning


class TelegramError(Exception):
    pass


def reply_keyboard(rows: List[List[str]]) -> Dict[str, Any]:
    return {
        "keyboard": [[{"text": label} for label in row] for row in rows],
        "resize_keyboard": True,
    }


class TelegramClient:
    """Minimal Bot API client: long polling, send, edit and delete."""

    def __init__(self, token: str, api_base: str = "https://api.telegram.org", poll_timeout: int = 60,
                 session: Optional[requests.Session] = None):
        if not token:
            raise TelegramError("bot token is required")
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.poll_timeout = poll_timeout
        self.session = session or requests.Session()
        self.username = ""

    def _request(self, method: str, payload: Dict[str, Any], timeout: float = 10.0) -> Any:
        endpoint = f"{self.api_base}/bot{self.token}/{method}"
        try:
            response = self.session.post(endpoint, json=payload, timeout=timeout)
            decoded = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TelegramError(f"Telegram API {method} failed: {exc}") from exc
        if not decoded.get("ok"):
            description = decoded.get("description", "unknown Telegram error")
            raise TelegramError(f"Telegram API {method} failed: {description}")
        return decoded.get("result")

    def get_me(self) -> Dict[str, Any]:
        me = self._request("getMe", {})
        self.username = me.get("username", "")
        return me

    def get_updates(self, offset: int) -> List[Dict[str, Any]]:
        payload = {"offset": offset, "timeout": self.poll_timeout, "allowed_updates": ["message"]}
        result = self._request("getUpdates", payload, timeout=self.poll_timeout + 10)
        if not isinstance(result, list):
            raise TelegramError("Invalid getUpdates response: result is not a list")
        return result

    def send_message(
        self,
        chat_id: int,
        text: str,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup

        for attempt in range(1, SEND_MAX_RETRIES + 1):
            try:
                sent = self._request("sendMessage", payload)
                return sent.get("message_id")
            except TelegramError as exc:
                log_warning("Failed to send message", chat_id=chat_id, attempt=attempt, error=str(exc))
        return None

    def edit_message_text(self, chat_id: int, message_id: int, text: str,
                          parse_mode: Optional[str] = None) -> bool:
        payload: Dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        try:
            self._request("editMessageText", payload)
            return True
        except TelegramError as exc:
            log_debug("Failed to edit message text", chat_id=chat_id, error=str(exc))
            return False

    def delete_message(self, chat_id: int, message_id: int) -> bool:
        try:
            self._request("deleteMessage", {"chat_id": chat_id, "message_id": message_id})
            return True
        except TelegramError as exc:
            log_debug("Failed to delete message", chat_id=chat_id, error=str(exc))
            return False
