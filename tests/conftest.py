"""
Shared fakes for the router, SSH and Telegram layers.
"""

import json
import pytest

from vpn_commander.config import config


ROUTING_PATH = "/opt/etc/xray/configs/05_routing.json"


def default_rule(outbound="direct"):
    return {
        "type": "field",
        "inboundTag": ["redirect", "tproxy"],
        "outboundTag": outbound,
        "network": "tcp,udp",
    }


def routing_document(rules, strategy="IPIfNonMatch"):
    return {"routing": {"domainStrategy": strategy, "rules": rules}}


class FakeSSH:
    """In-memory stand-in for RouterSSH."""

    def __init__(self, files=None):
        self.files = dict(files or {})
        self.commands = []
        self.writes = []
        self.read_error = None
        self.write_error = None
        self.command_results = {}

    def set_document(self, document, path=ROUTING_PATH):
        self.files[path] = json.dumps(document)

    def document(self, path=ROUTING_PATH):
        return json.loads(self.files[path])

    def read_file(self, path):
        if self.read_error:
            return {"success": False, "output": "", "content": "", "error": self.read_error,
                    "error_type": "connection"}
        if path not in self.files:
            return {"success": False, "output": f"cat: can't open '{path}'", "content": "",
                    "error": "command exited with status 1", "error_type": "command"}
        return {"success": True, "output": self.files[path], "content": self.files[path], "error": ""}

    def write_file(self, path, content):
        if self.write_error:
            return {"success": False, "output": "", "error": self.write_error, "error_type": "command"}
        self.writes.append((path, content))
        self.files[path] = content
        return {"success": True, "output": "", "error": ""}

    def execute(self, command):
        self.commands.append(command)
        for needle, result in self.command_results.items():
            if needle in command:
                return dict(result)
        return {"success": True, "output": "", "error": "", "exit_status": 0}


class FakeMessenger:
    """Records everything the dispatcher sends to the chat."""

    def __init__(self, edit_ok=True):
        self.sent = []
        self.edited = []
        self.deleted = []
        self.edit_ok = edit_ok
        self.next_id = 100

    def send_message(self, chat_id, text, parse_mode=None, reply_markup=None):
        self.next_id += 1
        self.sent.append({"chat_id": chat_id, "text": text, "parse_mode": parse_mode,
                          "reply_markup": reply_markup, "message_id": self.next_id})
        return self.next_id

    def edit_message_text(self, chat_id, message_id, text, parse_mode=None):
        if not self.edit_ok:
            return False
        self.edited.append({"chat_id": chat_id, "message_id": message_id, "text": text})
        return True

    def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))
        return True

    def texts(self):
        return [item["text"] for item in self.sent] + [item["text"] for item in self.edited]

    def last_text(self):
        if self.edited:
            return self.edited[-1]["text"]
        return self.sent[-1]["text"]


@pytest.fixture(autouse=True)
def quiet_logs():
    previous = config.LOG_LEVEL
    config.LOG_LEVEL = "error"
    yield
    config.LOG_LEVEL = previous


@pytest.fixture
def fake_ssh():
    ssh = FakeSSH()
    ssh.set_document(routing_document([default_rule("direct")]))
    return ssh


@pytest.fixture
def messenger():
    return FakeMessenger()
