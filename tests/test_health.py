"""
Tests for the liveness check and the HTTP health endpoints.
"""

import pytest
import requests

from vpn_commander.auth import AuthorizationCache
from vpn_commander.config import BotConfig
from vpn_commander.health import HealthServer, HealthState, run_health_check
from vpn_commander.router import RoutingState

REQUIRED = {
    "TELEGRAM_BOT_TOKEN": "123:abc",
    "AUTH_CODE": "s3cret",
    "ROUTER_HOST": "192.168.1.1",
    "ROUTER_USERNAME": "root",
    "ROUTER_PASSWORD": "pw",
}


@pytest.fixture
def env(monkeypatch):
    for name in list(REQUIRED) + ["ROUTER_PORT", "SSH_VERIFY_HOST_KEY", "XRAY_CONFIG_PATH", "LOG_LEVEL"]:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConfig:
    def test_defaults(self, env):
        cfg = BotConfig()
        cfg.load_from_env()
        assert cfg.ROUTER_PORT == 22
        assert cfg.XRAY_CONFIG_PATH == "/opt/etc/xray/configs/05_routing.json"
        assert cfg.SSH_VERIFY_HOST_KEY is False
        assert cfg.service_path() == "/opt/bin:/opt/sbin"
        assert cfg.missing_required() == list(REQUIRED)

    def test_overrides(self, env):
        for name, value in REQUIRED.items():
            env.setenv(name, value)
        env.setenv("ROUTER_PORT", "2222")
        env.setenv("SSH_VERIFY_HOST_KEY", "yes")
        env.setenv("LOG_LEVEL", "DEBUG")
        cfg = BotConfig()
        cfg.load_from_env()
        assert cfg.ROUTER_PORT == 2222
        assert cfg.SSH_VERIFY_HOST_KEY is True
        assert cfg.LOG_LEVEL == "debug"
        assert cfg.missing_required() == []


class TestHealthCheck:
    def test_passes_with_required_settings(self, env):
        for name, value in REQUIRED.items():
            env.setenv(name, value)
        cfg = BotConfig()
        cfg.load_from_env()
        assert run_health_check(cfg) == 0

    def test_fails_when_setting_missing(self, env):
        for name, value in REQUIRED.items():
            env.setenv(name, value)
        env.delenv("AUTH_CODE")
        cfg = BotConfig()
        cfg.load_from_env()
        assert run_health_check(cfg) == 1


class FakeClient:
    username = "vpn_commander_bot"


class FakeDispatcher:
    def __init__(self):
        self.cache = AuthorizationCache()


@pytest.fixture
def server():
    state = HealthState()
    health = HealthServer(state, port=0, host="127.0.0.1")
    health.start()
    yield state, f"http://127.0.0.1:{health.port}"
    health.stop()


class TestHealthServer:
    def test_health(self, server):
        _, base = server
        response = requests.get(f"{base}/health", timeout=5)
        assert response.status_code == 200
        assert response.text == "OK"

    def test_not_ready_until_wired(self, server):
        state, base = server
        assert requests.get(f"{base}/ready", timeout=5).status_code == 503
        state.client = FakeClient()
        state.dispatcher = FakeDispatcher()
        response = requests.get(f"{base}/ready", timeout=5)
        assert response.status_code == 200
        assert response.text == "Ready"

    def test_status(self, server):
        state, base = server
        state.client = FakeClient()
        state.dispatcher = FakeDispatcher()
        state.dispatcher.cache.authorize(1, RoutingState.ENABLED)
        payload = requests.get(f"{base}/status", timeout=5).json()
        assert payload == {
            "status": "running",
            "bot": {"username": "vpn_commander_bot"},
            "authorized_users": 1,
        }

    def test_unknown_path(self, server):
        _, base = server
        assert requests.get(f"{base}/nope", timeout=5).status_code == 404
