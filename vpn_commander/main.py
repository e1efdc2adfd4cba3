import os
import sys
import signal
import argparse
import threading
from dotenv import load_dotenv
from vpn_commander.config import config
from vpn_commander.utils import log_error, log_info, log_warning

poller = None


def main() -> None:
    global poller
    from vpn_commander.bot import BotPoller, CommandDispatcher
    from vpn_commander.health import HealthServer, HealthState, run_health_check
    from vpn_commander.router import RoutingManager
    from vpn_commander.ssh import RouterSSH
    from vpn_commander.telegram import TelegramClient, TelegramError

    parser = argparse.ArgumentParser(
        description="Telegram bot that switches router traffic between VPN and direct routing"
    )
    parser.add_argument("--health-check", action="store_true", help="Check required settings and exit")
    parser.add_argument("--env-file", default=".env", help="Path to .env file (default: .env)")
    parser.add_argument("--host", help="Router SSH host (overrides ROUTER_HOST env)")
    parser.add_argument("--user", help="Router SSH username (overrides ROUTER_USERNAME env)")
    parser.add_argument("--port", type=int, help="Router SSH port (overrides ROUTER_PORT env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides ROUTER_KEY_PATH env)")
    parser.add_argument("--config-path", help="Xray routing file on the router (overrides XRAY_CONFIG_PATH env)")
    parser.add_argument("--health-port", type=int, help="Health server port (overrides HEALTH_PORT env)")
    parser.add_argument("--log-level", choices=["debug", "info", "warn", "error"], help="Log level")

    args = parser.parse_args()

    # Pre-load from environment
    if os.path.exists(args.env_file):
        load_dotenv(args.env_file)
        env_loaded = True
    else:
        env_loaded = False
    config.load_from_env()

    # Apply args over env vars
    if args.host: config.ROUTER_HOST = args.host
    if args.user: config.ROUTER_USERNAME = args.user
    if args.port: config.ROUTER_PORT = args.port
    if args.key: config.ROUTER_KEY_PATH = args.key
    if args.config_path: config.XRAY_CONFIG_PATH = args.config_path
    if args.health_port: config.HEALTH_PORT = args.health_port
    if args.log_level: config.LOG_LEVEL = args.log_level

    if args.health_check:
        sys.exit(run_health_check(config))

    if not env_loaded:
        log_warning("Failed to load .env file", path=args.env_file)

    missing = config.missing_required()
    if missing:
        log_error("Required environment variables are not set", missing=missing)
        sys.exit(1)

    ssh = RouterSSH(
        config.ROUTER_HOST,
        config.ROUTER_USERNAME,
        password=config.ROUTER_PASSWORD,
        port=config.ROUTER_PORT,
        key_path=config.ROUTER_KEY_PATH,
        verify_host_key=config.SSH_VERIFY_HOST_KEY,
    )
    routing = RoutingManager(ssh, config.XRAY_CONFIG_PATH, config.service_path())
    client = TelegramClient(
        config.TELEGRAM_BOT_TOKEN,
        api_base=config.TELEGRAM_API_BASE,
        poll_timeout=config.TELEGRAM_POLL_TIMEOUT,
    )
    try:
        client.get_me()
    except TelegramError as exc:
        log_error("Failed to initialize Telegram bot", error=str(exc))
        sys.exit(1)

    dispatcher = CommandDispatcher(client, routing, config.AUTH_CODE)
    poller = BotPoller(client, dispatcher)

    health_state = HealthState()
    health_state.client = client
    health_state.dispatcher = dispatcher
    health = HealthServer(health_state, config.HEALTH_PORT)
    health.start()

    def _shutdown(signum, frame):
        log_info("Received shutdown signal", signal=signum)
        poller.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    worker = threading.Thread(target=poller.run, daemon=True)
    worker.start()
    log_info("VPN Commander bot started successfully", router=config.ROUTER_HOST)

    while not poller.stop_event.wait(1.0):
        pass

    log_info("Shutting down gracefully...")
    poller.join()
    health.stop()
    ssh.close()
    log_info("Shutdown complete")


if __name__ == "__main__":
    main()
