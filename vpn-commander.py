#!/usr/bin/env python3
"""
VPN Commander: Telegram control for Xray routing on a Keenetic router.

- /auth <code> to unlock the keyboard
- Route via VPN / Route Direct rewrite the default rule and restart xkeen
- Start / stop / status of the xkeen service
"""

from vpn_commander.main import main

if __name__ == "__main__":
    main()
