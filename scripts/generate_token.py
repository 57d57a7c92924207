#!/usr/bin/env python3
"""
Generate an ADMIN_TOKEN for the dispatcher API.

Usage:
    python scripts/generate_token.py              # 32-byte token
    python scripts/generate_token.py 48           # 48-byte token
    python scripts/generate_token.py --env        # Output as .env line

The token is regenerated until it passes the same strength check the
application runs at startup (length, no weak patterns, mixed characters).
"""
import secrets
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.transport.security import validate_token_strength  # noqa: E402


def generate_admin_token(length: int = 32) -> str:
    while True:
        token = secrets.token_urlsafe(length)
        if not validate_token_strength(token, "ADMIN_TOKEN"):
            return token


def main():
    length = 32
    env_format = False

    for arg in sys.argv[1:]:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    token = generate_admin_token(length)
    print(f"ADMIN_TOKEN={token}" if env_format else token)


if __name__ == "__main__":
    main()
