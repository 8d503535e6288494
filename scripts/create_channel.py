#!/usr/bin/env python3
"""
Create a channel row so tickets can be issued for it.
Usage: python scripts/create_channel.py <name> [--type webchat] [--greeting "Hi!"] [--config config.json]
"""

import argparse
import json
import sys

from switchboard.database import SessionLocal, init_db
from switchboard.models import Channel

CHANNEL_TYPES = ("webchat", "whatsapp", "telegram", "email")


def main():
    parser = argparse.ArgumentParser(description="Create a Switchboard channel")
    parser.add_argument("name")
    parser.add_argument("--type", dest="channel_type", choices=CHANNEL_TYPES, default="webchat")
    parser.add_argument("--greeting", default=None)
    parser.add_argument("--config", default=None, help="Path to a JSON file with provider credentials and tools")
    parser.add_argument("--inactive", action="store_true")
    args = parser.parse_args()

    config = {}
    if args.config:
        with open(args.config, "r", encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            print("Config file must contain a JSON object", file=sys.stderr)
            sys.exit(1)

    init_db()
    db = SessionLocal()
    try:
        channel = Channel(
            name=args.name,
            channel_type=args.channel_type,
            greeting_message=args.greeting,
            config=config,
            is_active=not args.inactive,
        )
        db.add(channel)
        db.commit()
        db.refresh(channel)
    finally:
        db.close()

    print(f"Created {channel.channel_type} channel {channel.name}: {channel.id}")


if __name__ == "__main__":
    main()
