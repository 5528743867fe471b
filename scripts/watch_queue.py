#!/usr/bin/env python3
"""Follow a customer's queue position from the terminal."""
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from barbershop.client import QueueStreamClient


def print_status(status: dict) -> None:
    if not status.get("inQueue"):
        print("Not in queue")
        return
    print(
        f"Position {status['position']}/{status['totalPeople']} "
        f"- {status['peopleAhead']} ahead, about {status['estimatedWaitTime']} min"
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch queue status over the event stream.")
    parser.add_argument("token", help="Session token returned by /auth/login")
    parser.add_argument("--url", default="http://localhost:5000", help="Backend base URL")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    client = QueueStreamClient(args.url, print_status, token=args.token)
    client.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        client.stop()


if __name__ == "__main__":
    main()
