from __future__ import annotations

import argparse
import asyncio

from outbox_relay.app import configure_logging, run_consumer, run_publisher
from outbox_relay.settings import Settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="outbox-relay",
        description="Relay outbox change records to the bus, or materialize them into projections.",
    )
    parser.add_argument(
        "role",
        choices=("publisher", "consumer"),
        help="publisher polls the outbox table; consumer applies queued envelopes",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging()
    settings = Settings()

    if args.role == "publisher":
        asyncio.run(run_publisher(settings))
    else:
        asyncio.run(run_consumer(settings))


if __name__ == "__main__":
    main()
