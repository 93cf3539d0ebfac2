"""Glare walkthrough between two in-process peers.

Both peers decide to negotiate at the same moment.  The impolite peer's offer
wins; the polite peer rolls its own offer back and answers.

Examples
--------
Run the default rollback policy with some transport latency::

    python scripts/demo_glare.py --delay 0.01

Let the transport discard the pending offer itself::

    python scripts/demo_glare.py --policy overwrite

Swap which side is polite::

    python scripts/demo_glare.py --left-role polite
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Iterable

from negotiator.coordinator import CollisionPolicy
from negotiator.pairing import PeerPair
from negotiator.protocol import Role
from negotiator.utils.logging import configure_logging


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Perfect negotiation glare demo")
    parser.add_argument(
        "--left-role",
        choices=[role.value for role in Role],
        default=Role.IMPOLITE.value,
        help="Role of peer 'a'; peer 'b' takes the other one.",
    )
    parser.add_argument(
        "--policy",
        choices=[policy.value for policy in CollisionPolicy],
        default=CollisionPolicy.ROLLBACK.value,
        help="How the polite peer clears its pending offer.",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        help="Seconds each transport operation takes.",
    )
    parser.add_argument("--log-level", default="INFO", help="Root log level.")
    return parser.parse_args(argv)


async def run_glare(args: argparse.Namespace) -> dict:
    policy = CollisionPolicy(args.policy)
    pair = PeerPair.create(
        left_role=Role(args.left_role),
        policy=policy,
        delay=args.delay,
        implicit_rollback=policy is CollisionPolicy.OVERWRITE,
    )
    pair.left.transport.request_negotiation()
    pair.right.transport.request_negotiation()
    await pair.settle()
    return pair.describe()


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    summary = asyncio.run(run_glare(args))
    print(json.dumps(summary, indent=2, sort_keys=True))

    negotiated = {entry["transport"]["negotiated"] for entry in summary.values()}
    return 0 if len(negotiated) == 1 and None not in negotiated else 1


if __name__ == "__main__":
    sys.exit(main())
