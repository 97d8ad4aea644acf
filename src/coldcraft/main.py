"""Command-line entry point.

Usage:
    coldcraft health [--network NAME ...]
    coldcraft address (evm|solana|NETWORK) [--path PATH] [--display]
    coldcraft fees NETWORK
    coldcraft config
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from coldcraft.config import get_settings
from coldcraft.errors import ConfigurationError, PipelineError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coldcraft",
        description="Craft, hardware-sign and broadcast EVM and Solana transactions",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    health = sub.add_parser("health", help="Check the signer and network endpoints")
    health.add_argument(
        "--network",
        action="append",
        dest="networks",
        help="Network to check (repeatable, default: all)",
    )

    address = sub.add_parser("address", help="Show the address for a derivation path")
    address.add_argument("target", help="Chain family (evm, solana) or network name")
    address.add_argument("--path", default=None, help="BIP32 derivation path (default per family)")
    address.add_argument(
        "--display",
        action="store_true",
        help="Show the address on the device for verification",
    )

    fees = sub.add_parser("fees", help="Estimate slow / standard / fast fees")
    fees.add_argument("network", help="Network name")

    sub.add_parser("config", help="Print the active configuration (secrets redacted)")
    return parser


async def run(args: argparse.Namespace) -> dict:
    """Run a command and return its JSON-serializable output."""
    settings = get_settings()
    if args.command == "config":
        return settings.get_safe_dict()

    from coldcraft.orchestrator import Orchestrator

    orchestrator = Orchestrator(settings=settings)
    try:
        if args.command == "health":
            return await orchestrator.health_check(args.networks)
        if args.command == "address":
            address = await orchestrator.get_address(args.target, args.path, display=args.display)
            return {"target": args.target, "path": args.path or "default", "address": address}
        if args.command == "fees":
            estimate = await orchestrator.estimate_fees(args.network)
            return estimate.to_dict()
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await orchestrator.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    settings = get_settings()
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        output = asyncio.run(run(args))
    except PipelineError as e:
        print(json.dumps({"error": e.to_dict()}, indent=2, default=str))
        return 1
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(json.dumps({"error": {"code": "configuration_error", "message": str(e)}}, indent=2))
        return 2

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
