#!/usr/bin/env python3
"""Shop dunning runner.

Runs the dunning cycle for all configured shops, either as a long
running service (one cycle per interval) or as a single pass.
`--dry-run` performs one simulated pass: invoices are downloaded and
notices rendered into the dry-run directory, nothing is sent or
written back to the shops.
"""

import argparse
import logging
import os
import sys
import threading

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from agents.shop_dunning.config import load_tenants
from agents.shop_dunning.errors import ConfigurationError
from agents.shop_dunning.playbooks import DunningPlaybook
from agents.shop_dunning.runner import install_signal_handlers, run_service
from backend.core.config import settings
from backend.core.observability import init_logging

logger = logging.getLogger("tools.dunning")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Automated payment reminders and dunning letters for Shopware shops",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run as service (one cycle per DUNNING_CYCLE_INTERVAL_SEC)
  python tools/dunning/run_dunning.py

  # Single simulated pass, artifacts in DUNNING_DRY_RUN_DIR
  python tools/dunning/run_dunning.py --dry-run
        """,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate one pass without sending emails or updating orders",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        0 on completed run or clean shutdown, 1 on configuration failure
        or unhandled error
    """
    args = build_parser().parse_args(argv)
    init_logging()

    try:
        tenants = load_tenants(settings.DUNNING_SHOPS_CONFIG, settings.DUNNING_DUE_DAYS_POLICY)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    service_mode = settings.DUNNING_RUN_MODE == "service" and not args.dry_run
    logger.info(
        "Loaded shop configurations",
        extra={
            "shops": len(tenants),
            "dry_run": args.dry_run,
            "mode": "service" if service_mode else "oneshot",
        },
    )

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    try:
        playbook = DunningPlaybook(dry_run=args.dry_run)
        return run_service(playbook, tenants, stop_event, service_mode=service_mode)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.error("Unhandled error", extra={"error": str(e)}, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
