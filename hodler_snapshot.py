#!/usr/bin/env python3
"""
Cosmos Hodler Snapshot

Snapshot token stakers on Cosmos SDK chains. The ``native-stakers`` command
queries every non-jailed validator for its delegations and writes the total
stake of each delegator as ``address,amount`` lines.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from pagination import DEFAULT_PAGE_LIMIT
from snapshot_errors import OutputSinkError, SnapshotError
from staking_client import (
    BOND_STATUSES,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    StakingQueryClient,
)
from staking_snapshot import NativeStakerSnapshot, SnapshotProgress

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = "juno_stakers.csv"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


# Config values from JSON are checked against these before use
FIELD_TYPES = {
    "endpoint": (str, "a string"),
    "output_file": (str, "a string"),
    "status": (str, "a string"),
    "page_limit": (int, "an integer"),
    "concurrency": (int, "an integer"),
    "connect_timeout": ((int, float), "a number"),
    "request_timeout": ((int, float), "a number"),
}


@dataclass(frozen=True)
class SnapshotConfig:
    """Settings for one native-stakers run."""

    endpoint: str
    output_file: str = DEFAULT_OUTPUT
    status: str = ""
    page_limit: int = DEFAULT_PAGE_LIMIT
    concurrency: int = 1
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the config is usable."""
        problems = []
        for name, (expected, kind) in FIELD_TYPES.items():
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, expected):
                problems.append(f"{name} must be {kind}, got {value!r}")
        if problems:
            return problems

        if not self.endpoint:
            problems.append("an endpoint must be given with --endpoint or in the config file")
        if self.status not in BOND_STATUSES:
            problems.append(f"unknown status {self.status!r} (choose from {', '.join(s for s in BOND_STATUSES if s)})")
        if self.page_limit < 1:
            problems.append(f"page limit must be at least 1, got {self.page_limit}")
        if self.concurrency < 1:
            problems.append(f"concurrency must be at least 1, got {self.concurrency}")
        if self.connect_timeout <= 0 or self.request_timeout <= 0:
            problems.append("timeouts must be positive")
        return problems


# argparse dest -> config file key
CONFIG_KEYS = {
    "endpoint": "endpoint",
    "output": "output_file",
    "status": "status",
    "page_limit": "page_limit",
    "concurrency": "concurrency",
    "connect_timeout": "connect_timeout",
    "request_timeout": "request_timeout",
}


def load_config_file(path: str) -> Dict[str, Any]:
    with open(path, 'r') as f:
        config = json.load(f)
    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return config


def resolve_config(args: argparse.Namespace, file_config: Optional[Dict[str, Any]] = None) -> SnapshotConfig:
    """Command line values take precedence over the config file, then defaults."""
    file_config = file_config or {}
    values = {}
    for dest, key in CONFIG_KEYS.items():
        value = getattr(args, dest, None)
        if value is None:
            value = file_config.get(key)
        if value is not None:
            values[key] = value

    values.setdefault("endpoint", "")
    return SnapshotConfig(**values)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cosmos-hodler-snapshot",
        description="Snapshot token stakers on Cosmos SDK chains",
    )
    parser.add_argument("--endpoint", type=str,
                        help="LCD (REST) endpoint of the chain, e.g. https://lcd.example.com")
    parser.add_argument("--config", type=str,
                        help="Path to JSON config file")
    parser.add_argument("--log-file", type=str,
                        help="Log file path (default: hodler_snapshot_<timestamp>.log)")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    stakers = subparsers.add_parser("native-stakers",
                                    help="Snapshot stakers of the native token (x/staking)")
    stakers.add_argument("--output", type=str,
                         help=f"Output CSV file path (default: {DEFAULT_OUTPUT})")
    stakers.add_argument("--status", type=str,
                         help="Only include validators with this bond status (default: all)")
    stakers.add_argument("--page-limit", type=int,
                         help=f"Records requested per page (default: {DEFAULT_PAGE_LIMIT})")
    stakers.add_argument("--concurrency", type=int,
                         help="Validators to crawl concurrently (default: 1)")
    stakers.add_argument("--connect-timeout", type=float,
                         help=f"Seconds to wait for the endpoint to answer (default: {DEFAULT_CONNECT_TIMEOUT})")
    stakers.add_argument("--request-timeout", type=float,
                         help=f"Seconds allowed per page request (default: {DEFAULT_REQUEST_TIMEOUT})")
    return parser


def configure_logging(log_file: Optional[str] = None, debug: bool = False):
    if log_file is None:
        log_file = f"hodler_snapshot_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ],
        force=True,
    )


async def snapshot_native_stakers(config: SnapshotConfig, show_progress: bool = False) -> int:
    """
    Run a native staker snapshot and write it to ``config.output_file``.

    Returns the number of delegators written.
    """
    async with StakingQueryClient(config.endpoint, connect_timeout=config.connect_timeout,
                                  request_timeout=config.request_timeout) as client:
        await client.connect()

        # Open the output before crawling so an unwritable path fails fast
        try:
            output = open(config.output_file, 'w', newline='')
        except OSError as e:
            raise OutputSinkError(f"Cannot open output file {config.output_file}: {str(e)}") from e

        with output:
            pbar = None

            def on_progress(progress: SnapshotProgress):
                if pbar.total != progress.total:
                    pbar.total = progress.total
                    pbar.refresh()
                pbar.update(1)
                pbar.set_postfix(validator=progress.validator[-8:], delegators=progress.delegators_indexed)

            with tqdm(desc="Processing validators", unit="validator", disable=not show_progress) as pbar:
                snapshot = NativeStakerSnapshot(
                    client,
                    page_limit=config.page_limit,
                    concurrency=config.concurrency,
                    on_progress=on_progress,
                )
                ledger = await snapshot.run(config.status)

            written = ledger.write_csv(output)

    total_staked = ledger.total_staked()
    logger.info(f"Results saved to {config.output_file}")
    logger.info(f"Snapshot summary: {written} delegators with {total_staked} total staked"
                + (f" on {client.chain_id}" if client.chain_id else ""))
    return written


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    file_config = None
    if args.config:
        try:
            file_config = load_config_file(args.config)
        except (OSError, ValueError) as e:
            parser.error(f"Error loading config file: {str(e)}")

    config = resolve_config(args, file_config)
    problems = config.validate()
    if problems:
        parser.error("; ".join(problems))

    configure_logging(args.log_file, args.debug)
    if args.config:
        logger.info(f"Loaded configuration from {args.config}")

    try:
        asyncio.run(snapshot_native_stakers(config, show_progress=sys.stderr.isatty()))
    except SnapshotError as e:
        logger.error(f"Snapshot failed: {str(e)}")
        return 1
    except KeyboardInterrupt:
        logger.info("Process interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Unhandled exception: {str(e)}", exc_info=True)
        return 1

    logger.info("Snapshot completed successfully")
    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
