# =============================================================================
# mbwatch Main Application
# =============================================================================
# Command-line entry point. Wires everything together:
#
#   - Logging setup (once, from --verbose / --debug)
#   - Configuration: config.toml, then the mbsyncrc, then CLI overrides
#   - One AccountMonitor task per watched account
#   - The full-update ticker task
#   - The EventAggregator, which runs the update script
#
# Exit codes:
#   0   normal exit (--version, --paths, --print-config, Ctrl-C)
#   1   configuration or usage error
#   70  internal contract violation (a bug, see core/errors.py)
# =============================================================================

import argparse
import asyncio
import functools
import logging
import sys
from dataclasses import replace
from pathlib import Path

from mbwatch import __version__, __app_name__
from mbwatch.aggregator import EventAggregator, full_update_ticker, run_update_script
from mbwatch.config import (
    Config,
    ConfigError,
    build_accounts,
    parse_duration,
    parse_mbsyncrc,
    print_paths,
)
from mbwatch.core import Account, ContractViolation
from mbwatch.monitor import AccountMonitor

logger = logging.getLogger(__name__)

EXIT_CONTRACT_VIOLATION = 70

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%m-%d-%Y %H:%M:%S"


def configure_logging(verbose: bool = False, debug: bool = False) -> None:
    """
    Set up process-wide logging.

    --verbose and --debug both log at DEBUG; --debug additionally turns on
    protocol tracing through WatchSettings.trace.
    """
    level = logging.DEBUG if (verbose or debug) else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    if not debug:
        # aioimaplib logs every line it reads at DEBUG
        logging.getLogger("aioimaplib").setLevel(logging.INFO)


# =============================================================================
# Running
# =============================================================================

async def watch(accounts: dict[str, Account], config: Config) -> None:
    """
    Watch all accounts until cancelled or a task fails.

    Raises:
        ContractViolation: If any task broke an internal invariant.
    """
    events: asyncio.Queue = asyncio.Queue()
    action = functools.partial(run_update_script, config.update_script)

    tasks = [
        asyncio.create_task(
            AccountMonitor(account, events, config.watch).run(),
            name=f"watch-{account.name}",
        )
        for account in accounts.values()
    ]
    tasks.append(asyncio.create_task(
        full_update_ticker(events, config.watch.full_interval),
        name="full-update",
    ))
    tasks.append(asyncio.create_task(
        EventAggregator(accounts, events, config.watch, action).run(),
        name="aggregator",
    ))

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            task.result()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("All watch tasks stopped")


# =============================================================================
# CLI Entry Point
# =============================================================================

def _duration(text: str) -> float:
    try:
        return parse_duration(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Watch IMAP inboxes with IDLE and run an update script on new mail",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--update-script",
        help="Script to run when an INBOX is updated (default: ~/.mbwatch-update)",
    )

    parser.add_argument(
        "--mbsyncrc",
        help="Location of mbsync config file (default: ~/.mbsyncrc)",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--full-interval",
        type=_duration,
        help="Time between full updates regardless of IDLE, e.g. 5m (default: 5m)",
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log verbosely",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log information useful for debugging (protocol trace)",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--print-config",
        action="store_true",
        help="Print the effective configuration as TOML and exit",
    )

    parser.add_argument(
        "stores",
        nargs="*",
        metavar="STORE[:CHANNEL][:MAILBOX]",
        help="Only watch these stores, optionally naming the update target",
    )

    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> Config:
    """Load config.toml and apply command-line overrides."""
    config = Config.load(args.config)

    if args.update_script:
        config.update_script = args.update_script
    if args.mbsyncrc:
        config.mbsyncrc = args.mbsyncrc

    watch_settings = replace(config.watch, trace=args.debug)
    if args.full_interval:
        watch_settings = replace(watch_settings, full_interval=args.full_interval)
    config.watch = watch_settings

    return config


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mbwatch.

    This function:
        1. Parses command-line arguments and sets up logging
        2. Loads configuration and the mbsyncrc
        3. Handles --paths and --print-config
        4. Watches the accounts until interrupted

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)
    configure_logging(verbose=args.verbose, debug=args.debug)

    try:
        config = load_config(args)
        if args.paths:
            print_paths(config)
            return 0

        stores = parse_mbsyncrc(config.mbsyncrc, require_password=not config.watch.use_keyring)
        accounts = build_accounts(stores, args.stores, config.poll_intervals)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.print_config:
        print(config.dumps(accounts), end="")
        return 0

    logger.debug(f"Effective configuration:\n{config.dumps(accounts)}")

    if not accounts:
        logger.error("No accounts to watch")
        return 1

    logger.info(f"Watching {len(accounts)} accounts: {', '.join(sorted(accounts))}")
    try:
        asyncio.run(watch(accounts, config))
    except ContractViolation as e:
        logger.critical(f"Internal error, aborting: {e}")
        return EXIT_CONTRACT_VIOLATION
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")

    return 0


if __name__ == "__main__":
    sys.exit(main())
