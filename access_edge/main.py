"""
Access Edge Agent - Main Entry Point

Biometric access-control agent for on-device deployment.
Captures camera frames, decides allow/deny/review against the cached
identities of this device's location, and delivers decisions to the backend
through network outages.

Usage:
    access-edge [--config CONFIG_PATH] [--debug] [--once | --status | --print-config]

Environment Variables:
    CONFIG_PATH: Path to config file (default: /opt/access-edge/config/agent_config.json)

Signals:
    SIGINT/SIGTERM  graceful shutdown
    SIGHUP          resume after the device secret was re-provisioned
"""

import argparse
import json
import logging
import os
import signal
import sys
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError

from .config import AgentConfig, load_config, resolve_config_path
from .errors import StorageInitError
from .logging_config import setup_logging
from .orchestrator import create_orchestrator
from .store import LocalStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="access-edge",
        description="Access Edge Agent - biometric access control",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to agent configuration file (default: $CONFIG_PATH or "
             "/opt/access-edge/config/agent_config.json)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=True,
        help="Enable JSON structured logging (default: enabled)"
    )
    parser.add_argument(
        "--no-json-logs",
        action="store_true",
        help="Disable JSON structured logging"
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--print-config",
        action="store_true",
        help="Print the effective configuration and exit"
    )
    mode.add_argument(
        "--once",
        action="store_true",
        help="Process one frame, run one sync and delivery round, then exit"
    )
    mode.add_argument(
        "--status",
        action="store_true",
        help="Print outbox and cache status from the local store and exit"
    )
    return parser


def print_status(config: AgentConfig) -> int:
    """Print queue and cache state without starting the agent."""
    store = LocalStore(config.queue.db_path, busy_timeout=config.queue.write_timeout_seconds)
    try:
        store.initialize()
    except StorageInitError as e:
        print(f"ERROR: {e}")
        return 1

    counts = store.get_queue_counts()
    status = {
        "device_id": config.device_id,
        "location_id": config.location_id,
        "db_path": config.queue.db_path,
        "queue": counts,
        "cache": {
            "as_of": store.get_state("cache_as_of"),
            "version": store.get_state("cache_version"),
            "references": len(store.load_reference_rows(config.location_id)),
        },
    }
    print(json.dumps(status, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    config_path = resolve_config_path(args.config)
    if not os.path.exists(config_path):
        print(f"ERROR: Config file not found: {config_path}")
        return 1

    try:
        config = load_config(config_path)
    except (ValueError, ValidationError) as e:
        print(f"ERROR: Invalid config {config_path}: {e}")
        return 1

    if args.print_config:
        print(config.model_dump_json(indent=2))
        return 0

    if args.status:
        return print_status(config)

    log_level = logging.DEBUG if args.debug else getattr(logging, config.logging.level.upper(), logging.INFO)
    use_json = args.json_logs and config.logging.json_logs and not args.no_json_logs
    setup_logging(
        device_id=config.device_id,
        log_dir=config.logging.log_dir,
        console_level=log_level,
        file_level=logging.DEBUG,
        json_logs=use_json,
    )
    date_str = datetime.now().strftime("%Y%m%d")
    logger.info(
        f"Logging initialized: device_id={config.device_id}, json={use_json}, "
        f"level={logging.getLevelName(log_level)}, dir={config.logging.log_dir}, date={date_str}"
    )

    try:
        agent = create_orchestrator(config)
    except StorageInitError as e:
        logger.critical(f"Local store unusable, exiting: {e}")
        return 1
    except ValueError as e:
        logger.critical(f"Cannot start agent: {e}")
        return 1

    if args.once:
        records = agent.run_once()
        for record in records:
            print(record.model_dump_json())
        return 0

    def stop_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        agent.request_stop()

    def reprovision_handler(sig, frame):
        logger.info("Received SIGHUP, reloading device credential")
        agent.reprovision()

    signal.signal(signal.SIGINT, stop_handler)
    signal.signal(signal.SIGTERM, stop_handler)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, reprovision_handler)

    agent.start()
    try:
        agent.wait()
    finally:
        agent.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
