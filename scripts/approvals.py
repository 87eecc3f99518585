#!/usr/bin/env python3
"""
Approval engine command-line tools.

Usage:
    python scripts/approvals.py [--config PATH] [--database-url URL] COMMAND

Commands:
    init-db          Create the approval tables.
    seed-flows       Import the configured seed flows (existing codes are kept).
    sweep            Run one reconciliation sweep (auto-approve / escalate).
    run-scheduler    Run the reconciliation sweep every interval until Ctrl-C.
    relay            Publish pending outbox events (logged to stderr).

Settings come from approval_config (bundled defaults, --config file,
APPROVAL_* environment variables); --database-url overrides all of them.
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

# ---------------------------------------------------------------------------
# Project root on sys.path
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from approval_batch.services.scheduler import ReconciliationScheduler
from approval_config import EngineConfig, load_engine_config
from approval_config.bridges import to_flow_specs, to_staff_profiles
from approval_config.loader import load_yaml_file
from approval_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from approval_kernel.domain.directory import InMemoryStaffDirectory
from approval_kernel.domain.events import EventEnvelope
from approval_kernel.logging_config import configure_logging, get_logger
from approval_kernel.services.event_bus import ALL_EVENTS, InProcessEventBus
from approval_kernel.services.event_relay import EventRelay
from approval_kernel.services.flow_catalog import FlowCatalogService

logger = get_logger("scripts.approvals")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Approval engine maintenance commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Engine YAML file (default: bundled approval_config/defaults/engine.yaml).",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy database URL (overrides config and APPROVAL_DATABASE_URL).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the approval tables.")
    sub.add_parser("seed-flows", help="Import the configured seed flows.")

    sweep = sub.add_parser("sweep", help="Run one reconciliation sweep.")
    sweep.add_argument(
        "--staff",
        type=Path,
        default=None,
        help="YAML file with a 'staff:' list used to route manager steps.",
    )

    run = sub.add_parser("run-scheduler", help="Sweep every interval until interrupted.")
    run.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between sweeps (default: settings.sweep_interval_seconds).",
    )
    run.add_argument("--staff", type=Path, default=None, help="Staff YAML file.")

    relay = sub.add_parser("relay", help="Publish pending outbox events.")
    relay.add_argument(
        "--max-batches",
        type=int,
        default=100,
        help="Stop after this many batches (default: 100).",
    )
    return parser.parse_args(argv)


def _load_directory(path: Path | None) -> InMemoryStaffDirectory:
    if path is None:
        return InMemoryStaffDirectory()
    data = load_yaml_file(path)
    return InMemoryStaffDirectory(to_staff_profiles(data.get("staff") or []))


def _log_event(envelope: EventEnvelope) -> None:
    logger.info(
        "approval_event_published",
        extra={
            "event_id": str(envelope.event_id),
            "event_type": envelope.event_type,
            "instance_id": str(envelope.instance_id),
            "payload": envelope.payload,
        },
    )


def _build_relay(config: EngineConfig) -> EventRelay:
    bus = InProcessEventBus()
    bus.subscribe(ALL_EVENTS, _log_event)
    settings = config.settings
    return EventRelay(
        get_session_factory(),
        bus,
        batch_size=settings.relay_batch_size,
        max_attempts=settings.relay_max_attempts,
        backoff_seconds=settings.relay_backoff_seconds,
    )


def cmd_init_db(config: EngineConfig, args: argparse.Namespace) -> int:
    create_tables()
    print("Tables created.")
    return 0


def cmd_seed_flows(config: EngineConfig, args: argparse.Namespace) -> int:
    with session_scope() as session:
        flows = FlowCatalogService(session).import_templates(to_flow_specs(config.flows))
        for flow in flows:
            state = "active" if flow.is_active else "inactive"
            print(f"  {flow.code:<34} {flow.target_type:<26} {len(flow.steps)} step(s), {state}")
    print(f"{len(flows)} flow(s) in catalog.")
    return 0


def cmd_sweep(config: EngineConfig, args: argparse.Namespace) -> int:
    scheduler = ReconciliationScheduler(
        get_session_factory(),
        _load_directory(args.staff),
        relay=_build_relay(config),
    )
    result = scheduler.sweep()
    if result.skipped:
        print("Another sweep is running; nothing done.")
        return 0
    print(
        f"Examined {result.examined}: auto-approved {result.auto_approved}, "
        f"escalated {result.escalated}, failed {result.failed}."
    )
    return 1 if result.failed else 0


def cmd_run_scheduler(config: EngineConfig, args: argparse.Namespace) -> int:
    interval = args.interval or config.settings.sweep_interval_seconds
    scheduler = ReconciliationScheduler(
        get_session_factory(),
        _load_directory(args.staff),
        interval_seconds=interval,
        relay=_build_relay(config),
    )
    stopped = threading.Event()

    def _shutdown(signum, frame):
        stopped.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    print(f"Sweeping every {interval}s. Ctrl-C to stop.")
    scheduler.start()
    try:
        stopped.wait()
    finally:
        scheduler.stop()
    return 0


def cmd_relay(config: EngineConfig, args: argparse.Namespace) -> int:
    result = _build_relay(config).drain(max_batches=args.max_batches)
    print(
        f"Delivered {result.delivered}, failed {result.failed}, "
        f"dead-lettered {result.dead_lettered}."
    )
    return 1 if result.failed else 0


COMMANDS = {
    "init-db": cmd_init_db,
    "seed-flows": cmd_seed_flows,
    "sweep": cmd_sweep,
    "run-scheduler": cmd_run_scheduler,
    "relay": cmd_relay,
}


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        config = load_engine_config(args.config)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    configure_logging(level=config.settings.log_level)
    init_engine_from_url(args.database_url or config.settings.database_url)
    return COMMANDS[args.command](config, args)


if __name__ == "__main__":
    sys.exit(main())
