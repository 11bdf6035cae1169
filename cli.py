#!/usr/bin/env python3
"""
Command-line interface for the order event broker.

Usage:
    uv run python cli.py [command] [options]

Commands:
    serve        Start the API server
    demo         Run demo scenarios
    replay       Rebuild missing delivery records from the event log
    compact      Remove fully delivered events older than the retention window
    deadletters  List or retry dead-lettered deliveries
    test         Run the test suite

Examples:
    uv run python cli.py serve --reload
    uv run python cli.py demo order-flow
    uv run python cli.py replay --from 120 --handler notification
    uv run python cli.py deadletters retry 2b0c...e41 --handler payment
"""

import argparse
import asyncio
import os
import subprocess
import sys
from typing import Optional

from broker.service import OrderBroker
from shared.config import CONFIG_ENV_VAR, load_config
from shared.errors import BrokerError
from shared.logging_config import setup_logging


def run_demo(scenario: str) -> None:
    """Run a demo scenario."""
    from broker.demo import run_dead_letter_demo, run_order_flow_demo, run_retry_demo

    scenarios = {
        "order-flow": [run_order_flow_demo],
        "retry": [run_retry_demo],
        "dead-letter": [run_dead_letter_demo],
        "all": [run_order_flow_demo, run_retry_demo, run_dead_letter_demo],
    }
    if scenario not in scenarios:
        print(f"Unknown scenario: {scenario}")
        sys.exit(1)
    for demo in scenarios[scenario]:
        demo()


async def _with_broker(config_path: Optional[str], operation):
    """Open the broker's storage without starting delivery and run `operation`."""
    config = load_config(config_path)
    setup_logging(config.logging)
    broker = OrderBroker(config)
    await broker.open()
    try:
        return await operation(broker)
    finally:
        await broker.close()


def run_replay(config_path: Optional[str], from_position: int, handler_id: Optional[str]) -> None:
    async def operation(broker: OrderBroker) -> int:
        return await broker.dispatcher.replay(from_position, handler_id)

    created = asyncio.run(_with_broker(config_path, operation))
    print(f"Created {created} delivery records")


def run_compact(config_path: Optional[str], hours: Optional[float]) -> None:
    async def operation(broker: OrderBroker) -> int:
        retention = hours if hours is not None else broker.config.store.retention_hours
        if retention is None:
            print("No retention configured; pass --hours")
            sys.exit(1)
        return await broker.dispatcher.compact(retention)

    removed = asyncio.run(_with_broker(config_path, operation))
    print(f"Removed {removed} events")


def run_deadletters(config_path: Optional[str], action: str, event_id: Optional[str],
                    handler_id: Optional[str], limit: int) -> None:
    async def operation(broker: OrderBroker):
        if action == "retry":
            return await broker.dispatcher.retry_dead_letter(event_id, handler_id)
        return await broker.dispatcher.dead_letters(limit=limit)

    records = asyncio.run(_with_broker(config_path, operation))
    if action == "retry":
        print(f"Re-enqueued {len(records)} deliveries:")
    elif not records:
        print("No dead-lettered deliveries")
    for record in records:
        print(f"  {record.event_id}  {record.handler_id:<16} {record.order_id:<12} "
              f"attempts={record.attempts}  {record.last_error or ''}")


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(config_path: Optional[str], host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    env = dict(os.environ)
    if config_path:
        env[CONFIG_ENV_VAR] = config_path

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd, env=env)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Order Event Broker CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve --reload
  %(prog)s demo all
  %(prog)s replay --from 0
  %(prog)s compact --hours 72
  %(prog)s deadletters list
  %(prog)s test -v
        """,
    )
    parser.add_argument("--config", default=None, help="YAML config file (default: $ORDER_BROKER_CONFIG)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run demo scenarios")
    demo_parser.add_argument(
        "scenario",
        choices=["order-flow", "retry", "dead-letter", "all"],
        help="Which scenario to run",
    )

    # Replay command
    replay_parser = subparsers.add_parser("replay", help="Rebuild missing delivery records")
    replay_parser.add_argument("--from", dest="from_position", type=int, default=0,
                               help="Replay events after this log position")
    replay_parser.add_argument("--handler", default=None, help="Only this handler's subscription")

    # Compact command
    compact_parser = subparsers.add_parser("compact", help="Compact the event log")
    compact_parser.add_argument("--hours", type=float, default=None,
                                help="Retention window (default: store.retention_hours)")

    # Dead letters command
    dl_parser = subparsers.add_parser("deadletters", help="List or retry dead letters")
    dl_parser.add_argument("action", choices=["list", "retry"])
    dl_parser.add_argument("event_id", nargs="?", default=None, help="Event to retry")
    dl_parser.add_argument("--handler", default=None, help="Only this handler's delivery")
    dl_parser.add_argument("--limit", type=int, default=100)

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    args = parser.parse_args()

    try:
        if args.command == "serve":
            run_server(args.config, args.host, args.port, args.reload)
        elif args.command == "demo":
            run_demo(args.scenario)
        elif args.command == "replay":
            run_replay(args.config, args.from_position, args.handler)
        elif args.command == "compact":
            run_compact(args.config, args.hours)
        elif args.command == "deadletters":
            if args.action == "retry" and not args.event_id:
                parser.error("deadletters retry needs an event_id")
            run_deadletters(args.config, args.action, args.event_id, args.handler, args.limit)
        elif args.command == "test":
            run_tests(args.pytest_args)
        else:
            parser.print_help()
    except BrokerError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
