"""
Standalone provisioning consumer and operator commands.

    python -m squadmarket.run_worker                 # poll until Ctrl-C
    python -m squadmarket.run_worker --once          # drain what is deliverable, then exit
    python -m squadmarket.run_worker reprovision ACCOUNT_REF
    python -m squadmarket.run_worker dead-letters

Run with SQUADMARKET_RUN_CONSUMER=0 on the API when this process does the consuming.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path

from squadmarket.channel import EventChannel
from squadmarket.config import Settings, get_settings
from squadmarket.logging_setup import configure_logging
from squadmarket.persistence.db import get_connection, init_db, set_db_path
from squadmarket.services.provisioning import Provisioner, ProvisioningResult, ProvisioningTransitionError
from squadmarket.services.provisioning_worker import ProvisioningWorker

logger = logging.getLogger(__name__)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if args.db:
        set_db_path(args.db)
        settings = replace(settings, db_path=Path(args.db))
    if args.workers:
        settings = replace(settings, workers=args.workers)
    return settings


async def _serve(worker: ProvisioningWorker) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass
    await worker.run_forever(stop)


def consume(settings: Settings, once: bool) -> int:
    worker = ProvisioningWorker(settings)
    if once:
        outcomes = worker.drain() + worker.sweep()
        failed = sum(1 for o in outcomes if o.result == ProvisioningResult.FAILED)
        logger.info("drained %d event(s), %d failed", len(outcomes), failed)
        return 1 if failed else 0
    asyncio.run(_serve(worker))
    return 0


def reprovision(settings: Settings, account_ref: str, seed: int | None) -> int:
    conn = get_connection()
    try:
        outcome = Provisioner(settings).reprovision(conn, account_ref, seed=seed)
    except ProvisioningTransitionError as e:
        logger.error("cannot reprovision account %s: %s", account_ref, e)
        return 1
    finally:
        conn.close()
    print(json.dumps({
        "account_ref": account_ref,
        "result": outcome.result.value,
        "squad": outcome.squad.to_dict() if outcome.squad else None,
    }, indent=2))
    return 0 if outcome.result == ProvisioningResult.READY else 1


def dead_letters(settings: Settings, limit: int) -> int:
    conn = get_connection()
    try:
        events = EventChannel(settings).list_dead(conn, limit=limit)
    finally:
        conn.close()
    print(json.dumps([ev.to_dict() for ev in events], indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Squad provisioning consumer.")
    parser.add_argument("--db", default=None, help="SQLite database path (default: SQUADMARKET_DB_PATH)")
    parser.add_argument("--workers", type=int, default=None, help="Consumer pool size")
    parser.add_argument("--once", action="store_true", help="Drain deliverable events and exit")
    sub = parser.add_subparsers(dest="command")
    rp = sub.add_parser("reprovision", help="Move an errored squad back to creating and provision it")
    rp.add_argument("account_ref")
    rp.add_argument("--seed", type=int, default=None, help="RNG seed for a deterministic squad")
    dl = sub.add_parser("dead-letters", help="Print dead-lettered events")
    dl.add_argument("--limit", type=int, default=100)
    args = parser.parse_args(argv)

    settings = _settings_from_args(args)
    configure_logging(settings.log_level)
    init_db()

    if args.command == "reprovision":
        return reprovision(settings, args.account_ref, args.seed)
    if args.command == "dead-letters":
        return dead_letters(settings, args.limit)
    return consume(settings, once=args.once)


if __name__ == "__main__":
    sys.exit(main())
