# calmirror/main.py
import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
import argparse
import asyncio
import json
import logging

from core.settings import APP_NAME, DB_PATH, GOOGLE
from services.connectivity import ConnectivityMonitor
from services.google_auth import GoogleAuth
from services.google_calendar import GoogleCalendar
from services.local_store import LocalStore
from services.scheduler import SyncScheduler
from services.sync_engine import SyncEngine
from storage.db import init_db


def build_engine():
    init_db()
    auth = GoogleAuth()
    client = GoogleCalendar(auth)
    store = LocalStore()
    monitor = ConnectivityMonitor()
    engine = SyncEngine(client, store, monitor)
    return engine, monitor


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog=APP_NAME.lower(), description=f"{APP_NAME} calendar sync")
    parser.add_argument("--once", action="store_true", help="run a full sync and a queue drain, then exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug messages to the console")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger("calmirror")
    logger.info("Database: %s", DB_PATH)

    engine, monitor = build_engine()
    if not engine.client.is_authorized():
        logger.warning("No usable Google token at %s; working from the local cache only", GOOGLE.token_path)

    if args.once:
        monitor.check_now()
        engine.full_sync()
        engine.drain_queue()
        print(json.dumps(engine.snapshot(), indent=2))
        return 0

    scheduler = SyncScheduler(engine, monitor)
    engine.subscribe(lambda snapshot: logger.info("Sync status: %s", snapshot))
    try:
        asyncio.run(scheduler.run())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
