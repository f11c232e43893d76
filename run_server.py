#!/usr/bin/env python3
"""Handshake server with a background past-due sweep.

Processor credentials from HANDSHAKE_STRIPE_KEY (never in code). Without
one, payouts and refunds go to the in-memory stub backend.
"""

import logging
import os
import sys
import threading
import time

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn

from handshake.app import create_app
from handshake.payments import StripeBackend, StubBackend
from handshake.service import DealService
from handshake.store import DealStore

DB_PATH = os.environ.get("HANDSHAKE_DB", "handshake.db")
PORT = int(os.environ.get("HANDSHAKE_PORT", "8000"))
SWEEP_INTERVAL = int(os.environ.get("HANDSHAKE_SWEEP_INTERVAL", "900"))
STRIPE_KEY = os.environ.get("HANDSHAKE_STRIPE_KEY", "")
LOG_LEVEL = os.environ.get("HANDSHAKE_LOG_LEVEL", "INFO").upper()

logger = logging.getLogger("handshake.server")


# --- Past-due sweep: marks active deals whose date has elapsed ---
def run_sweeper(service: DealService, interval: int, stop: threading.Event):
    while not stop.wait(interval):
        try:
            report = service.sweep_past_due()
            if report.failed:
                logger.warning("sweep left %d deals unprocessed: %s",
                               len(report.failed), ", ".join(report.failed))
        except Exception:
            logger.exception("past-due sweep crashed; will retry in %ss", interval)


def build_service() -> DealService:
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    store = DealStore(DB_PATH)
    if STRIPE_KEY:
        # Payout destinations are registered by each principal via /accounts/payout
        backend = StripeBackend(STRIPE_KEY, accounts=store.get_payout_account)
    else:
        logger.warning("HANDSHAKE_STRIPE_KEY not set, using stub payment backend")
        backend = StubBackend()
    return DealService(store, backend, clock=time.time)


def main():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    service = build_service()
    app = create_app(service=service)

    stop = threading.Event()
    sweeper = threading.Thread(target=run_sweeper, args=(service, SWEEP_INTERVAL, stop), daemon=True)
    sweeper.start()
    logger.info("past-due sweep every %ss", SWEEP_INTERVAL)
    logger.info("listening on :%s (db %s)", PORT, DB_PATH)

    try:
        uvicorn.run(app, host="0.0.0.0", port=PORT)
    finally:
        stop.set()
        service.store.close()


if __name__ == "__main__":
    main()
