#!/usr/bin/env python3
"""Launch the Sthealth nudge server.

Usage:
    # From the repo root with the package installed (pip install -e .):
    python scripts/run_server.py

Serves REST under /api and the nudge_state WebSocket at /ws. The periodic
nudge evaluation tick and analytics flushing start with the app.
"""

from __future__ import annotations

import logging

import uvicorn

from sthealth.config.settings import NUDGE_EVALUATION_INTERVAL_SECONDS, SERVER_HOST, SERVER_PORT

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-7s  %(name)-22s  %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run_server")


def main():
    logger.info("=" * 60)
    logger.info("  STHEALTH — Nudge Engine")
    logger.info("=" * 60)
    logger.info("  REST       →  http://%s:%d/api", SERVER_HOST, SERVER_PORT)
    logger.info("  WebSocket  →  ws://%s:%d/ws", SERVER_HOST, SERVER_PORT)
    logger.info("  Evaluation tick every %ss", NUDGE_EVALUATION_INTERVAL_SECONDS)
    logger.info("=" * 60)

    uvicorn.run(
        "sthealth.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        log_level="info",
        reload=False,
    )


if __name__ == "__main__":
    main()
