#!/usr/bin/env python3
"""
Main entrypoint: bootstrap the database and serve the web API.
Run with: python run.py
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

# Project root
ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT))

from config import load as load_config


def main() -> None:
    config = load_config()
    # App loggers (tarely.api, task_service, occurrence) emit to the same stream as uvicorn
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )

    from task_service import ensure_db
    db_path = ensure_db()
    logging.getLogger("tarely").info("Database ready: %s", db_path)

    import uvicorn
    uvicorn.run(
        "web_app:app",
        host="0.0.0.0",
        port=config.web_ui_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
