from __future__ import annotations

import logging
import os


def configure_logging() -> None:
    """Simple, dev-friendly logging setup.

    Uvicorn config can override this, but this gives us sane defaults when running locally.
    Set USERAUTH_LOG_LEVEL=DEBUG to see every index map / un-map step.
    """
    level = (os.getenv("USERAUTH_LOG_LEVEL") or "INFO").upper().strip()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
