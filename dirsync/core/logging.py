from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not any(getattr(handler, "_dirsync_handler", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._dirsync_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # SQL echo stays off unless explicitly debugging the engine.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
