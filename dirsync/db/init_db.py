from __future__ import annotations

import logging

from sqlalchemy import text

from dirsync.db.migrations import apply_migrations
from dirsync.db.models import Base
from dirsync.db.session import get_engine

logger = logging.getLogger(__name__)


def initialize_database() -> None:
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    apply_migrations(engine)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
    logger.debug("Database initialized at %s", engine.url.render_as_string(hide_password=True))
