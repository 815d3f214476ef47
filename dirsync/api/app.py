from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from dirsync.api.routes.health import router as health_router
from dirsync.api.routes.sync import router as sync_router
from dirsync.core.config import get_settings
from dirsync.core.logging import configure_logging
from dirsync.db.init_db import initialize_database
from dirsync.db.session import get_session_factory
from dirsync.runs.reporter import Reconciler
from dirsync.runs.runner import JobRunner


def create_app(reconciler: Reconciler | None = None) -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        initialize_database()
        runner = JobRunner(settings=settings, session_factory=get_session_factory(), reconciler=reconciler)
        # Orphans from a previous process must be failed before any new run is accepted.
        runner.recover_orphaned_runs()
        app.state.job_runner = runner
        try:
            yield
        finally:
            app.state.job_runner = None
            runner.shutdown(wait=False)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(sync_router, prefix="/api/v1")
    return app
