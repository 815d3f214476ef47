from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from dirsync.api.schemas.sync import SyncRunResponse, SyncStatusResponse
from dirsync.core.config import get_settings
from dirsync.runs.errors import AlreadyRunningError, RunnerClosedError, StoreUnavailableError, SyncRunNotFoundError
from dirsync.runs.queries import SyncRunQueries
from dirsync.runs.runner import JobRunner
from dirsync.runs.wire import run_to_dict, status_snapshot_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_job_runner(request: Request) -> JobRunner:
    runner = getattr(request.app.state, "job_runner", None)
    if runner is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync engine is not started")
    return runner


def get_sync_queries(runner: JobRunner = Depends(get_job_runner)) -> SyncRunQueries:
    return SyncRunQueries(settings=get_settings(), store=runner.store)


@router.post("/uitvoeren", response_model=SyncRunResponse, status_code=status.HTTP_202_ACCEPTED)
def start_sync_run(
    triggered_by: str | None = Header(default=None, alias="X-Triggered-By", max_length=256),
    runner: JobRunner = Depends(get_job_runner),
    queries: SyncRunQueries = Depends(get_sync_queries),
) -> SyncRunResponse:
    logger.info("Sync run requested by %s", triggered_by or "unknown")
    try:
        run_id = runner.start_run(triggered_by)
        snapshot = queries.get_run(run_id)
    except AlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RunnerClosedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        logger.error("Sync run could not be started: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SyncRunResponse.model_validate(run_to_dict(snapshot))


@router.get("/status", response_model=SyncStatusResponse)
def get_sync_status(queries: SyncRunQueries = Depends(get_sync_queries)) -> SyncStatusResponse:
    try:
        snapshot = queries.get_status()
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SyncStatusResponse.model_validate(status_snapshot_to_dict(snapshot))


@router.get("/geschiedenis", response_model=list[SyncRunResponse])
def get_sync_history(
    aantal: int | None = Query(default=None, ge=1),
    queries: SyncRunQueries = Depends(get_sync_queries),
) -> list[SyncRunResponse]:
    try:
        items = queries.get_history(aantal)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [SyncRunResponse.model_validate(run_to_dict(item)) for item in items]


@router.get("/runs/{run_id}", response_model=SyncRunResponse)
def get_sync_run(run_id: int, queries: SyncRunQueries = Depends(get_sync_queries)) -> SyncRunResponse:
    try:
        snapshot = queries.get_run(run_id)
    except SyncRunNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SyncRunResponse.model_validate(run_to_dict(snapshot))
