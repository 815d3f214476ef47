"""Mapping between the engine's internal types and the client wire contract.

Status values travel as the literals the personnel UI already understands.
Field names are mapped to their wire aliases by the response schemas in
``dirsync.api.schemas.sync``; the dictionaries built here use internal names.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from dirsync.db.models import SyncRunStatus
from dirsync.runs.types import StatusSnapshot, SyncRunSnapshot

STATUS_WIRE_LITERALS: dict[SyncRunStatus, str] = {
    SyncRunStatus.RUNNING: "Bezig",
    SyncRunStatus.COMPLETED: "Voltooid",
    SyncRunStatus.PARTIALLY_COMPLETED: "GedeeltelijkVoltooid",
    SyncRunStatus.FAILED: "Mislukt",
    SyncRunStatus.UNKNOWN: "Onbekend",
}

_STATUS_BY_LITERAL: dict[str, SyncRunStatus] = {literal: status for status, literal in STATUS_WIRE_LITERALS.items()}


def status_to_wire(status: SyncRunStatus | None) -> str | None:
    if status is None:
        return None
    return STATUS_WIRE_LITERALS[SyncRunStatus(status)]


def status_from_wire(literal: str | None) -> SyncRunStatus:
    if literal is None:
        return SyncRunStatus.UNKNOWN
    return _STATUS_BY_LITERAL.get(literal.strip(), SyncRunStatus.UNKNOWN)


def run_to_dict(snapshot: SyncRunSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["id"] = str(snapshot.id)
    payload["status"] = status_to_wire(snapshot.status)
    # Tracebacks stay server-side.
    payload.pop("error_details", None)
    return payload


def status_snapshot_to_dict(snapshot: StatusSnapshot) -> dict[str, Any]:
    return {
        "is_running": snapshot.is_running,
        "last_run_at": snapshot.last_run_at,
        "last_run_status": status_to_wire(snapshot.last_run_status),
        "current_run_id": None if snapshot.current_run_id is None else str(snapshot.current_run_id),
    }
