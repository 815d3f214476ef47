from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from dirsync.db.models import SyncRunStatus


@dataclass(slots=True)
class SyncRunSnapshot:
    id: int
    status: SyncRunStatus
    started_by: str | None
    started_at: datetime
    finished_at: datetime | None
    groups_processed: int
    members_added: int
    members_updated: int
    members_removed: int
    memberships_added: int
    memberships_removed: int
    validation_requests_created: int
    error_message: str | None
    error_details: str | None


@dataclass(slots=True, frozen=True)
class StatusSnapshot:
    is_running: bool
    last_run_at: datetime | None
    last_run_status: SyncRunStatus | None
    current_run_id: int | None


class RunEventKind(str, Enum):
    """Messages a reconciler posts on a run's channel.

    Progress kinds carry the name of the counter column they increment.
    """

    GROUP_PROCESSED = "groups_processed"
    MEMBER_ADDED = "members_added"
    MEMBER_UPDATED = "members_updated"
    MEMBER_REMOVED = "members_removed"
    MEMBERSHIP_ADDED = "memberships_added"
    MEMBERSHIP_REMOVED = "memberships_removed"
    VALIDATION_REQUEST_CREATED = "validation_requests_created"
    FINISHED = "finished"


@dataclass(slots=True, frozen=True)
class RunEvent:
    kind: RunEventKind
    count: int = 1
    outcome: SyncRunStatus | None = None
    error_message: str | None = None
    error_details: str | None = None
