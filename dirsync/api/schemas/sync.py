from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SyncRunResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    started_at: datetime = Field(alias="geStartOp")
    finished_at: datetime | None = Field(alias="voltooidOp")
    status: str
    started_by: str | None = Field(alias="gestartDoor")
    groups_processed: int = Field(alias="groepenVerwerkt")
    members_added: int = Field(alias="medewerkersToegevoegd")
    members_updated: int = Field(alias="medewerkersBijgewerkt")
    members_removed: int = Field(alias="medewerkersVerwijderd")
    memberships_added: int = Field(alias="lidmaatschappenToegevoegd")
    memberships_removed: int = Field(alias="lidmaatschappenVerwijderd")
    validation_requests_created: int = Field(alias="validatieVerzoekenAangemaakt")
    error_message: str | None = Field(alias="foutmelding")


class SyncStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_running: bool = Field(alias="isSyncBezig")
    last_run_at: datetime | None = Field(alias="laatsteSyncOp")
    last_run_status: str | None = Field(alias="laatsteSyncStatus")
    current_run_id: str | None = Field(alias="huidigeSyncId")
