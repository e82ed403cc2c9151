from datetime import datetime
from typing import List, Optional

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, Field, field_validator

from app.models.jobs import AutoDeleteMode


class AccountSettingsResponse(BaseModel):
    account_id: str
    sync_frequency: str
    sync_paused: bool
    auto_delete_mode: AutoDeleteMode
    delete_delay_hours: Optional[int]
    delete_age_months: Optional[int]
    delete_only_archived: bool

    class Config:
        from_attributes = True


class AccountSettingsUpdate(BaseModel):
    sync_frequency: Optional[str] = None
    sync_paused: Optional[bool] = None
    auto_delete_mode: Optional[AutoDeleteMode] = None
    delete_delay_hours: Optional[int] = Field(None, ge=1)
    delete_age_months: Optional[int] = Field(None, ge=1)
    delete_only_archived: Optional[bool] = None

    @field_validator("sync_frequency")
    @classmethod
    def _validate_sync_frequency(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "manual":
            return value
        CronTrigger.from_crontab(value)
        return value


class MboxImportRequest(BaseModel):
    file_path: str


class MarkedMessage(BaseModel):
    id: str
    subject: Optional[str]
    from_address: Optional[str]
    date: Optional[datetime]
    marked_for_deletion_at: Optional[datetime]

    class Config:
        from_attributes = True


class DryRunStatusResponse(BaseModel):
    account_id: str
    auto_delete_mode: AutoDeleteMode
    marked_count: int
    oldest_marked_at: Optional[datetime]
    sample: List[MarkedMessage]
