from datetime import datetime

from pydantic import BaseModel, Field

from panel.models import CancellationMode, CancellationStatus


class CancellationCreate(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    resource_id: str = Field(min_length=1, max_length=64)
    mode: CancellationMode = CancellationMode.GRACE
    reason: str | None = None


class CancellationOut(BaseModel):
    id: int
    owner_id: str
    resource_id: str
    mode: CancellationMode
    status: CancellationStatus
    reason: str | None = None
    error_message: str | None = None
    requested_at: datetime
    scheduled_deletion_at: datetime
    revoked_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True
