import enum

from sqlalchemy import Column, Index, Integer, String, Text, text

from panel.core.database import Base
from panel.models.base import TimestampMixin, UTCDateTime, str_enum, utcnow


class CancellationMode(str, enum.Enum):
    GRACE = "grace"
    IMMEDIATE = "immediate"


class CancellationStatus(str, enum.Enum):
    PENDING = "pending"
    REVOKED = "revoked"
    COMPLETED = "completed"
    FAILED = "failed"


class CancellationRequest(Base, TimestampMixin):
    __tablename__ = "cancellation_requests"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(128), nullable=False)
    resource_id = Column(String(64), nullable=False)
    mode = Column(str_enum(CancellationMode, length=16), nullable=False, default=CancellationMode.GRACE)
    status = Column(str_enum(CancellationStatus, length=16), nullable=False, default=CancellationStatus.PENDING)
    reason = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    requested_at = Column(UTCDateTime, default=utcnow, nullable=False)
    scheduled_deletion_at = Column(UTCDateTime, nullable=False)
    revoked_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    @property
    def is_revocable(self) -> bool:
        return self.status == CancellationStatus.PENDING and self.mode == CancellationMode.GRACE


Index("ix_cancellation_requests_owner_id", CancellationRequest.owner_id)
Index(
    "ix_cancellation_requests_status_scheduled",
    CancellationRequest.status,
    CancellationRequest.scheduled_deletion_at,
)
# At most one pending request per resource, enforced by the database as well
# as by the check in panel.repositories.cancellations.
Index(
    "uq_cancellation_requests_pending_resource",
    CancellationRequest.resource_id,
    unique=True,
    postgresql_where=text("status = 'pending'"),
    sqlite_where=text("status = 'pending'"),
)
