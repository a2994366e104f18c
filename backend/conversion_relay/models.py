"""SQLAlchemy ORM models and enums.

This module defines the two records the delivery subsystem touches:
`integrations` (per-organization platform credentials and sync health) and
`sync_logs` (append-only audit of delivery attempts). Credentials are kept
as the encrypted byte blob produced by `conversion_relay.security`.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Index, JSON, Text, LargeBinary, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class IntegrationTypeEnum(str, enum.Enum):
    meta_capi = "META_CAPI"
    google_ads = "GOOGLE_ADS"


class IntegrationStatusEnum(str, enum.Enum):
    pending = "PENDING"  # created by settings UI, credentials not verified yet
    active = "ACTIVE"
    paused = "PAUSED"
    error = "ERROR"


class SyncStatusEnum(str, enum.Enum):
    running = "RUNNING"
    completed = "COMPLETED"
    failed = "FAILED"


# Core models ----------------------------------------------------

class Integration(Base):
    """Integration links an organization to one ad platform account.

    WHAT:
        Holds the encrypted credential blob plus the health fields the
        workers maintain (status, last_sync_at, last_error).
    WHY:
        Workers resolve credentials per delivery and surface failures here so
        operators can see a broken token without reading worker logs.

    At most one ACTIVE integration per (organization_id, type); a partial
    unique index enforces it.
    Rows are created by the settings UI and never deleted by the workers.
    """
    __tablename__ = "integrations"
    __table_args__ = (
        Index(
            "uq_integrations_active_per_org_type",
            "organization_id",
            "type",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(String, nullable=False, index=True)
    type = Column(Enum(IntegrationTypeEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    name = Column(String, nullable=True)
    status = Column(
        Enum(IntegrationStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=IntegrationStatusEnum.pending,
    )

    credentials = Column(LargeBinary, nullable=False)  # nonce(16) + tag(16) + ciphertext
    settings = Column(JSON, nullable=True)  # e.g. {"conversion_actions": {"signup_complete": "123"}}

    last_sync_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sync_logs = relationship("SyncLog", back_populates="integration")

    def __str__(self):
        return f"{self.type.value} integration for {self.organization_id} ({self.status.value})"


class SyncLog(Base):
    """Audit record for one delivery job.

    WHAT:
        Opened as RUNNING on the first attempt of a job, completed exactly once
        as COMPLETED or FAILED.
    WHY:
        Gives ops an append-only trail of what was sent and what failed,
        independent of the queue's own (short-lived) retention.
    """
    __tablename__ = "sync_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False, index=True)
    job_id = Column(String, nullable=True, index=True)  # idempotency key, e.g. "meta-<conversion id>"
    status = Column(Enum(SyncStatusEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    records_processed = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    integration = relationship("Integration", back_populates="sync_logs")

    def __str__(self):
        return f"sync {self.status.value} for {self.integration_id} ({self.job_id or 'batch'})"
