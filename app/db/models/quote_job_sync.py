"""
Quote -> job sync record - one per semantic quote event.
"""
import enum

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index

from app.core.time_utils import utcnow
from app.db.database import Base, StatusEnum


class QuoteJobSyncStatus(str, enum.Enum):
    PROCESSING = "processing"
    APPLIED = "applied"
    CHANGE_ORDER = "change_order"
    SKIPPED = "skipped"
    FAILED = "failed"


class QuoteJobSyncRecord(Base):
    """
    Outcome of reconciling an approved quote against its job.

    idempotency_key = sha256(topic:objectId:occurredAt). A replay of the same
    semantic event under a new webhook id lands on the same key.
    """

    __tablename__ = "quote_job_sync_records"

    id = Column(Integer, primary_key=True, index=True)
    idempotency_key = Column(String(64), nullable=False, unique=True)
    account_id = Column(String(100), nullable=False, index=True)
    webhook_event_id = Column(String(200), nullable=True)
    topic = Column(String(50), nullable=False)
    quote_id = Column(String(100), nullable=False)
    job_id = Column(String(100), nullable=True)

    status = Column(StatusEnum(QuoteJobSyncStatus), nullable=False, default=QuoteJobSyncStatus.PROCESSING)
    diff = Column(JSON, nullable=True)
    violations = Column(JSON, nullable=True)
    applied_changes = Column(JSON, nullable=True)
    change_order_reason = Column(Text, nullable=True)
    skip_reason = Column(String(500), nullable=True)
    error = Column(Text, nullable=True)

    occurred_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_quote_job_sync_account_status", "account_id", "status"),
    )
