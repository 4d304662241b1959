"""
Dead-letter queue item - an inbox event that exhausted its primary retries.
"""
import enum

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index

from app.core.time_utils import utcnow
from app.db.database import Base, StatusEnum


class DeadLetterStatus(str, enum.Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    RESOLVED = "resolved"
    DISCARDED = "discarded"


# Statuses the sweep still picks up
RETRYABLE_DEAD_LETTER_STATUSES = (DeadLetterStatus.PENDING, DeadLetterStatus.RETRYING)


class DeadLetterItem(Base):
    """Mirror of a failed WebhookEvent with its own retry schedule"""

    __tablename__ = "dead_letter_items"

    id = Column(Integer, primary_key=True, index=True)
    webhook_event_id = Column(String(200), nullable=False, unique=True)
    account_id = Column(String(100), nullable=False, index=True)
    topic = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    status = Column(StatusEnum(DeadLetterStatus), nullable=False, default=DeadLetterStatus.PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=True)
    last_retry_at = Column(DateTime, nullable=True)

    error_message = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)

    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_dead_letter_items_status_next_retry", "status", "next_retry_at"),
    )
