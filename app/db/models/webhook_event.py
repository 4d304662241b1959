"""
Webhook inbox record - one row per inbound FSM event id.
"""
import enum

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index

from app.core.time_utils import utcnow
from app.db.database import Base, StatusEnum


class WebhookEventStatus(str, enum.Enum):
    """Inbox processing status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class WebhookEvent(Base):
    """
    Inbound webhook event (inbox pattern).

    event_id is the primary key, so a second delivery of the same event
    cannot insert a second row. The row is mutated only by the processing
    pipeline and never deleted while still actionable.
    """

    __tablename__ = "webhook_events"

    event_id = Column(String(200), primary_key=True)
    account_id = Column(String(100), nullable=False, index=True)
    topic = Column(String(50), nullable=False)
    object_id = Column(String(100), nullable=False, default="unknown")
    payload = Column(JSON, nullable=False, default=dict)

    status = Column(StatusEnum(WebhookEventStatus), nullable=False, default=WebhookEventStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    # family -> outcome for engine families that already finished; not re-run on retry
    handled_families = Column(JSON, nullable=False, default=dict)

    occurred_at = Column(DateTime, nullable=False, default=utcnow)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    processing_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_status_next_retry", "status", "next_retry_at"),
        Index("ix_webhook_events_account_topic", "account_id", "topic"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_id} {self.topic} {self.status}>"
