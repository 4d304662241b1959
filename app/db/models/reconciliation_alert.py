"""
Payment reconciliation alert - invoice ledger vs payment records.
"""
import enum

from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, Text, Index

from app.core.time_utils import utcnow
from app.db.database import Base, StatusEnum


class ReconciliationAlertType(str, enum.Enum):
    PAYMENT_MISMATCH = "payment_mismatch"
    DEPOSIT_INCONSISTENCY = "deposit_inconsistency"


class ReconciliationSeverity(str, enum.Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class ReconciliationAlertStatus(str, enum.Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class ReconciliationAlert(Base):
    """One open alert per (account, entity); refreshed in place while open"""

    __tablename__ = "reconciliation_alerts"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(100), nullable=False)
    entity_type = Column(String(30), nullable=False, default="invoice")
    entity_id = Column(String(100), nullable=False)
    job_id = Column(String(100), nullable=True)

    alert_type = Column(StatusEnum(ReconciliationAlertType), nullable=False)
    severity = Column(StatusEnum(ReconciliationSeverity), nullable=False)
    expected_value_cents = Column(BigInteger, nullable=False)
    actual_value_cents = Column(BigInteger, nullable=False)
    variance_cents = Column(BigInteger, nullable=False)
    description = Column(Text, nullable=False)

    status = Column(StatusEnum(ReconciliationAlertStatus), nullable=False, default=ReconciliationAlertStatus.OPEN)
    external_field_updated = Column(Boolean, nullable=False, default=False)
    acknowledged_by = Column(String(100), nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(100), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_reconciliation_alerts_entity_status", "account_id", "entity_type", "entity_id", "status"),
    )
