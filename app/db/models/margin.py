"""
Margin snapshot per job and the alerts raised from it.
"""
import enum

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, JSON, ForeignKey, UniqueConstraint, Index

from app.core.time_utils import utcnow
from app.db.database import Base, StatusEnum


class MarginRisk(str, enum.Enum):
    NORMAL = "normal"
    MEDIUM = "medium"
    HIGH = "high"


class MarginAlertType(str, enum.Enum):
    DURATION_OVERRUN = "duration_overrun"
    VISIT_OVERRUN = "visit_overrun"


class MarginAlertStatus(str, enum.Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class JobMarginSnapshot(Base):
    """Expected vs actual effort of one external job"""

    __tablename__ = "job_margin_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(100), nullable=False, index=True)
    job_id = Column(String(100), nullable=False)
    job_type = Column(String(200), nullable=True)
    lot_size_sqft = Column(Integer, nullable=True)
    crew_size = Column(Integer, nullable=False, default=1)

    baseline_revenue_cents = Column(BigInteger, nullable=False, default=0)
    baseline_cost_cents = Column(BigInteger, nullable=False, default=0)
    baseline_margin_percent = Column(Integer, nullable=False, default=0)

    expected_duration_mins = Column(Integer, nullable=False, default=0)
    expected_visits = Column(Integer, nullable=False, default=1)
    used_defaults = Column(JSON, nullable=False, default=list)

    actual_duration_mins = Column(Integer, nullable=False, default=0)
    visits_completed = Column(Integer, nullable=False, default=0)
    time_logged_mins = Column(Integer, nullable=False, default=0)
    # visit_id -> {"duration_mins", "time_logged_mins", "completed"}
    visit_contributions = Column(JSON, nullable=False, default=dict)

    duration_variance_percent = Column(Integer, nullable=True)
    visit_variance = Column(Integer, nullable=True)
    margin_risk = Column(StatusEnum(MarginRisk), nullable=False, default=MarginRisk.NORMAL)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "job_id", name="uq_job_margin_snapshot_job"),
    )


class MarginAlert(Base):
    """One detected risk breach on a snapshot"""

    __tablename__ = "margin_alerts"

    id = Column(Integer, primary_key=True, index=True)
    snapshot_id = Column(Integer, ForeignKey("job_margin_snapshots.id"), nullable=False)
    account_id = Column(String(100), nullable=False)
    job_id = Column(String(100), nullable=False)

    alert_type = Column(StatusEnum(MarginAlertType), nullable=False)
    severity = Column(StatusEnum(MarginRisk), nullable=False)
    title = Column(String(300), nullable=False)
    description = Column(Text, nullable=False)

    expected_duration_mins = Column(Integer, nullable=True)
    actual_duration_mins = Column(Integer, nullable=True)
    expected_visits = Column(Integer, nullable=True)
    actual_visits = Column(Integer, nullable=True)
    duration_variance_percent = Column(Integer, nullable=True)
    recommended_actions = Column(JSON, nullable=False, default=list)

    status = Column(StatusEnum(MarginAlertStatus), nullable=False, default=MarginAlertStatus.OPEN)
    acknowledged_by = Column(String(100), nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(100), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_margin_alerts_snapshot_type_status", "snapshot_id", "alert_type", "status"),
        Index("ix_margin_alerts_account_status", "account_id", "status"),
    )
