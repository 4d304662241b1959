"""
Billing milestone state and the invoices it drives.
"""
import enum

from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, Text, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.time_utils import utcnow
from app.db.database import Base, StatusEnum


class BillingMilestone(str, enum.Enum):
    CREATED = "created"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


MILESTONE_ORDER = {
    BillingMilestone.CREATED: 0,
    BillingMilestone.SCHEDULED: 1,
    BillingMilestone.IN_PROGRESS: 2,
    BillingMilestone.COMPLETE: 3,
}


class InvoiceType(str, enum.Enum):
    DEPOSIT = "deposit"
    PROGRESS = "progress"
    FINAL = "final"


class BillingInvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    CREATED = "created"
    SENT = "sent"
    PAID = "paid"


class JobBillingState(Base):
    """Billing progress of one external job"""

    __tablename__ = "job_billing_states"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(100), nullable=False, index=True)
    job_id = Column(String(100), nullable=False)
    service_type = Column(String(100), nullable=False)
    total_job_value_cents = Column(BigInteger, nullable=False, default=0)
    current_milestone = Column(StatusEnum(BillingMilestone), nullable=False, default=BillingMilestone.CREATED)

    deposit_invoice_sent = Column(Boolean, nullable=False, default=False)
    progress_invoice_sent = Column(Boolean, nullable=False, default=False)
    final_invoice_sent = Column(Boolean, nullable=False, default=False)

    # Mirrors the "Billing Stage" custom field on the external job
    billing_stage = Column(String(100), nullable=False, default="pending")

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    invoices = relationship("BillingInvoice", back_populates="billing_state", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("account_id", "job_id", name="uq_job_billing_state_job"),
    )

    def invoice_sent_flag(self, invoice_type: InvoiceType) -> bool:
        return bool(getattr(self, f"{invoice_type.value}_invoice_sent"))

    def set_invoice_sent_flag(self, invoice_type: InvoiceType) -> None:
        setattr(self, f"{invoice_type.value}_invoice_sent", True)


class BillingInvoice(Base):
    """
    Invoice raised for one milestone of a job.

    Unique on (billing_state_id, invoice_type): a job can never hold two
    invoices of the same type, whatever their status.
    """

    __tablename__ = "billing_invoices"

    id = Column(Integer, primary_key=True, index=True)
    billing_state_id = Column(Integer, ForeignKey("job_billing_states.id"), nullable=False)
    account_id = Column(String(100), nullable=False, index=True)
    job_id = Column(String(100), nullable=False)
    invoice_type = Column(StatusEnum(InvoiceType), nullable=False)
    milestone = Column(StatusEnum(BillingMilestone), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    percentage = Column(Integer, nullable=False)
    description = Column(String(300), nullable=True)

    status = Column(StatusEnum(BillingInvoiceStatus), nullable=False, default=BillingInvoiceStatus.PENDING)
    external_invoice_id = Column(String(100), nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    billing_state = relationship("JobBillingState", back_populates="invoices")

    __table_args__ = (
        UniqueConstraint("billing_state_id", "invoice_type", name="uq_billing_invoice_state_type"),
    )
