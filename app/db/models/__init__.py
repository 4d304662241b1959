"""
Database Models
"""
from app.db.models.webhook_event import WebhookEvent
from app.db.models.dead_letter_item import DeadLetterItem
from app.db.models.fsm_account import FSMAccount
from app.db.models.write_source_marker import WriteSourceMarker
from app.db.models.quote_job_sync import QuoteJobSyncRecord
from app.db.models.billing import JobBillingState, BillingInvoice
from app.db.models.margin import JobMarginSnapshot, MarginAlert
from app.db.models.reconciliation_alert import ReconciliationAlert

__all__ = [
    "WebhookEvent",
    "DeadLetterItem",
    "FSMAccount",
    "WriteSourceMarker",
    "QuoteJobSyncRecord",
    "JobBillingState",
    "BillingInvoice",
    "JobMarginSnapshot",
    "MarginAlert",
    "ReconciliationAlert",
]
