"""
Domain Services
"""
from app.domain.services.webhook_ingest_service import WebhookIngestGateway
from app.domain.services.dead_letter_service import DeadLetterService
from app.domain.services.write_source_service import WriteSourceService
from app.domain.services.quote_job_reconciler import QuoteJobReconciler
from app.domain.services.billing_milestone_service import BillingMilestoneEngine
from app.domain.services.margin_variance_service import MarginVarianceEngine
from app.domain.services.payment_reconciliation_service import PaymentReconciliationEngine

__all__ = [
    "WebhookIngestGateway",
    "DeadLetterService",
    "WriteSourceService",
    "QuoteJobReconciler",
    "BillingMilestoneEngine",
    "MarginVarianceEngine",
    "PaymentReconciliationEngine",
]
