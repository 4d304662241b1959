"""
Static billing rules per service type.

A rule lists which milestones raise which invoice (and for what share of
the job value) plus the "Billing Stage" labels shown on the external job.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from app.db.models.billing import BillingMilestone, InvoiceType
from app.domain.services.fsm.custom_fields import BILLING_STAGE_FIELD

NOT_APPLICABLE_STAGE = "N/A"


@dataclass(frozen=True)
class MilestoneInvoice:
    milestone: BillingMilestone
    invoice_type: InvoiceType
    percentage_of_total: int
    description: str


@dataclass(frozen=True)
class StageLabels:
    sent: str
    paid: str


@dataclass(frozen=True)
class BillingRule:
    service_type: str
    display_name: str
    milestones: tuple[MilestoneInvoice, ...]
    stage_labels: dict[InvoiceType, StageLabels]
    billing_stage_field: str = BILLING_STAGE_FIELD

    @property
    def requires_deposit(self) -> bool:
        return any(m.invoice_type == InvoiceType.DEPOSIT for m in self.milestones)

    @property
    def requires_progress(self) -> bool:
        return any(m.invoice_type == InvoiceType.PROGRESS for m in self.milestones)

    def invoice_for_milestone(self, milestone: BillingMilestone) -> MilestoneInvoice | None:
        for config in self.milestones:
            if config.milestone == milestone:
                return config
        return None

    def stage_label(self, invoice_type: InvoiceType, paid: bool) -> str:
        labels = self.stage_labels.get(invoice_type)
        if labels is None:
            return NOT_APPLICABLE_STAGE
        return labels.paid if paid else labels.sent


_STANDARD_LABELS = {
    InvoiceType.DEPOSIT: StageLabels(sent="Deposit Invoiced", paid="Deposit Received"),
    InvoiceType.PROGRESS: StageLabels(sent="Progress Invoiced", paid="Progress Received"),
    InvoiceType.FINAL: StageLabels(sent="Final Invoiced", paid="Fully Paid"),
}

BILLING_RULES: dict[str, BillingRule] = {
    "hardscape_install": BillingRule(
        service_type="hardscape_install",
        display_name="Hardscape Installation",
        milestones=(
            MilestoneInvoice(BillingMilestone.SCHEDULED, InvoiceType.DEPOSIT, 30, "Deposit - 30% due at scheduling"),
            MilestoneInvoice(BillingMilestone.IN_PROGRESS, InvoiceType.PROGRESS, 40, "Progress Payment - 40% at 50% completion"),
            MilestoneInvoice(BillingMilestone.COMPLETE, InvoiceType.FINAL, 30, "Final Payment - 30% upon completion"),
        ),
        stage_labels=_STANDARD_LABELS,
    ),
    "landscape_design": BillingRule(
        service_type="landscape_design",
        display_name="Landscape Design",
        milestones=(
            MilestoneInvoice(BillingMilestone.SCHEDULED, InvoiceType.DEPOSIT, 50, "Deposit - 50% due at project start"),
            MilestoneInvoice(BillingMilestone.COMPLETE, InvoiceType.FINAL, 50, "Final Payment - 50% upon delivery"),
        ),
        stage_labels={
            InvoiceType.DEPOSIT: _STANDARD_LABELS[InvoiceType.DEPOSIT],
            InvoiceType.FINAL: _STANDARD_LABELS[InvoiceType.FINAL],
        },
    ),
    "lawn_maintenance": BillingRule(
        service_type="lawn_maintenance",
        display_name="Lawn Maintenance",
        milestones=(
            MilestoneInvoice(BillingMilestone.COMPLETE, InvoiceType.FINAL, 100, "Payment due upon service completion"),
        ),
        stage_labels={InvoiceType.FINAL: StageLabels(sent="Invoiced", paid="Paid")},
    ),
    "irrigation_install": BillingRule(
        service_type="irrigation_install",
        display_name="Irrigation Installation",
        milestones=(
            MilestoneInvoice(BillingMilestone.SCHEDULED, InvoiceType.DEPOSIT, 25, "Deposit - 25% for materials"),
            MilestoneInvoice(BillingMilestone.IN_PROGRESS, InvoiceType.PROGRESS, 50, "Progress Payment - 50% at rough-in complete"),
            MilestoneInvoice(BillingMilestone.COMPLETE, InvoiceType.FINAL, 25, "Final Payment - 25% upon testing"),
        ),
        stage_labels=_STANDARD_LABELS,
    ),
}

_JOB_TOPIC_MILESTONES = {
    "JOB_CREATE": BillingMilestone.CREATED,
    "JOB_SCHEDULE_UPDATE": BillingMilestone.SCHEDULED,
    "JOB_UPDATE": BillingMilestone.IN_PROGRESS,
    "JOB_COMPLETED": BillingMilestone.COMPLETE,
}

_VISIT_TOPIC_MILESTONES = {
    "VISIT_COMPLETED": BillingMilestone.IN_PROGRESS,
    "VISIT_APPROVED": BillingMilestone.IN_PROGRESS,
}

_SEPARATORS = re.compile(r"[\s-]+")


def normalize_service_type(service_type: str) -> str:
    return _SEPARATORS.sub("_", (service_type or "").strip().lower())


def get_billing_rule(service_type: str) -> BillingRule | None:
    return BILLING_RULES.get(normalize_service_type(service_type))


def milestone_for_topic(topic: str) -> BillingMilestone | None:
    return _JOB_TOPIC_MILESTONES.get(topic) or _VISIT_TOPIC_MILESTONES.get(topic)


def is_visit_topic(topic: str) -> bool:
    return topic in _VISIT_TOPIC_MILESTONES
