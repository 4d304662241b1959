"""
Margin variance engine.

Job events (re)build a snapshot of expected effort and baseline margin;
visit events accumulate actual effort. Variance against the expectation
drives a margin risk level, alerts with recommended actions, and the
MARGIN_RISK marker on the external job.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import ROUND_HALF_DOWN, ROUND_HALF_UP, Decimal

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ErrorCode, FSMNotFoundError, InvalidStatusError, NotFoundException
from app.core.logging import get_logger
from app.core.time_utils import utcnow
from app.db.models.margin import (
    JobMarginSnapshot,
    MarginAlert,
    MarginAlertStatus,
    MarginAlertType,
    MarginRisk,
)
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.duration_model import (
    DURATION_VARIANCE_THRESHOLDS,
    VISIT_VARIANCE_THRESHOLDS,
    expected_duration,
    risk_level,
)
from app.domain.services.engine_outcome import EngineOutcome
from app.domain.services.fsm.client import FSMClient
from app.domain.services.fsm.custom_fields import MARGIN_RISK_FIELD
from app.domain.services.fsm.schemas import Job, Visit, to_cents

logger = get_logger(__name__)

_RISK_ORDER = {"normal": 0, "low": 1, "medium": 2, "high": 3}


def percent_half_up(part: int, whole: int) -> int:
    """part / whole as a whole percent; .5 ties round toward positive infinity"""
    if whole == 0:
        return 0
    value = Decimal(part) * 100 / Decimal(whole)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP if value >= 0 else ROUND_HALF_DOWN))


@dataclass
class VarianceResult:
    expected_duration_mins: int
    actual_duration_mins: int
    duration_variance_percent: int
    duration_risk: str
    expected_visits: int
    actual_visits: int
    visit_variance: int
    visit_risk: str
    margin_risk: MarginRisk
    alert_type: MarginAlertType | None = None
    alert_severity: MarginRisk | None = None
    recommended_actions: list[dict[str, str]] = field(default_factory=list)


def _action(action: str, description: str, priority: str) -> dict[str, str]:
    return {"action": action, "description": description, "priority": priority}


def recommended_actions(
    duration_variance: int,
    visit_variance: int,
    margin_risk: MarginRisk,
    service_type: str,
) -> list[dict[str, str]]:
    _, duration_medium, duration_high = DURATION_VARIANCE_THRESHOLDS
    _, visit_medium, visit_high = VISIT_VARIANCE_THRESHOLDS
    actions = []

    if duration_variance >= duration_high:
        actions.append(_action(
            "review_scope",
            f"Job is {duration_variance}% over estimated time. Review if scope changed or was underestimated.",
            "high",
        ))
        actions.append(_action(
            "update_estimate",
            f"Consider updating future {service_type} job estimates to account for actual time.",
            "medium",
        ))
    elif duration_variance >= duration_medium:
        actions.append(_action(
            "monitor_progress",
            f"Job is {duration_variance}% over time. Monitor completion and consider scope review.",
            "medium",
        ))

    if visit_variance >= visit_high:
        actions.append(_action(
            "review_recurring",
            f"Job required {visit_variance} more visits than expected. Review if recurring schedule needs adjustment.",
            "high",
        ))
        actions.append(_action(
            "discuss_with_client",
            "Consider discussing additional visits with client for future billing adjustments.",
            "medium",
        ))
    elif visit_variance >= visit_medium:
        actions.append(_action(
            "track_pattern",
            f"{visit_variance} extra visits logged. Track if this becomes a pattern for this property.",
            "low",
        ))

    if margin_risk == MarginRisk.HIGH:
        actions.append(_action(
            "flag_for_review",
            "High margin risk detected. Flag job for profitability review before next billing cycle.",
            "high",
        ))
        actions.append(_action(
            "no_auto_pricing",
            "No automatic pricing changes. Manual review required.",
            "high",
        ))
    return actions


def compute_variance(snapshot: JobMarginSnapshot) -> VarianceResult:
    expected_mins = snapshot.expected_duration_mins or 0
    actual_mins = snapshot.actual_duration_mins or 0
    expected_visits = snapshot.expected_visits or 1
    actual_visits = snapshot.visits_completed or 0

    duration_variance = percent_half_up(actual_mins - expected_mins, expected_mins) if expected_mins > 0 else 0
    duration_risk = risk_level(max(0, duration_variance), DURATION_VARIANCE_THRESHOLDS)

    visit_variance = actual_visits - expected_visits
    visit_risk = risk_level(max(0, visit_variance), VISIT_VARIANCE_THRESHOLDS)

    highest = duration_risk if _RISK_ORDER[duration_risk] > _RISK_ORDER[visit_risk] else visit_risk
    margin_risk = MarginRisk.NORMAL if highest in ("normal", "low") else MarginRisk(highest)

    result = VarianceResult(
        expected_duration_mins=expected_mins,
        actual_duration_mins=actual_mins,
        duration_variance_percent=duration_variance,
        duration_risk=duration_risk,
        expected_visits=expected_visits,
        actual_visits=actual_visits,
        visit_variance=visit_variance,
        visit_risk=visit_risk,
        margin_risk=margin_risk,
    )

    for level in ("high", "medium"):
        if level in (duration_risk, visit_risk):
            result.alert_severity = MarginRisk(level)
            result.alert_type = (
                MarginAlertType.DURATION_OVERRUN if duration_risk == level else MarginAlertType.VISIT_OVERRUN
            )
            break

    result.recommended_actions = recommended_actions(
        duration_variance, visit_variance, margin_risk, snapshot.job_type or "general"
    )
    return result


def alert_title(variance: VarianceResult) -> str:
    if variance.alert_type == MarginAlertType.DURATION_OVERRUN:
        return f"Job {variance.duration_variance_percent}% over estimated time"
    if variance.alert_type == MarginAlertType.VISIT_OVERRUN:
        plural = "s" if variance.visit_variance > 1 else ""
        return f"Job required {variance.visit_variance} extra visit{plural}"
    return f"Margin risk: {variance.margin_risk.value.upper()}"


def alert_description(snapshot: JobMarginSnapshot, variance: VarianceResult) -> str:
    parts = [
        f"Service: {snapshot.job_type or 'general'}",
        f"Expected: {variance.expected_duration_mins} mins, Actual: {variance.actual_duration_mins} mins",
    ]
    if variance.visit_variance > 0:
        parts.append(f"Visits: {variance.actual_visits} of {variance.expected_visits} expected")
    if snapshot.baseline_revenue_cents:
        parts.append(f"Baseline revenue: ${snapshot.baseline_revenue_cents / 100:.2f}")
    return ". ".join(parts)


class MarginVarianceEngine:
    def __init__(self, db: AsyncSession, client: FSMClient):
        self.db = db
        self.client = client

    async def process(self, event: WebhookEvent) -> EngineOutcome:
        try:
            if event.topic.startswith("JOB_"):
                return await self._handle_job_event(event)
            if event.topic.startswith("VISIT_"):
                return await self._handle_visit_event(event)
        except FSMNotFoundError as e:
            logger.info(
                "Margin source object not found upstream",
                extra_data={"topic": event.topic, "resource": e.resource, "identifier": e.identifier},
            )
            return EngineOutcome.SKIPPED
        return EngineOutcome.SKIPPED

    async def _handle_job_event(self, event: WebhookEvent) -> EngineOutcome:
        job = await self.client.get_job(event.object_id)
        snapshot = await self.upsert_snapshot(event.account_id, job)
        if event.topic == "JOB_COMPLETED":
            await self._evaluate(snapshot)
        return EngineOutcome.PROCESSED

    async def _handle_visit_event(self, event: WebhookEvent) -> EngineOutcome:
        visit = await self.client.get_visit(event.object_id)
        if visit.job is None:
            logger.info("Visit has no job, skipping margin update", extra_data={"visit_id": visit.id})
            return EngineOutcome.SKIPPED

        snapshot = await self.get_snapshot(event.account_id, visit.job.id)
        if snapshot is None:
            job = await self.client.get_job(visit.job.id)
            snapshot = await self.upsert_snapshot(event.account_id, job)

        self._record_visit(snapshot, visit, completed=event.topic == "VISIT_COMPLETED")
        await self.db.commit()
        await self._evaluate(snapshot)
        return EngineOutcome.PROCESSED

    @staticmethod
    def _record_visit(snapshot: JobMarginSnapshot, visit: Visit, *, completed: bool) -> None:
        """Per-visit values only grow, so replays of the same visit never double count"""
        contributions = dict(snapshot.visit_contributions or {})
        previous = contributions.get(visit.id, {})
        contributions[visit.id] = {
            "duration_mins": max(previous.get("duration_mins", 0), int(round(visit.duration or 0))),
            "time_logged_mins": max(previous.get("time_logged_mins", 0), visit.time_logged_mins),
            "completed": bool(previous.get("completed")) or completed or visit.completed_at is not None,
        }

        snapshot.visit_contributions = contributions
        snapshot.actual_duration_mins = sum(c["duration_mins"] for c in contributions.values())
        snapshot.time_logged_mins = sum(c["time_logged_mins"] for c in contributions.values())
        snapshot.visits_completed = sum(1 for c in contributions.values() if c["completed"])

    async def get_snapshot(self, account_id: str, job_id: str) -> JobMarginSnapshot | None:
        result = await self.db.execute(
            select(JobMarginSnapshot).where(
                JobMarginSnapshot.account_id == account_id,
                JobMarginSnapshot.job_id == job_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_snapshot(self, account_id: str, job: Job) -> JobMarginSnapshot:
        """Refresh expectation and baseline from the job; actuals are left alone"""
        service_type = job.service_type
        crew_size = len(job.assigned_users) or None
        lot_size = job.job_property.lot_size_sqft() if job.job_property else None
        estimate = expected_duration(service_type, lot_size, crew_size)

        revenue = to_cents(job.amounts.total)
        cost = int(revenue * settings.MARGIN_DEFAULT_COST_RATIO + 0.5)
        margin_percent = percent_half_up(revenue - cost, revenue) if revenue > 0 else 0

        snapshot = await self.get_snapshot(account_id, job.id)
        if snapshot is None:
            try:
                async with self.db.begin_nested():
                    snapshot = JobMarginSnapshot(
                        account_id=account_id,
                        job_id=job.id,
                        expected_visits=1,
                        visit_contributions={},
                    )
                    self.db.add(snapshot)
            except IntegrityError:
                snapshot = await self.get_snapshot(account_id, job.id)

        snapshot.job_type = service_type
        snapshot.lot_size_sqft = lot_size or snapshot.lot_size_sqft
        snapshot.crew_size = crew_size or snapshot.crew_size or 1
        snapshot.expected_duration_mins = estimate.expected_duration_mins
        snapshot.used_defaults = estimate.used_defaults
        if revenue > 0:
            snapshot.baseline_revenue_cents = revenue
            snapshot.baseline_cost_cents = cost
            snapshot.baseline_margin_percent = margin_percent
        await self.db.commit()

        logger.debug(
            "Margin snapshot updated",
            extra_data={
                "job_id": job.id,
                "expected_duration_mins": estimate.expected_duration_mins,
                "used_defaults": estimate.used_defaults,
            },
        )
        return snapshot

    async def _evaluate(self, snapshot: JobMarginSnapshot) -> VarianceResult:
        previous_risk = snapshot.margin_risk
        variance = compute_variance(snapshot)
        snapshot.duration_variance_percent = variance.duration_variance_percent
        snapshot.visit_variance = variance.visit_variance
        snapshot.margin_risk = variance.margin_risk
        await self.db.commit()

        alert_created = False
        if variance.alert_type is not None:
            alert_created = await self._raise_alert(snapshot, variance) is not None

        if variance.margin_risk != MarginRisk.NORMAL and (alert_created or previous_risk != variance.margin_risk):
            await self._sync_margin_risk(snapshot.job_id, variance.margin_risk)
        return variance

    async def _raise_alert(self, snapshot: JobMarginSnapshot, variance: VarianceResult) -> MarginAlert | None:
        window_start = utcnow() - timedelta(hours=settings.MARGIN_ALERT_DEDUP_WINDOW_HOURS)
        existing = await self.db.execute(
            select(MarginAlert.id)
            .where(
                MarginAlert.snapshot_id == snapshot.id,
                MarginAlert.alert_type == variance.alert_type,
                or_(
                    MarginAlert.status == MarginAlertStatus.OPEN,
                    MarginAlert.created_at >= window_start,
                ),
            )
            .limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            logger.debug(
                "Margin alert suppressed as duplicate",
                extra_data={"job_id": snapshot.job_id, "alert_type": variance.alert_type.value},
            )
            return None

        alert = MarginAlert(
            snapshot_id=snapshot.id,
            account_id=snapshot.account_id,
            job_id=snapshot.job_id,
            alert_type=variance.alert_type,
            severity=variance.alert_severity,
            title=alert_title(variance),
            description=alert_description(snapshot, variance),
            expected_duration_mins=variance.expected_duration_mins,
            actual_duration_mins=variance.actual_duration_mins,
            expected_visits=variance.expected_visits,
            actual_visits=variance.actual_visits,
            duration_variance_percent=variance.duration_variance_percent,
            recommended_actions=variance.recommended_actions,
            status=MarginAlertStatus.OPEN,
        )
        self.db.add(alert)
        await self.db.commit()
        logger.warning(
            "Margin alert raised",
            extra_data={
                "account_id": snapshot.account_id,
                "job_id": snapshot.job_id,
                "alert_type": variance.alert_type.value,
                "severity": variance.alert_severity.value,
                "title": alert.title,
            },
        )
        return alert

    async def _sync_margin_risk(self, job_id: str, risk: MarginRisk) -> None:
        try:
            await self.client.set_job_custom_field(job_id, MARGIN_RISK_FIELD, risk.value.upper())
        except Exception as e:
            logger.warning(
                "Failed to sync margin risk to job",
                extra_data={"job_id": job_id, "margin_risk": risk.value, "error": str(e)},
            )


# ── operator actions ──

async def get_open_alerts(db: AsyncSession, account_id: str | None = None, limit: int = 100) -> list[MarginAlert]:
    query = select(MarginAlert).where(MarginAlert.status == MarginAlertStatus.OPEN)
    if account_id:
        query = query.where(MarginAlert.account_id == account_id)
    result = await db.execute(query.order_by(MarginAlert.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def _get_alert(db: AsyncSession, alert_id: int) -> MarginAlert:
    alert = await db.get(MarginAlert, alert_id)
    if alert is None:
        raise NotFoundException("margin alert", alert_id, ErrorCode.ALERT_NOT_FOUND)
    return alert


def _require_status(alert: MarginAlert, action: str, allowed: tuple[MarginAlertStatus, ...]) -> None:
    if alert.status not in allowed:
        raise InvalidStatusError(
            "margin alert", alert.id, alert.status.value, action, ErrorCode.ALERT_INVALID_STATUS
        )


async def acknowledge_alert(db: AsyncSession, alert_id: int, acknowledged_by: str) -> MarginAlert:
    alert = await _get_alert(db, alert_id)
    _require_status(alert, "acknowledge", (MarginAlertStatus.OPEN,))
    alert.status = MarginAlertStatus.ACKNOWLEDGED
    alert.acknowledged_by = acknowledged_by
    alert.acknowledged_at = utcnow()
    await db.commit()
    return alert


async def resolve_alert(db: AsyncSession, alert_id: int, resolved_by: str, resolution: str) -> MarginAlert:
    alert = await _get_alert(db, alert_id)
    _require_status(alert, "resolve", (MarginAlertStatus.OPEN, MarginAlertStatus.ACKNOWLEDGED))
    alert.status = MarginAlertStatus.RESOLVED
    alert.resolved_by = resolved_by
    alert.resolved_at = utcnow()
    alert.resolution = resolution
    await db.commit()
    return alert


async def dismiss_alert(db: AsyncSession, alert_id: int) -> MarginAlert:
    alert = await _get_alert(db, alert_id)
    _require_status(alert, "dismiss", (MarginAlertStatus.OPEN, MarginAlertStatus.ACKNOWLEDGED))
    alert.status = MarginAlertStatus.DISMISSED
    await db.commit()
    return alert
