"""
Quote -> job line item diffing and change policy.

Pure functions: the same (quote items, job items, policy) always produce the
same diff and the same violations. All money is integer cents.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, asdict
from typing import Any

from pydantic import BaseModel, Field

from app.domain.services.fsm.schemas import LineItem as FSMLineItem, to_cents

# Score needed for a quote item to be considered the same line as a job item
MIN_MATCH_SCORE = 2
NAME_MATCH_SCORE = 2
DESCRIPTION_MATCH_SCORE = 1


@dataclass(frozen=True)
class LineItem:
    name: str
    quantity: float
    unit_price_cents: int
    total_cents: int
    description: str | None = None
    category: str | None = None

    @classmethod
    def from_fsm(cls, item: FSMLineItem) -> "LineItem":
        unit_price_cents = to_cents(item.unit_price)
        total_cents = to_cents(item.total) if item.total is not None else int(round(item.quantity * unit_price_cents))
        return cls(
            name=item.name,
            description=item.description,
            category=item.category,
            quantity=item.quantity,
            unit_price_cents=unit_price_cents,
            total_cents=total_cents,
        )

    def to_fsm(self) -> FSMLineItem:
        return FSMLineItem(
            name=self.name,
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price_cents / 100,
        )


class DiffType(str, enum.Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


@dataclass(frozen=True)
class FieldChange:
    old: float
    new: float
    percent_change: float


@dataclass(frozen=True)
class LineItemDiff:
    type: DiffType
    quote_item: LineItem | None = None
    job_item: LineItem | None = None
    quantity_change: FieldChange | None = None
    price_change: FieldChange | None = None

    @property
    def name(self) -> str:
        item = self.quote_item or self.job_item
        return item.name if item else ""

    @property
    def total_delta_cents(self) -> int:
        new = self.quote_item.total_cents if self.quote_item else 0
        old = self.job_item.total_cents if self.job_item else 0
        return new - old


class ViolationSeverity(str, enum.Enum):
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class RuleViolation:
    rule: str
    message: str
    severity: ViolationSeverity = ViolationSeverity.ERROR
    item_name: str | None = None


class QuoteJobPolicy(BaseModel):
    """Limits on what an approved quote may change on its job without review"""

    max_line_item_add_remove_cents: int = 50000
    max_quantity_change_percent: float = 25
    max_price_change_percent: float = 0
    blocked_categories: list[str] = Field(
        default_factory=lambda: ["hardscape install", "hardscaping", "patio", "retaining wall"]
    )
    allow_new_line_items: bool = True
    allow_line_item_removal: bool = True
    # 0 disables the aggregate rule
    max_total_change_percent: float = 10


DEFAULT_POLICY = QuoteJobPolicy()


@dataclass
class RuleEvaluation:
    diffs: list[LineItemDiff]
    violations: list[RuleViolation] = field(default_factory=list)
    total_delta_cents: int = 0
    original_job_total_cents: int = 0
    new_quote_total_cents: int = 0

    @property
    def violates_rules(self) -> bool:
        return any(v.severity == ViolationSeverity.ERROR for v in self.violations)

    def count(self, diff_type: DiffType) -> int:
        return sum(1 for d in self.diffs if d.type == diff_type)

    def diff_as_dict(self) -> dict[str, Any]:
        return {
            "added": self.count(DiffType.ADDED),
            "removed": self.count(DiffType.REMOVED),
            "modified": self.count(DiffType.MODIFIED),
            "total_delta_cents": self.total_delta_cents,
            "items": [_jsonable(asdict(d)) for d in self.diffs],
        }

    def violations_as_list(self) -> list[dict[str, Any]]:
        return [_jsonable(asdict(v)) for v in self.violations]


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _percent_change(old: float, new: float) -> float:
    if old > 0:
        return (new - old) / old * 100
    return 100.0


def _match_score(quote_item: LineItem, job_item: LineItem) -> int:
    score = 0
    if quote_item.name.lower() == job_item.name.lower():
        score += NAME_MATCH_SCORE
    if (quote_item.description or "").lower() == (job_item.description or "").lower():
        score += DESCRIPTION_MATCH_SCORE
    return score


def compute_line_item_diff(quote_items: list[LineItem], job_items: list[LineItem]) -> list[LineItemDiff]:
    """
    Greedy match of quote items to job items.

    Each quote item takes the highest-scoring unmatched job item (first one
    on ties). Matches need a name match; unmatched quote items are added,
    leftover job items are removed.
    """
    diffs: list[LineItemDiff] = []
    matched: set[int] = set()

    for quote_item in quote_items:
        best_idx, best_score = -1, 0
        for idx, job_item in enumerate(job_items):
            if idx in matched:
                continue
            score = _match_score(quote_item, job_item)
            if score > best_score:
                best_idx, best_score = idx, score

        if best_idx < 0 or best_score < MIN_MATCH_SCORE:
            diffs.append(LineItemDiff(type=DiffType.ADDED, quote_item=quote_item))
            continue

        matched.add(best_idx)
        job_item = job_items[best_idx]
        quantity_changed = quote_item.quantity != job_item.quantity
        price_changed = quote_item.unit_price_cents != job_item.unit_price_cents
        if not (quantity_changed or price_changed):
            continue

        diffs.append(LineItemDiff(
            type=DiffType.MODIFIED,
            quote_item=quote_item,
            job_item=job_item,
            quantity_change=FieldChange(
                old=job_item.quantity,
                new=quote_item.quantity,
                percent_change=_percent_change(job_item.quantity, quote_item.quantity),
            ) if quantity_changed else None,
            price_change=FieldChange(
                old=job_item.unit_price_cents,
                new=quote_item.unit_price_cents,
                percent_change=_percent_change(job_item.unit_price_cents, quote_item.unit_price_cents),
            ) if price_changed else None,
        ))

    for idx, job_item in enumerate(job_items):
        if idx not in matched:
            diffs.append(LineItemDiff(type=DiffType.REMOVED, job_item=job_item))

    return diffs


def _dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


def _check_added(diff: LineItemDiff, policy: QuoteJobPolicy) -> list[RuleViolation]:
    item = diff.quote_item
    violations = []
    if not policy.allow_new_line_items:
        violations.append(RuleViolation(
            rule="allowNewLineItems",
            message=f"New line items not allowed: {item.name}",
            item_name=item.name,
        ))
    if item.total_cents > policy.max_line_item_add_remove_cents:
        violations.append(RuleViolation(
            rule="maxLineItemAddRemoveCents",
            message=(
                f"Added item exceeds {_dollars(policy.max_line_item_add_remove_cents)}: "
                f"{item.name} ({_dollars(item.total_cents)})"
            ),
            item_name=item.name,
        ))

    category = (item.category or "").lower()
    name = item.name.lower()
    for blocked in policy.blocked_categories:
        needle = blocked.lower()
        if needle in category or needle in name:
            violations.append(RuleViolation(
                rule="blockedCategories",
                message=f'Blocked category "{blocked}": {item.name}',
                item_name=item.name,
            ))
            break
    return violations


def _check_removed(diff: LineItemDiff, policy: QuoteJobPolicy) -> list[RuleViolation]:
    item = diff.job_item
    violations = []
    if not policy.allow_line_item_removal:
        violations.append(RuleViolation(
            rule="allowLineItemRemoval",
            message=f"Line item removal not allowed: {item.name}",
            item_name=item.name,
        ))
    if item.total_cents > policy.max_line_item_add_remove_cents:
        violations.append(RuleViolation(
            rule="maxLineItemAddRemoveCents",
            message=(
                f"Removed item exceeds {_dollars(policy.max_line_item_add_remove_cents)}: "
                f"{item.name} ({_dollars(item.total_cents)})"
            ),
            item_name=item.name,
        ))
    return violations


def _check_modified(diff: LineItemDiff, policy: QuoteJobPolicy) -> list[RuleViolation]:
    violations = []
    name = diff.quote_item.name
    if diff.quantity_change:
        pct = abs(diff.quantity_change.percent_change)
        if pct > policy.max_quantity_change_percent:
            violations.append(RuleViolation(
                rule="maxQuantityChangePercent",
                message=f"Quantity change {pct:.1f}% exceeds {policy.max_quantity_change_percent:g}%: {name}",
                item_name=name,
            ))
    if diff.price_change:
        pct = abs(diff.price_change.percent_change)
        if pct > policy.max_price_change_percent:
            violations.append(RuleViolation(
                rule="maxPriceChangePercent",
                message=f"Price change {pct:.1f}% exceeds {policy.max_price_change_percent:g}%: {name}",
                item_name=name,
            ))
    return violations


_ITEM_CHECKS = {
    DiffType.ADDED: _check_added,
    DiffType.REMOVED: _check_removed,
    DiffType.MODIFIED: _check_modified,
}


def evaluate_rules(
    quote_items: list[LineItem],
    job_items: list[LineItem],
    policy: QuoteJobPolicy = DEFAULT_POLICY,
) -> RuleEvaluation:
    """Diff the two item lists and check every change against the policy"""
    diffs = compute_line_item_diff(quote_items, job_items)
    violations: list[RuleViolation] = []
    for diff in diffs:
        violations.extend(_ITEM_CHECKS[diff.type](diff, policy))

    total_delta = sum(d.total_delta_cents for d in diffs)
    original_total = sum(item.total_cents for item in job_items)
    new_total = sum(item.total_cents for item in quote_items)

    if policy.max_total_change_percent > 0:
        change_pct = abs(total_delta / max(original_total, 1)) * 100
        if change_pct > policy.max_total_change_percent:
            violations.append(RuleViolation(
                rule="maxTotalChangePercent",
                message=f"Total change {change_pct:.1f}% exceeds {policy.max_total_change_percent:g}%",
            ))
        if original_total == 0 and new_total > 0:
            violations.append(RuleViolation(
                rule="maxTotalChangePercent",
                message=f"Addition of {_dollars(new_total)} to empty job requires review",
            ))

    return RuleEvaluation(
        diffs=diffs,
        violations=violations,
        total_delta_cents=total_delta,
        original_job_total_cents=original_total,
        new_quote_total_cents=new_total,
    )


def can_auto_apply(result: RuleEvaluation) -> bool:
    return len(result.violations) == 0


def change_order_reason(result: RuleEvaluation) -> str:
    """Human-readable reason: error violation messages joined with '; '"""
    return "; ".join(
        v.message for v in result.violations if v.severity == ViolationSeverity.ERROR
    )
