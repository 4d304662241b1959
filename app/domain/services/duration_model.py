"""
Expected job duration model.

expected_duration(job_type, lot_size_sqft, crew_size) = base minutes for the
job type x lot-size multiplier x crew efficiency factor, clamped to
[15, 480] and rounded to the nearest 5 minutes.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field

# Minutes for a 5,000 sqft lot with a one-person crew
BASE_DURATIONS: dict[str, int] = {
    "mowing": 30,
    "lawn_mowing": 30,
    "grass_cutting": 30,
    "edging": 15,
    "trimming": 20,
    "hedge_trimming": 45,
    "bush_trimming": 40,
    "leaf_removal": 45,
    "leaf_cleanup": 45,
    "aeration": 40,
    "overseeding": 25,
    "fertilization": 20,
    "fertilizing": 20,
    "weed_control": 25,
    "mulching": 60,
    "mulch_installation": 60,
    "bed_maintenance": 45,
    "flower_bed": 50,
    "spring_cleanup": 90,
    "fall_cleanup": 120,
    "seasonal_cleanup": 100,
    "irrigation_check": 30,
    "irrigation_repair": 60,
    "sprinkler": 45,
    "landscape_design": 180,
    "landscaping": 120,
    "hardscape": 240,
    "paver": 300,
    "sod_installation": 90,
    "sod": 90,
    "tree_trimming": 60,
    "tree_removal": 180,
    "stump_grinding": 60,
    "snow_removal": 45,
    "snow_plowing": 30,
    "ice_treatment": 20,
    "gutter_cleaning": 45,
    "pressure_washing": 60,
    "power_washing": 60,
    "general": 60,
    "maintenance": 45,
}
DEFAULT_BASE_DURATION = 45

# (upper bound sqft inclusive, multiplier); base is 5,000 sqft
LOT_SIZE_BRACKETS: tuple[tuple[float, float], ...] = (
    (2500, 0.6),
    (5000, 1.0),
    (7500, 1.3),
    (10000, 1.6),
    (15000, 2.0),
    (20000, 2.4),
    (30000, 3.0),
    (50000, 4.0),
    (math.inf, 5.0),
)

# Diminishing returns: two people are 1.8x as fast, not 2x
CREW_EFFICIENCY: dict[int, float] = {1: 1.0, 2: 0.55, 3: 0.40, 4: 0.30, 5: 0.25}
MIN_CREW_EFFICIENCY = 0.15

DEFAULT_LOT_SIZE_SQFT = 5000
DEFAULT_CREW_SIZE = 1
MIN_DURATION_MINS = 15
MAX_DURATION_MINS = 480
ROUNDING_STEP_MINS = 5

# Risk tiers: (low, medium, high)
DURATION_VARIANCE_THRESHOLDS = (15, 30, 50)  # percent over expected
VISIT_VARIANCE_THRESHOLDS = (1, 2, 3)  # extra visits

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_UNDERSCORES = re.compile(r"_+")


@dataclass(frozen=True)
class DurationEstimate:
    expected_duration_mins: int
    base_duration_mins: int
    lot_size_multiplier: float
    crew_efficiency_factor: float
    used_defaults: list[str] = field(default_factory=list)


def normalize_job_type(job_type: str | None) -> str:
    text = _NON_ALNUM.sub("_", (job_type or "").strip().lower())
    return _UNDERSCORES.sub("_", text).strip("_")


def base_duration(job_type: str | None) -> int:
    """Exact keyword, then the first keyword contained in (or containing) the job type"""
    normalized = normalize_job_type(job_type)
    if not normalized:
        return DEFAULT_BASE_DURATION
    if normalized in BASE_DURATIONS:
        return BASE_DURATIONS[normalized]
    for keyword, minutes in BASE_DURATIONS.items():
        if keyword in normalized or normalized in keyword:
            return minutes
    return DEFAULT_BASE_DURATION


def lot_size_multiplier(lot_size_sqft: float) -> float:
    for upper_bound, multiplier in LOT_SIZE_BRACKETS:
        if lot_size_sqft <= upper_bound:
            return multiplier
    return LOT_SIZE_BRACKETS[-1][1]


def crew_efficiency(crew_size: int) -> float:
    if crew_size in CREW_EFFICIENCY:
        return CREW_EFFICIENCY[crew_size]
    return max(MIN_CREW_EFFICIENCY, 1 / crew_size)


def expected_duration(
    job_type: str | None,
    lot_size_sqft: float | None = None,
    crew_size: int | None = None,
) -> DurationEstimate:
    used_defaults = []

    if not lot_size_sqft or lot_size_sqft <= 0:
        lot_size_sqft = DEFAULT_LOT_SIZE_SQFT
        used_defaults.append("lot_size")
    if not crew_size or crew_size < 1:
        crew_size = DEFAULT_CREW_SIZE
        used_defaults.append("crew_size")

    base = base_duration(job_type)
    lot_factor = lot_size_multiplier(lot_size_sqft)
    crew_factor = crew_efficiency(int(crew_size))

    minutes = base * lot_factor * crew_factor
    minutes = max(MIN_DURATION_MINS, min(MAX_DURATION_MINS, minutes))
    # Half-up to the nearest step
    minutes = int(math.floor(minutes / ROUNDING_STEP_MINS + 0.5)) * ROUNDING_STEP_MINS

    return DurationEstimate(
        expected_duration_mins=minutes,
        base_duration_mins=base,
        lot_size_multiplier=lot_factor,
        crew_efficiency_factor=crew_factor,
        used_defaults=used_defaults,
    )


def risk_level(variance: float, thresholds: tuple[int, int, int]) -> str:
    """'normal', 'low', 'medium' or 'high'"""
    low, medium, high = thresholds
    if variance >= high:
        return "high"
    if variance >= medium:
        return "medium"
    if variance >= low:
        return "low"
    return "normal"
