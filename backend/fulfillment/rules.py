from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Tuple

from django.conf import settings

NEED_TYPE_SCORES: Dict[str, int] = {
    "medical_emergency": 10,
    "life_saving_meds": 10,
    "clean_water": 9,
    "emergency_food": 8,
    "shelter": 7,
    "education": 5,
    "agricultural": 5,
    "clothing": 4,
}

TIME_SENSITIVITY_SCORES: Dict[str, int] = {
    "less_than_24h": 10,
    "24_to_72h": 7,
    "3_to_7_days": 4,
    "more_than_7_days": 1,
}

RECIPIENT_TYPE_SCORES: Dict[str, int] = {
    "disaster_zone": 10,
    "refugee_camp": 9,
    "rural_clinic": 8,
    "urban_slum": 7,
    "remote_village": 6,
    "low_income_school": 5,
    "community_center": 4,
    "non_profit": 3,
}

# (upper bound inclusive, score); anything above the last bound scores 0.
AVAILABILITY_GAP_TIERS: Tuple[Tuple[float, int], ...] = (
    (0, 10),
    (25, 8),
    (50, 5),
    (75, 2),
)

URGENCY_WEIGHTS: Dict[str, float] = {
    "criticality": 0.30,
    "time_sensitivity": 0.25,
    "vulnerability": 0.20,
    "availability_gap": 0.15,
    "admin_override": 0.10,
}

# Ordered highest first; first threshold met wins.
URGENCY_LEVEL_THRESHOLDS: Tuple[Tuple[float, str], ...] = (
    (9.0, "critical"),
    (7.0, "high"),
    (4.0, "medium"),
)
DEFAULT_URGENCY_LEVEL = "low"

RESPONSE_TIMES: Dict[str, str] = {
    "critical": "< 6 hours",
    "high": "< 24 hours",
    "medium": "< 72 hours",
    "low": "> 72 hours",
}
DEFAULT_RESPONSE_TIME = "> 72 hours"

URGENCY_COLORS: Dict[str, str] = {
    "critical": "#ef4444",
    "high": "#f97316",
    "medium": "#f59e0b",
    "low": "#10b981",
}
DEFAULT_URGENCY_COLOR = "#6b7280"

URGENCY_SCORE_MIN = 0.0
URGENCY_SCORE_MAX = 10.0
DEFAULT_AVAILABILITY_GAP = 100
ADMIN_OVERRIDE_MIN = -3
ADMIN_OVERRIDE_MAX = 3
URGENCY_BOOST_OVERRIDE = 3


def _frozen(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class UrgencyConfig:
    """Immutable factor tables and weights consumed by the urgency engine."""

    need_type_scores: Mapping[str, int] = field(
        default_factory=lambda: _frozen(NEED_TYPE_SCORES)
    )
    time_sensitivity_scores: Mapping[str, int] = field(
        default_factory=lambda: _frozen(TIME_SENSITIVITY_SCORES)
    )
    recipient_type_scores: Mapping[str, int] = field(
        default_factory=lambda: _frozen(RECIPIENT_TYPE_SCORES)
    )
    availability_gap_tiers: Tuple[Tuple[float, int], ...] = AVAILABILITY_GAP_TIERS
    weights: Mapping[str, float] = field(default_factory=lambda: _frozen(URGENCY_WEIGHTS))
    level_thresholds: Tuple[Tuple[float, str], ...] = URGENCY_LEVEL_THRESHOLDS

    def __post_init__(self) -> None:
        # Callers may pass plain dicts; store read-only views of copies.
        for name in (
            "need_type_scores",
            "time_sensitivity_scores",
            "recipient_type_scores",
            "weights",
        ):
            object.__setattr__(self, name, _frozen(getattr(self, name)))
        missing = set(URGENCY_WEIGHTS) - set(self.weights)
        if missing:
            raise ValueError(f"urgency weights missing: {sorted(missing)}")


DEFAULT_URGENCY_CONFIG = UrgencyConfig()


# =============================================================================
# Request lifecycle
# =============================================================================

REQUEST_TTL_DAYS = 30
FLAG_UNMATCHED_AFTER_DAYS = 30

FUNDABLE_STATUSES = ("pending", "approved")
REQUEST_TERMINAL_STATUSES = ("completed", "closed_no_match", "cancelled")
EXPIRABLE_REQUEST_STATUSES = ("pending", "approved")
FLAGGABLE_REQUEST_STATUSES = ("pending", "approved")
REVIEWABLE_EXCLUDED_STATUSES = ("completed", "closed_no_match", "cancelled")

REVIEW_ACTION_CLOSE = "closed_no_match"
REVIEW_ACTION_BOOST = "boosted_urgency"
REVIEW_ACTIONS = (REVIEW_ACTION_CLOSE, REVIEW_ACTION_BOOST)

AID_TYPES = ("Education", "Health", "Infrastructure", "Other")

FULL_FUNDING_PERCENTAGE = 100

DONATION_EXPIRY_EXEMPT_STATUSES = ("Delivered", "Unavailable")
DONATION_TERMINAL_STATUSES = ("Delivered", "Rejected", "Unavailable")

ALLOCATION_TERMINAL_STATUSES = ("Delivered", "Cancelled")
ROUTE_ACTIVE_STATUSES = ("Scheduled", "In Transit")
ROUTE_TERMINAL_STATUSES = ("Delivered", "Cancelled")

TRACKING_NUMBER_PREFIX = "RF"


def funding_status_for(total_percentage: int) -> str:
    if total_percentage >= FULL_FUNDING_PERCENTAGE:
        return "fully_funded"
    if total_percentage > 0:
        return "partially_funded"
    return "unfunded"


def get_request_ttl_days() -> int:
    configured = getattr(settings, "AID_REQUEST_TTL_DAYS", None)
    return REQUEST_TTL_DAYS if configured is None else int(configured)


def get_flag_after_days() -> int:
    configured = getattr(settings, "AID_REQUEST_FLAG_AFTER_DAYS", None)
    return FLAG_UNMATCHED_AFTER_DAYS if configured is None else int(configured)


def get_fundable_statuses() -> Tuple[str, ...]:
    configured = getattr(settings, "AID_FUNDABLE_STATUSES", None)
    if not configured:
        return FUNDABLE_STATUSES
    return tuple(str(status).strip().lower() for status in configured if str(status).strip())
