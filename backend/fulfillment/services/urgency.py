"""
Urgency scoring for aid requests.

Pure computation: five qualitative factors are mapped to raw 0-10 scores,
weighted, summed and clamped to [0, 10]. Unknown factor values score 0 and
are never errors.
"""
from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from fulfillment import rules
from fulfillment.rules import DEFAULT_URGENCY_CONFIG, UrgencyConfig


def _to_number(value: Any) -> Optional[float]:
    """Return a finite float for numeric input, otherwise None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def _lookup(table: Mapping[str, int], key: Any) -> int:
    if not isinstance(key, str):
        return 0
    return int(table.get(key, 0))


def availability_gap_score(value: Any, config: UrgencyConfig = DEFAULT_URGENCY_CONFIG) -> int:
    if value is None:
        value = rules.DEFAULT_AVAILABILITY_GAP
    number = _to_number(value)
    if number is None:
        return 0
    for upper_bound, score in config.availability_gap_tiers:
        if number <= upper_bound:
            return score
    return 0


def admin_override_score(value: Any) -> float:
    number = _to_number(value)
    return number if number is not None else 0.0


def get_urgency_level(score: float, config: UrgencyConfig = DEFAULT_URGENCY_CONFIG) -> str:
    for threshold, level in config.level_thresholds:
        if score >= threshold:
            return level
    return rules.DEFAULT_URGENCY_LEVEL


def get_response_time(level: str) -> str:
    return rules.RESPONSE_TIMES.get(level, rules.DEFAULT_RESPONSE_TIME)


def get_urgency_color(level: str) -> str:
    return rules.URGENCY_COLORS.get(level, rules.DEFAULT_URGENCY_COLOR)


def score_urgency(
    factors: Mapping[str, Any],
    config: UrgencyConfig = DEFAULT_URGENCY_CONFIG,
) -> Dict[str, Any]:
    """
    Score a request from its urgency factors.

    ``factors`` may carry ``need_type``, ``time_sensitivity``,
    ``recipient_type``, ``availability_gap`` (percent, defaults to 100 when
    absent) and ``admin_override``. The level is derived from the clamped,
    unrounded score; the reported score is rounded to two decimals.
    """
    raw_scores: Dict[str, float] = {
        "criticality": _lookup(config.need_type_scores, factors.get("need_type")),
        "time_sensitivity": _lookup(
            config.time_sensitivity_scores, factors.get("time_sensitivity")
        ),
        "vulnerability": _lookup(config.recipient_type_scores, factors.get("recipient_type")),
        "availability_gap": availability_gap_score(factors.get("availability_gap"), config),
        "admin_override": admin_override_score(factors.get("admin_override")),
    }
    weights = dict(config.weights)
    weighted_scores = {
        name: raw_scores[name] * weights[name] for name in rules.URGENCY_WEIGHTS
    }

    total = sum(weighted_scores.values())
    final_score = min(rules.URGENCY_SCORE_MAX, max(rules.URGENCY_SCORE_MIN, total))
    level = get_urgency_level(final_score, config)
    response_time = get_response_time(level)

    return {
        "score": round(final_score, 2),
        "level": level,
        "response_time": response_time,
        "raw_scores": raw_scores,
        "weighted_scores": weighted_scores,
        "weights": weights,
        "visualization": {
            "color": get_urgency_color(level),
            "level": level,
            "components": dict(weighted_scores),
            "response_time": response_time,
        },
    }


def factors_for_request(aid_request) -> Dict[str, Any]:
    return {
        "need_type": aid_request.need_type,
        "time_sensitivity": aid_request.time_sensitivity,
        "recipient_type": aid_request.recipient_type,
        "availability_gap": aid_request.availability_gap,
        "admin_override": aid_request.admin_override,
    }


def apply_urgency(aid_request, config: UrgencyConfig = DEFAULT_URGENCY_CONFIG) -> Dict[str, Any]:
    """Recompute and set the urgency fields on an unsaved request instance."""
    result = score_urgency(factors_for_request(aid_request), config)
    aid_request.urgency_score = result["score"]
    aid_request.urgency_level = result["level"]
    aid_request.urgency_calculation_log = result
    return result
