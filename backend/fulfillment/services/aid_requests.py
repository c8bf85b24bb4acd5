"""
Aid request intake, review and closure.

Requests are created pending and unfunded with an urgency score and a
30-day expiry. Factor edits rescore the request. Stale requests flagged by
the scheduler are reviewed in batches by admins.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from django.db import transaction
from django.utils import timezone

from fulfillment import rules
from fulfillment.exceptions import ConflictError, NotFoundError, ValidationError
from fulfillment.models import AidRequest, DeliveryRoute
from fulfillment.services import audit, urgency
from fulfillment.validators import optional_text, parse_decimal, parse_int, require_text

logger = logging.getLogger("aidlink.audit")

_VALID_TRANSITIONS = {
    "pending": {"approved", "claimed", "closed_no_match", "cancelled"},
    "approved": {"claimed", "closed_no_match", "cancelled"},
    "claimed": {"completed", "cancelled"},
    "completed": set(),
    "closed_no_match": set(),
    "cancelled": set(),
}

_FACTOR_FIELDS = ("need_type", "time_sensitivity", "recipient_type")


def _validate_transition(current: str, target: str) -> None:
    allowed = _VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise ConflictError(
            f"Cannot transition request from {current} to {target}.",
            code="invalid_transition",
        )


def _get_locked(request_id: int) -> AidRequest:
    try:
        return AidRequest.objects.select_for_update().get(request_id=request_id)
    except AidRequest.DoesNotExist:
        raise NotFoundError("Request not found.", field="request_id")


def serialize_request(req: AidRequest) -> Dict[str, Any]:
    return {
        "request_id": req.request_id,
        "recipient_id": req.recipient_id,
        "title": req.title,
        "description": req.description,
        "aid_type": req.aid_type,
        "custom_aid_type": req.custom_aid_type,
        "region": req.region,
        "quantity_required": (
            str(req.quantity_required) if req.quantity_required is not None else None
        ),
        "unit": req.unit,
        "supporting_documents": list(req.supporting_documents or []),
        "status": req.status,
        "funding_status": req.funding_status,
        "need_type": req.need_type,
        "time_sensitivity": req.time_sensitivity,
        "recipient_type": req.recipient_type,
        "availability_gap": req.availability_gap,
        "admin_override": req.admin_override,
        "vulnerability_score": (
            float(req.vulnerability_score) if req.vulnerability_score is not None else None
        ),
        "urgency_score": req.urgency_score,
        "urgency_level": req.urgency_level,
        "response_time": urgency.get_response_time(req.urgency_level),
        "urgency_calculation_log": req.urgency_calculation_log or {},
        "expires_at": req.expires_at.isoformat() if req.expires_at else None,
        "is_flagged_for_review": req.is_flagged_for_review,
        "flagged_at": req.flagged_at.isoformat() if req.flagged_at else None,
        "last_audited_at": req.last_audited_at.isoformat() if req.last_audited_at else None,
        "audited_by": req.audited_by,
        "create_dtime": req.create_dtime.isoformat() if req.create_dtime else None,
        "update_dtime": req.update_dtime.isoformat() if req.update_dtime else None,
    }


def _parse_factor_fields(
    data: Dict[str, Any], errors: Dict[str, str], required: bool
) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    for name in _FACTOR_FIELDS:
        if name in data or required:
            value = require_text(data.get(name), name, errors, max_length=40)
            if value:
                parsed[name] = value
    if "availability_gap" in data or required:
        gap = parse_int(data.get("availability_gap"), "availability_gap", errors, 0, 100)
        if gap is not None:
            parsed["availability_gap"] = gap
    if data.get("admin_override") is not None:
        override = parse_int(
            data.get("admin_override"),
            "admin_override",
            errors,
            rules.ADMIN_OVERRIDE_MIN,
            rules.ADMIN_OVERRIDE_MAX,
        )
        if override is not None:
            parsed["admin_override"] = override
    return parsed


def _parse_supporting_documents(value: Any, errors: Dict[str, str]) -> List[str]:
    if value in (None, ""):
        return []
    if not isinstance(value, list) or not all(isinstance(doc, str) for doc in value):
        errors["supporting_documents"] = "Must be an array of document references."
        return []
    return [doc.strip() for doc in value if doc.strip()]


@transaction.atomic
def create_request(
    data: Dict[str, Any], recipient_id: str, allow_override: bool = False
) -> Dict[str, Any]:
    """Create a pending, unfunded request and score its urgency."""
    errors: Dict[str, str] = {}
    title = require_text(data.get("title"), "title", errors)
    description = str(data.get("description") or "").strip()

    aid_type = str(data.get("aid_type") or "").strip()
    if aid_type not in rules.AID_TYPES:
        errors["aid_type"] = f"Must be one of: {', '.join(rules.AID_TYPES)}."
    custom_aid_type = optional_text(data.get("custom_aid_type"))
    if aid_type == "Other" and not custom_aid_type:
        errors["custom_aid_type"] = "Required when aid_type is Other."

    factors = _parse_factor_fields(data, errors, required=True)
    if "admin_override" in factors and not allow_override:
        errors["admin_override"] = "Only administrators may set an urgency override."
    documents = _parse_supporting_documents(data.get("supporting_documents"), errors)

    quantity_required = None
    if data.get("quantity_required") not in (None, ""):
        quantity_required = parse_decimal(
            data.get("quantity_required"), "quantity_required", errors, decimal_places=2
        )

    if errors:
        raise ValidationError(errors)

    now = timezone.now()
    req = AidRequest(
        recipient_id=recipient_id,
        title=title,
        description=description,
        aid_type=aid_type,
        custom_aid_type=custom_aid_type if aid_type == "Other" else None,
        region=optional_text(data.get("region"), 80),
        quantity_required=quantity_required,
        unit=optional_text(data.get("unit"), 30),
        supporting_documents=documents,
        status="pending",
        funding_status="unfunded",
        expires_at=now + timedelta(days=rules.get_request_ttl_days()),
        create_by_id=recipient_id,
        update_by_id=recipient_id,
        **factors,
    )
    result = urgency.apply_urgency(req)
    req.save()

    audit.record(
        "AID_REQUEST",
        req.request_id,
        "created",
        recipient_id,
        new_value={"status": req.status, "urgency_score": result["score"]},
    )
    logger.info(
        "aid_request.created request_id=%s recipient=%s urgency=%s level=%s",
        req.request_id,
        recipient_id,
        result["score"],
        result["level"],
    )
    return serialize_request(req)


@transaction.atomic
def update_request(
    request_id: int,
    data: Dict[str, Any],
    actor_id: str,
    allow_override: bool = False,
) -> Dict[str, Any]:
    """Edit descriptive fields and urgency factors; rescores when a factor changes."""
    errors: Dict[str, str] = {}
    factors = _parse_factor_fields(data, errors, required=False)
    if "admin_override" in factors and not allow_override:
        errors["admin_override"] = "Only administrators may set an urgency override."
    title = None
    if "title" in data:
        title = require_text(data.get("title"), "title", errors)
    if errors:
        raise ValidationError(errors)

    req = _get_locked(request_id)
    if req.status in rules.REQUEST_TERMINAL_STATUSES:
        raise ConflictError("Request is closed.", code="request_closed")

    update_fields = ["update_by_id", "update_dtime", "version_nbr"]
    old_values: Dict[str, Any] = {}
    for name, value in factors.items():
        old_values[name] = getattr(req, name)
        setattr(req, name, value)
        update_fields.append(name)
    if title is not None:
        req.title = title
        update_fields.append("title")
    if "description" in data:
        req.description = str(data.get("description") or "").strip()
        update_fields.append("description")
    for name, max_length in (("region", 80), ("unit", 30)):
        if name in data:
            setattr(req, name, optional_text(data.get(name), max_length))
            update_fields.append(name)

    if factors:
        result = urgency.apply_urgency(req)
        update_fields.extend(["urgency_score", "urgency_level", "urgency_calculation_log"])
        audit.record(
            "AID_REQUEST",
            req.request_id,
            "urgency_rescored",
            actor_id,
            old_value=old_values,
            new_value={**factors, "urgency_score": result["score"]},
        )

    req.update_by_id = actor_id
    req.version_nbr += 1
    req.save(update_fields=update_fields)

    logger.info(
        "aid_request.updated request_id=%s actor=%s fields=%s",
        req.request_id,
        actor_id,
        ",".join(sorted(set(update_fields))),
    )
    return serialize_request(req)


@transaction.atomic
def approve_request(request_id: int, actor_id: str, notes: str = "") -> Dict[str, Any]:
    """Audit a pending request: pending -> approved."""
    req = _get_locked(request_id)
    if req.status != "pending":
        raise ConflictError(
            f"Request cannot be approved. Current status: {req.status}",
            code="invalid_transition",
        )

    req.status = "approved"
    req.last_audited_at = timezone.now()
    req.audited_by = actor_id
    req.update_by_id = actor_id
    req.save(
        update_fields=[
            "status",
            "last_audited_at",
            "audited_by",
            "update_by_id",
            "update_dtime",
        ]
    )

    audit.record(
        "AID_REQUEST",
        req.request_id,
        "approved",
        actor_id,
        old_value={"status": "pending"},
        new_value={"status": "approved"},
        notes=notes,
    )
    logger.info("aid_request.approved request_id=%s actor=%s", req.request_id, actor_id)
    return serialize_request(req)


@transaction.atomic
def cancel_request(request_id: int, actor_id: str, reason: str) -> Dict[str, Any]:
    if not reason or not str(reason).strip():
        raise ValidationError({"reason": "Reason is required."})

    req = _get_locked(request_id)
    _validate_transition(req.status, "cancelled")

    old_status = req.status
    req.status = "cancelled"
    req.update_by_id = actor_id
    req.save(update_fields=["status", "update_by_id", "update_dtime"])

    audit.record(
        "AID_REQUEST",
        req.request_id,
        "cancelled",
        actor_id,
        old_value={"status": old_status},
        new_value={"status": "cancelled"},
        notes=str(reason).strip(),
    )
    logger.info(
        "aid_request.cancelled request_id=%s actor=%s reason=%s",
        req.request_id,
        actor_id,
        reason,
    )
    return serialize_request(req)


@transaction.atomic
def complete_request(request_id: int, actor_id: str) -> Dict[str, Any]:
    """
    Close a claimed request: claimed -> completed.

    A request with allocations completes only once one of them has a
    delivered route.
    """
    req = _get_locked(request_id)
    if req.status != "claimed":
        raise ConflictError(
            f"Request cannot be completed. Current status: {req.status}",
            code="invalid_transition",
        )

    if req.allocations.exists():
        delivered = DeliveryRoute.objects.filter(
            allocation__request_id=req.request_id, status="Delivered"
        ).exists() or DeliveryRoute.objects.filter(
            logistics__allocation__request_id=req.request_id, status="Delivered"
        ).exists()
        if not delivered:
            raise ConflictError(
                "Delivery must be completed before the request can be completed.",
                code="delivery_incomplete",
            )

    req.status = "completed"
    req.update_by_id = actor_id
    req.save(update_fields=["status", "update_by_id", "update_dtime"])

    audit.record(
        "AID_REQUEST",
        req.request_id,
        "completed",
        actor_id,
        old_value={"status": "claimed"},
        new_value={"status": "completed"},
    )
    logger.info("aid_request.completed request_id=%s actor=%s", req.request_id, actor_id)
    return serialize_request(req)


# ── Flagged review ───────────────────────────────────────────────────────────


def _review_queryset(days: Optional[int], now=None):
    now = now or timezone.now()
    cutoff = now - timedelta(days=days if days is not None else rules.get_flag_after_days())
    return AidRequest.objects.filter(create_dtime__lt=cutoff).exclude(
        status__in=rules.REVIEWABLE_EXCLUDED_STATUSES
    )


def list_flagged_requests(days: Optional[int] = None, now=None) -> List[Dict[str, Any]]:
    """Open requests older than the review window, oldest first."""
    queryset = _review_queryset(days, now).order_by("create_dtime", "-urgency_score")
    return [serialize_request(req) for req in queryset]


@transaction.atomic
def review_flagged_requests(
    request_ids: Iterable[Any],
    action: str,
    actor_id: str,
    now=None,
) -> Dict[str, Any]:
    """Batch close or urgency-boost requests past the review window."""
    errors: Dict[str, str] = {}
    if action not in rules.REVIEW_ACTIONS:
        errors["action"] = f"Must be one of: {', '.join(rules.REVIEW_ACTIONS)}."
    ids: List[int] = []
    if not isinstance(request_ids, (list, tuple)) or not request_ids:
        errors["request_ids"] = "Must be a non-empty array of request ids."
    else:
        for idx, raw in enumerate(request_ids):
            parsed = parse_int(raw, f"request_ids[{idx}]", errors, minimum=1)
            if parsed is not None:
                ids.append(parsed)
    if errors:
        raise ValidationError(errors)

    eligible = list(
        _review_queryset(None, now)
        .select_for_update()
        .filter(request_id__in=ids)
        .order_by("request_id")
    )

    for req in eligible:
        was_flagged = req.is_flagged_for_review
        req.is_flagged_for_review = False
        req.flagged_at = None
        req.update_by_id = actor_id
        if action == rules.REVIEW_ACTION_CLOSE:
            old_status = req.status
            req.status = "closed_no_match"
            req.save(
                update_fields=[
                    "status",
                    "is_flagged_for_review",
                    "flagged_at",
                    "update_by_id",
                    "update_dtime",
                ]
            )
            audit.record(
                "AID_REQUEST",
                req.request_id,
                "batch_closed",
                actor_id,
                old_value={"status": old_status, "is_flagged_for_review": was_flagged},
                new_value={"status": "closed_no_match", "is_flagged_for_review": False},
                notes=f"Request {req.request_id} closed via batch admin review",
            )
        else:
            old_override = req.admin_override
            req.admin_override = rules.URGENCY_BOOST_OVERRIDE
            urgency.apply_urgency(req)
            req.save(
                update_fields=[
                    "admin_override",
                    "urgency_score",
                    "urgency_level",
                    "urgency_calculation_log",
                    "is_flagged_for_review",
                    "flagged_at",
                    "update_by_id",
                    "update_dtime",
                ]
            )
            audit.record(
                "AID_REQUEST",
                req.request_id,
                "batch_boosted",
                actor_id,
                old_value={"admin_override": old_override, "is_flagged_for_review": was_flagged},
                new_value={
                    "admin_override": rules.URGENCY_BOOST_OVERRIDE,
                    "is_flagged_for_review": False,
                },
                notes=f"Request {req.request_id} urgency boosted via batch admin review",
            )

    logger.info(
        "aid_request.batch_review action=%s actor=%s requested=%d updated=%d",
        action,
        actor_id,
        len(ids),
        len(eligible),
    )
    return {
        "action": action,
        "updated_count": len(eligible),
        "request_ids": [req.request_id for req in eligible],
    }
