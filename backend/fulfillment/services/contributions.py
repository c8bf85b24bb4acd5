"""
Contribution ledger: multi-supplier percentage funding of aid requests.

Every commit runs in one transaction holding a row lock on the request, so
commits against the same request are serialized. The committed total never
exceeds 100 and each supplier contributes at most once per request; the
unique constraint on (request, supplier) backs the duplicate check.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.db import IntegrityError, transaction
from django.db.models import IntegerField, OuterRef, Q, Subquery, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from fulfillment import rules
from fulfillment.exceptions import (
    ConflictError,
    DuplicateContribution,
    FundingExceeded,
    NotFoundError,
    ValidationError,
)
from fulfillment.models import AidRequest, Contribution
from fulfillment.services import audit
from fulfillment.validators import parse_decimal, parse_int

logger = logging.getLogger("aidlink.audit")


def _serialize_contribution(contribution: Contribution) -> Dict[str, Any]:
    return {
        "contribution_id": contribution.contribution_id,
        "request_id": contribution.request_id,
        "supplier_id": contribution.supplier_id,
        "percentage": contribution.percentage,
        "amount_value": (
            str(contribution.amount_value) if contribution.amount_value is not None else None
        ),
        "status": contribution.status,
        "create_dtime": (
            contribution.create_dtime.isoformat() if contribution.create_dtime else None
        ),
    }


def _validate_input(percentage: Any, amount_value: Any) -> tuple[int, Optional[Decimal]]:
    errors: Dict[str, str] = {}
    parsed_pct = parse_int(percentage, "percentage", errors, minimum=1, maximum=100)
    if percentage is None:
        errors["percentage"] = "This field is required."
    parsed_amount = None
    if amount_value not in (None, ""):
        parsed_amount = parse_decimal(amount_value, "amount_value", errors, decimal_places=2)
    if errors:
        raise ValidationError(errors)
    return parsed_pct, parsed_amount


def _committed_total(request_id: int) -> int:
    total = (
        Contribution.objects.filter(request_id=request_id, status="committed")
        .aggregate(total=Sum("percentage"))
        .get("total")
    )
    return int(total or 0)


def _lock_fundable_request(request_id: int) -> AidRequest:
    try:
        req = AidRequest.objects.select_for_update().get(request_id=request_id)
    except AidRequest.DoesNotExist:
        raise NotFoundError("Request not found.", field="request_id")

    # Full funding claims the request, so check it before the status gate.
    if req.funding_status == "fully_funded":
        raise FundingExceeded(remaining=0)
    if req.status not in rules.get_fundable_statuses():
        raise ConflictError(
            "Request is not open for funding.",
            code="request_not_fundable",
        )
    return req


def _refresh_funding_status(req: AidRequest, actor_id: Optional[str]) -> int:
    """Recompute the funding projection; full funding claims the request."""
    total = _committed_total(req.request_id)
    old_values = {"funding_status": req.funding_status, "status": req.status}

    req.funding_status = rules.funding_status_for(total)
    update_fields = ["funding_status", "update_by_id", "update_dtime"]
    if req.funding_status == "fully_funded" and req.status in rules.get_fundable_statuses():
        req.status = "claimed"
        update_fields.append("status")
    req.update_by_id = actor_id or req.update_by_id
    req.save(update_fields=update_fields)

    new_values = {"funding_status": req.funding_status, "status": req.status}
    if new_values != old_values:
        audit.record(
            "AID_REQUEST",
            req.request_id,
            "funding_updated",
            actor_id,
            old_value=old_values,
            new_value={**new_values, "total_funded_percentage": total},
        )
    return total


def _insert(
    req: AidRequest,
    supplier_id: str,
    percentage: int,
    amount_value: Optional[Decimal],
    status: str,
    actor_id: str,
) -> Contribution:
    if Contribution.objects.filter(request_id=req.request_id, supplier_id=supplier_id).exists():
        raise DuplicateContribution()
    try:
        # Savepoint so a lost race on the unique index surfaces as a domain error.
        with transaction.atomic():
            return Contribution.objects.create(
                request=req,
                supplier_id=supplier_id,
                percentage=percentage,
                amount_value=amount_value,
                status=status,
                create_by_id=actor_id,
                update_by_id=actor_id,
            )
    except IntegrityError as exc:
        raise DuplicateContribution() from exc


@transaction.atomic
def commit_contribution(
    request_id: int,
    supplier_id: str,
    percentage: Any,
    amount_value: Any = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Commit a supplier's percentage toward a request."""
    pct, amount = _validate_input(percentage, amount_value)
    actor_id = actor_id or supplier_id

    req = _lock_fundable_request(request_id)
    total = _committed_total(req.request_id)
    if Contribution.objects.filter(request_id=req.request_id, supplier_id=supplier_id).exists():
        raise DuplicateContribution()
    if total + pct > rules.FULL_FUNDING_PERCENTAGE:
        raise FundingExceeded(remaining=max(0, rules.FULL_FUNDING_PERCENTAGE - total))

    contribution = _insert(req, supplier_id, pct, amount, "committed", actor_id)
    new_total = _refresh_funding_status(req, actor_id)

    audit.record(
        "CONTRIBUTION",
        contribution.contribution_id,
        "committed",
        actor_id,
        new_value={"request_id": req.request_id, "percentage": pct},
    )
    logger.info(
        "contribution.committed request_id=%s supplier=%s pct=%s total=%s funding_status=%s",
        req.request_id,
        supplier_id,
        pct,
        new_total,
        req.funding_status,
    )
    return {
        "contribution": _serialize_contribution(contribution),
        "funding": _summary(req, new_total),
    }


@transaction.atomic
def pledge_contribution(
    request_id: int,
    supplier_id: str,
    percentage: Any,
    amount_value: Any = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a pending pledge; it does not count toward funding until confirmed."""
    pct, amount = _validate_input(percentage, amount_value)
    actor_id = actor_id or supplier_id

    req = _lock_fundable_request(request_id)
    contribution = _insert(req, supplier_id, pct, amount, "pending", actor_id)

    audit.record(
        "CONTRIBUTION",
        contribution.contribution_id,
        "pledged",
        actor_id,
        new_value={"request_id": req.request_id, "percentage": pct},
    )
    logger.info(
        "contribution.pledged request_id=%s supplier=%s pct=%s",
        req.request_id,
        supplier_id,
        pct,
    )
    return {"contribution": _serialize_contribution(contribution)}


@transaction.atomic
def confirm_contribution(contribution_id: int, actor_id: str) -> Dict[str, Any]:
    """Move a pending pledge to committed under the same cap as a direct commit."""
    try:
        contribution = Contribution.objects.get(contribution_id=contribution_id)
    except Contribution.DoesNotExist:
        raise NotFoundError("Contribution not found.", field="contribution_id")

    req = _lock_fundable_request(contribution.request_id)
    # Re-read under the request lock.
    contribution = Contribution.objects.select_for_update().get(contribution_id=contribution_id)
    if contribution.status != "pending":
        raise ConflictError(
            f"Contribution cannot be confirmed. Current status: {contribution.status}",
            code="invalid_transition",
        )

    total = _committed_total(req.request_id)
    if total + contribution.percentage > rules.FULL_FUNDING_PERCENTAGE:
        raise FundingExceeded(remaining=max(0, rules.FULL_FUNDING_PERCENTAGE - total))

    contribution.status = "committed"
    contribution.update_by_id = actor_id
    contribution.save(update_fields=["status", "update_by_id", "update_dtime"])
    new_total = _refresh_funding_status(req, actor_id)

    audit.record(
        "CONTRIBUTION",
        contribution.contribution_id,
        "committed",
        actor_id,
        old_value={"status": "pending"},
        new_value={"status": "committed"},
    )
    logger.info(
        "contribution.confirmed contribution_id=%s request_id=%s total=%s",
        contribution.contribution_id,
        req.request_id,
        new_total,
    )
    return {
        "contribution": _serialize_contribution(contribution),
        "funding": _summary(req, new_total),
    }


def _summary(req: AidRequest, total: int, contributions: Optional[List[Contribution]] = None) -> Dict[str, Any]:
    total_funded = min(rules.FULL_FUNDING_PERCENTAGE, total)
    summary: Dict[str, Any] = {
        "request_id": req.request_id,
        "total_funded_percentage": total_funded,
        "remaining_percentage": max(0, rules.FULL_FUNDING_PERCENTAGE - total_funded),
        "funding_status": rules.funding_status_for(total_funded),
    }
    if contributions is not None:
        committed = [c for c in contributions if c.status == "committed"]
        summary["contribution_count"] = len(committed)
        summary["contributions"] = [_serialize_contribution(c) for c in contributions]
    else:
        summary["contribution_count"] = Contribution.objects.filter(
            request_id=req.request_id, status="committed"
        ).count()
    return summary


def get_funding_summary(request_id: int) -> Dict[str, Any]:
    """Derived funding figures, recomputed from committed rows on every read."""
    try:
        req = AidRequest.objects.get(request_id=request_id)
    except AidRequest.DoesNotExist:
        raise NotFoundError("Request not found.", field="request_id")
    contributions = list(req.contributions.order_by("contribution_id"))
    total = sum(c.percentage for c in contributions if c.status == "committed")
    return _summary(req, total, contributions)


def list_contributions(queryset) -> List[Dict[str, Any]]:
    return [_serialize_contribution(c) for c in queryset.order_by("contribution_id")]


def _committed_subquery():
    return (
        Contribution.objects.filter(request=OuterRef("pk"), status="committed")
        .values("request")
        .annotate(total=Sum("percentage"))
        .values("total")
    )


def list_fundable_requests(queryset=None) -> List[Dict[str, Any]]:
    """Approved, unexpired requests still open for funding, most urgent first."""
    now = timezone.now()
    queryset = queryset if queryset is not None else AidRequest.objects.all()
    queryset = (
        queryset.filter(
            status="approved",
            funding_status__in=["unfunded", "partially_funded"],
        )
        .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))
        .annotate(
            committed_total=Coalesce(
                Subquery(_committed_subquery(), output_field=IntegerField()), 0
            )
        )
        .order_by("-urgency_score", "-create_dtime")
    )
    results = []
    for req in queryset:
        total = min(rules.FULL_FUNDING_PERCENTAGE, int(req.committed_total or 0))
        results.append(
            {
                "request_id": req.request_id,
                "title": req.title,
                "aid_type": req.aid_type,
                "region": req.region,
                "urgency_score": req.urgency_score,
                "urgency_level": req.urgency_level,
                "funding_status": req.funding_status,
                "total_funded_percentage": total,
                "remaining_percentage": rules.FULL_FUNDING_PERCENTAGE - total,
                "expires_at": req.expires_at.isoformat() if req.expires_at else None,
            }
        )
    return results
