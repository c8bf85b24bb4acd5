"""Donation intake, price verification and warehouse placement."""
from __future__ import annotations

import logging
from typing import Any, Dict

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from fulfillment import rules
from fulfillment.exceptions import ConflictError, NotFoundError, ValidationError
from fulfillment.models import AidRequest, Donation, Warehouse
from fulfillment.services import audit
from fulfillment.validators import (
    optional_text,
    parse_decimal,
    parse_optional_date,
    parse_positive_int,
    require_text,
)

logger = logging.getLogger("aidlink.audit")

_DONATION_TYPES = {choice for choice, _ in Donation.TYPE_CHOICES}


def serialize_donation(donation: Donation) -> Dict[str, Any]:
    return {
        "donation_id": donation.donation_id,
        "supplier_id": donation.supplier_id,
        "aid_request_id": donation.aid_request_id,
        "donation_type": donation.donation_type,
        "item": donation.item,
        "description": donation.description or "",
        "unit": donation.unit,
        "quantity": str(donation.quantity),
        "remaining_quantity": str(donation.remaining_quantity),
        "status": donation.status,
        "warehouse_id": donation.warehouse_id,
        "value": str(donation.value) if donation.value is not None else None,
        "audited_price": (
            str(donation.audited_price) if donation.audited_price is not None else None
        ),
        "price_status": donation.price_status,
        "audited_by": donation.audited_by,
        "locked_at": donation.locked_at.isoformat() if donation.locked_at else None,
        "expiry_date": donation.expiry_date.isoformat() if donation.expiry_date else None,
        "create_dtime": donation.create_dtime.isoformat() if donation.create_dtime else None,
    }


def _get_locked(donation_id: int) -> Donation:
    try:
        return Donation.objects.select_for_update().get(donation_id=donation_id)
    except Donation.DoesNotExist:
        raise NotFoundError("Donation not found.", field="donation_id")


@transaction.atomic
def create_donation(data: Dict[str, Any], supplier_id: str) -> Dict[str, Any]:
    """
    Record a supplier donation.

    Untargeted donations wait for price verification. Goods or services
    targeted at an approved request are verified on creation; a supplier may
    not target their own request.
    """
    errors: Dict[str, str] = {}
    donation_type = str(data.get("donation_type") or "Goods").strip()
    if donation_type not in _DONATION_TYPES:
        errors["donation_type"] = f"Must be one of: {', '.join(sorted(_DONATION_TYPES))}."
    item = require_text(data.get("item"), "item", errors)
    unit = require_text(data.get("unit"), "unit", errors, max_length=50)
    quantity = parse_decimal(
        data.get("quantity"), "quantity", errors, positive=True, decimal_places=2
    )
    expiry_date = parse_optional_date(data.get("expiry_date"), "expiry_date", errors)
    value = None
    if data.get("value") not in (None, ""):
        value = parse_decimal(data.get("value"), "value", errors, decimal_places=2)

    aid_request_id = None
    if data.get("aid_request_id") not in (None, ""):
        aid_request_id = parse_positive_int(data.get("aid_request_id"), "aid_request_id", errors)
    warehouse_id = None
    if data.get("warehouse_id") not in (None, ""):
        warehouse_id = parse_positive_int(data.get("warehouse_id"), "warehouse_id", errors)
    if errors:
        raise ValidationError(errors)

    status = "Pending"
    if aid_request_id is not None:
        try:
            target = AidRequest.objects.get(request_id=aid_request_id)
        except AidRequest.DoesNotExist:
            raise NotFoundError("Request not found.", field="aid_request_id")
        if target.recipient_id == supplier_id:
            raise ConflictError(
                "Conflict of interest: a supplier cannot donate to their own request.",
                code="conflict_of_interest",
            )
        if target.status != "approved":
            raise ConflictError(
                "Target request must be approved before creating a targeted donation.",
                code="request_not_approved",
            )
        if donation_type != "Monetary":
            status = "Verified"

    if warehouse_id is not None and not Warehouse.objects.filter(warehouse_id=warehouse_id).exists():
        raise NotFoundError("Warehouse not found.", field="warehouse_id")

    donation = Donation.objects.create(
        supplier_id=supplier_id,
        aid_request_id=aid_request_id,
        donation_type=donation_type,
        item=item,
        description=optional_text(data.get("description"), 2000),
        unit=unit,
        quantity=quantity,
        remaining_quantity=quantity,
        status=status,
        warehouse_id=warehouse_id,
        value=value,
        expiry_date=expiry_date,
        create_by_id=supplier_id,
        update_by_id=supplier_id,
    )

    audit.record(
        "DONATION",
        donation.donation_id,
        "created",
        supplier_id,
        new_value={"status": status, "quantity": str(quantity)},
    )
    logger.info(
        "donation.created donation_id=%s supplier=%s status=%s target=%s",
        donation.donation_id,
        supplier_id,
        status,
        aid_request_id,
    )
    return serialize_donation(donation)


@transaction.atomic
def lock_price(
    donation_id: int, audited_price: Any, actor_id: str, notes: str = ""
) -> Dict[str, Any]:
    """Auditor finalizes the donation value: Pending -> Verified."""
    errors: Dict[str, str] = {}
    price = parse_decimal(audited_price, "audited_price", errors, decimal_places=2)
    if errors:
        raise ValidationError(errors)

    donation = _get_locked(donation_id)
    if donation.status not in ("Pending", "Verified"):
        raise ConflictError(
            f"Donation price cannot be locked. Current status: {donation.status}",
            code="invalid_transition",
        )

    old_status = donation.status
    now = timezone.now()
    donation.audited_price = price
    donation.price_status = "Locked"
    donation.audited_by = actor_id
    donation.locked_at = now
    donation.status = "Verified"
    donation.update_by_id = actor_id
    donation.save(
        update_fields=[
            "audited_price",
            "price_status",
            "audited_by",
            "locked_at",
            "status",
            "update_by_id",
            "update_dtime",
        ]
    )

    audit.record(
        "DONATION",
        donation.donation_id,
        "price_locked",
        actor_id,
        old_value={"status": old_status},
        new_value={"status": "Verified", "audited_price": str(price)},
        notes=notes,
    )
    logger.info(
        "donation.verified donation_id=%s price=%s actor=%s",
        donation.donation_id,
        price,
        actor_id,
    )
    return serialize_donation(donation)


@transaction.atomic
def reject_donation(donation_id: int, actor_id: str, reason: str) -> Dict[str, Any]:
    if not reason or not str(reason).strip():
        raise ValidationError({"reason": "Reason is required."})

    donation = _get_locked(donation_id)
    if donation.status not in ("Pending", "Verified"):
        raise ConflictError(
            f"Donation cannot be rejected. Current status: {donation.status}",
            code="invalid_transition",
        )
    if donation.allocations.exclude(status="Cancelled").exists():
        raise ConflictError(
            "Donation has active allocations and cannot be rejected.",
            code="donation_allocated",
        )

    old_status = donation.status
    donation.status = "Rejected"
    donation.update_by_id = actor_id
    existing = donation.notes_text or ""
    donation.notes_text = f"{existing}\n[Rejected] {reason}".strip()
    donation.save(update_fields=["status", "notes_text", "update_by_id", "update_dtime"])

    audit.record(
        "DONATION",
        donation.donation_id,
        "rejected",
        actor_id,
        old_value={"status": old_status},
        new_value={"status": "Rejected"},
        notes=str(reason).strip(),
    )
    logger.info(
        "donation.rejected donation_id=%s actor=%s reason=%s",
        donation.donation_id,
        actor_id,
        reason,
    )
    return serialize_donation(donation)


@transaction.atomic
def assign_warehouse(donation_id: int, warehouse_id: Any, actor_id: str) -> Dict[str, Any]:
    """Place a donation in a warehouse with room for its full quantity."""
    errors: Dict[str, str] = {}
    parsed_id = parse_positive_int(warehouse_id, "warehouse_id", errors)
    if errors:
        raise ValidationError(errors)

    try:
        warehouse = Warehouse.objects.select_for_update().get(warehouse_id=parsed_id)
    except Warehouse.DoesNotExist:
        raise NotFoundError("Warehouse not found.", field="warehouse_id")
    donation = _get_locked(donation_id)
    if donation.status in rules.DONATION_TERMINAL_STATUSES:
        raise ConflictError(
            f"Donation is closed. Current status: {donation.status}",
            code="invalid_transition",
        )

    current_usage = (
        Donation.objects.filter(warehouse=warehouse)
        .exclude(status="Delivered")
        .exclude(donation_id=donation.donation_id)
        .aggregate(total=Sum("quantity"))
        .get("total")
        or 0
    )
    if current_usage + donation.quantity > warehouse.capacity:
        available = max(warehouse.capacity - current_usage, 0)
        raise ConflictError(
            f"Warehouse capacity exceeded. Available: {available} {donation.unit}",
            code="warehouse_capacity_exceeded",
        )

    donation.warehouse = warehouse
    donation.update_by_id = actor_id
    donation.save(update_fields=["warehouse", "update_by_id", "update_dtime"])

    logger.info(
        "donation.warehouse_assigned donation_id=%s warehouse_id=%s actor=%s",
        donation.donation_id,
        warehouse.warehouse_id,
        actor_id,
    )
    return serialize_donation(donation)
