"""
Allocation of verified donations to requests and delivery route handling.

Allocation decrements the donation's remaining quantity with a single
conditional UPDATE so concurrent allocations can never drive it negative.
Creating a route approves a pending allocation and opens a logistics
shipment for it; route status changes are mirrored onto the route's
shipments and its allocation.
"""
from __future__ import annotations

import logging
import string
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone
from django.utils.crypto import get_random_string

from fulfillment import rules
from fulfillment.exceptions import (
    ConflictError,
    DonationUnavailable,
    InsufficientQuantity,
    NotFoundError,
    ValidationError,
)
from fulfillment.models import AidRequest, Allocation, DeliveryRoute, Donation, Logistic, Warehouse
from fulfillment.services import audit
from fulfillment.validators import (
    optional_text,
    parse_decimal,
    parse_int,
    parse_optional_date,
    parse_optional_datetime,
)

logger = logging.getLogger("aidlink.audit")

ALLOCATION_TRANSITIONS = {
    "Pending": {"Approved", "In Transit", "Delivered", "Cancelled"},
    "Approved": {"In Transit", "Delivered", "Cancelled"},
    "In Transit": {"Delivered", "Cancelled"},
    "Delivered": set(),
    "Cancelled": set(),
}

ROUTE_TRANSITIONS = {
    "Scheduled": {"In Transit", "Delivered", "Cancelled"},
    "In Transit": {"Delivered", "Cancelled"},
    "Delivered": set(),
    "Cancelled": set(),
}

_TRACKING_CHARS = string.ascii_uppercase + string.digits


def validate_transition(transitions: Dict[str, set], current: str, target: str, label: str) -> None:
    if target not in transitions.get(current, set()):
        raise ConflictError(
            f"Cannot transition {label} from {current} to {target}.",
            code="invalid_transition",
        )


def generate_tracking_number(delivery_route_id: int) -> str:
    """Tracking number: RF-{8 random}-{route id}."""
    token = get_random_string(8, allowed_chars=_TRACKING_CHARS)
    return f"{rules.TRACKING_NUMBER_PREFIX}-{token}-{delivery_route_id}"


def serialize_allocation(allocation: Allocation) -> Dict[str, Any]:
    return {
        "allocation_id": allocation.allocation_id,
        "request_id": allocation.request_id,
        "donation_id": allocation.donation_id,
        "allocated_by": allocation.allocated_by,
        "quantity_allocated": str(allocation.quantity_allocated),
        "status": allocation.status,
        "notes_text": allocation.notes_text or "",
        "allocated_date": (
            allocation.allocated_date.isoformat() if allocation.allocated_date else None
        ),
        "expected_delivery_date": (
            allocation.expected_delivery_date.isoformat()
            if allocation.expected_delivery_date
            else None
        ),
        "actual_delivery_date": (
            allocation.actual_delivery_date.isoformat()
            if allocation.actual_delivery_date
            else None
        ),
    }


def serialize_logistic(logistic: Logistic) -> Dict[str, Any]:
    return {
        "logistic_id": logistic.logistic_id,
        "allocation_id": logistic.allocation_id,
        "delivery_route_id": logistic.delivery_route_id,
        "tracking_number": logistic.tracking_number,
        "status": logistic.status,
        "estimated_value": (
            str(logistic.estimated_value) if logistic.estimated_value is not None else None
        ),
        "delivery_notes": logistic.delivery_notes or "",
        "location_updates": list(logistic.location_updates or []),
        "last_location_update": (
            logistic.last_location_update.isoformat() if logistic.last_location_update else None
        ),
    }


def serialize_route(route: DeliveryRoute, include_logistics: bool = True) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "delivery_route_id": route.delivery_route_id,
        "route_name": route.route_name,
        "warehouse_id": route.warehouse_id,
        "allocation_id": route.allocation_id,
        "destination_region": route.destination_region,
        "destination_city": route.destination_city,
        "destination_address": route.destination_address,
        "distance_km": str(route.distance_km) if route.distance_km is not None else None,
        "estimated_duration_minutes": route.estimated_duration_minutes,
        "status": route.status,
        "scheduled_date": route.scheduled_date.isoformat() if route.scheduled_date else None,
        "actual_departure_date": (
            route.actual_departure_date.isoformat() if route.actual_departure_date else None
        ),
        "actual_arrival_date": (
            route.actual_arrival_date.isoformat() if route.actual_arrival_date else None
        ),
        "driver_id": route.driver_id,
        "vehicle_id": route.vehicle_id,
        "notes_text": route.notes_text or "",
    }
    if include_logistics:
        data["logistics"] = [
            serialize_logistic(logistic) for logistic in route.logistics.order_by("logistic_id")
        ]
    return data


def decrement_remaining(donation_id: int, quantity: Decimal, actor_id: str) -> None:
    """
    Take ``quantity`` from a verified donation in one conditional UPDATE.

    Zero affected rows means the donation no longer holds enough stock (or is
    no longer verified), whatever the caller last read.
    """
    updated = Donation.objects.filter(
        donation_id=donation_id,
        status="Verified",
        remaining_quantity__gte=quantity,
    ).update(
        remaining_quantity=F("remaining_quantity") - quantity,
        update_by_id=actor_id,
        update_dtime=timezone.now(),
    )
    if updated == 0:
        raise InsufficientQuantity()


@transaction.atomic
def allocate(
    request_id: int,
    donation_id: int,
    quantity: Any,
    admin_id: str,
    expected_delivery_date: Any = None,
    notes: str = "",
) -> Dict[str, Any]:
    """Allocate part of a verified donation to a request; the allocation starts Pending."""
    errors: Dict[str, str] = {}
    qty = parse_decimal(quantity, "quantity", errors, positive=True, decimal_places=2)
    expected = parse_optional_date(expected_delivery_date, "expected_delivery_date", errors)
    if errors:
        raise ValidationError(errors)

    try:
        req = AidRequest.objects.select_for_update().get(request_id=request_id)
    except AidRequest.DoesNotExist:
        raise NotFoundError("Request not found.", field="request_id")
    if req.status in rules.REQUEST_TERMINAL_STATUSES:
        raise ConflictError(
            f"Request is closed. Current status: {req.status}",
            code="request_closed",
        )

    try:
        donation = Donation.objects.select_for_update().get(donation_id=donation_id)
    except Donation.DoesNotExist:
        raise NotFoundError("Donation not found.", field="donation_id")

    today = timezone.localdate()
    if donation.status != "Verified" or (
        donation.expiry_date is not None and donation.expiry_date < today
    ):
        raise DonationUnavailable()
    if qty > donation.remaining_quantity:
        raise InsufficientQuantity(
            f"Only {donation.remaining_quantity} {donation.unit} remaining on this donation."
        )

    decrement_remaining(donation.donation_id, qty, admin_id)

    allocation = Allocation.objects.create(
        request=req,
        donation=donation,
        allocated_by=admin_id,
        quantity_allocated=qty,
        status="Pending",
        notes_text=optional_text(notes, 2000),
        allocated_date=timezone.now(),
        expected_delivery_date=expected,
        create_by_id=admin_id,
        update_by_id=admin_id,
    )

    audit.record(
        "ALLOCATION",
        allocation.allocation_id,
        "created",
        admin_id,
        new_value={
            "request_id": req.request_id,
            "donation_id": donation.donation_id,
            "quantity_allocated": str(qty),
        },
    )
    logger.info(
        "allocation.created allocation_id=%s request_id=%s donation_id=%s qty=%s actor=%s",
        allocation.allocation_id,
        req.request_id,
        donation.donation_id,
        qty,
        admin_id,
    )
    return serialize_allocation(allocation)


def _lock_allocation(allocation_id: int) -> Allocation:
    try:
        return Allocation.objects.select_for_update().get(allocation_id=allocation_id)
    except Allocation.DoesNotExist:
        raise NotFoundError("Allocation not found.", field="allocation_id")


def lock_route(delivery_route_id: int) -> DeliveryRoute:
    try:
        return DeliveryRoute.objects.select_for_update().get(delivery_route_id=delivery_route_id)
    except DeliveryRoute.DoesNotExist:
        raise NotFoundError("Delivery route not found.", field="delivery_route_id")


def _has_active_route(allocation_id: int, exclude_route_id: Optional[int] = None) -> bool:
    routes = DeliveryRoute.objects.filter(
        Q(allocation_id=allocation_id) | Q(logistics__allocation_id=allocation_id),
        status__in=rules.ROUTE_ACTIVE_STATUSES,
    )
    if exclude_route_id is not None:
        routes = routes.exclude(delivery_route_id=exclude_route_id)
    return routes.exists()


def _create_logistic(
    route: DeliveryRoute,
    allocation: Allocation,
    actor_id: str,
    estimated_value: Optional[Decimal] = None,
) -> Logistic:
    logistic = Logistic.objects.create(
        allocation=allocation,
        delivery_route=route,
        tracking_number=generate_tracking_number(route.delivery_route_id),
        status=route.status,
        estimated_value=estimated_value,
        location_updates=[],
        create_by_id=actor_id,
        update_by_id=actor_id,
    )
    audit.record(
        "LOGISTIC",
        logistic.logistic_id,
        "created",
        actor_id,
        new_value={
            "tracking_number": logistic.tracking_number,
            "delivery_route_id": route.delivery_route_id,
            "allocation_id": allocation.allocation_id,
        },
    )
    return logistic


@transaction.atomic
def create_delivery_route(
    allocation_id: int,
    warehouse_id: Any,
    data: Dict[str, Any],
    actor_id: str,
) -> Dict[str, Any]:
    """
    Schedule a route for an allocation and open its shipment.

    The allocation must be Pending or Approved with no other Scheduled or
    In Transit route; a Pending allocation is approved.
    """
    errors: Dict[str, str] = {}
    parsed_warehouse_id = parse_int(warehouse_id, "warehouse_id", errors, minimum=1)
    scheduled_date = parse_optional_datetime(data.get("scheduled_date"), "scheduled_date", errors)
    distance_km = None
    if data.get("distance_km") not in (None, ""):
        distance_km = parse_decimal(
            data.get("distance_km"), "distance_km", errors, decimal_places=2
        )
    duration = None
    if data.get("estimated_duration_minutes") not in (None, ""):
        duration = parse_int(
            data.get("estimated_duration_minutes"), "estimated_duration_minutes", errors, minimum=0
        )
    estimated_value = None
    if data.get("estimated_value") not in (None, ""):
        estimated_value = parse_decimal(
            data.get("estimated_value"), "estimated_value", errors, decimal_places=2
        )
    if errors:
        raise ValidationError(errors)

    allocation = _lock_allocation(allocation_id)
    if allocation.status not in ("Pending", "Approved"):
        raise ConflictError(
            f"Allocation must be Pending or Approved to schedule delivery. "
            f"Current status: {allocation.status}",
            code="invalid_transition",
        )
    if _has_active_route(allocation.allocation_id):
        raise ConflictError(
            "Allocation already has an active delivery route.",
            code="active_route_exists",
        )
    try:
        warehouse = Warehouse.objects.get(warehouse_id=parsed_warehouse_id)
    except Warehouse.DoesNotExist:
        raise NotFoundError("Warehouse not found.", field="warehouse_id")

    if allocation.status == "Pending":
        allocation.status = "Approved"
        allocation.update_by_id = actor_id
        allocation.save(update_fields=["status", "update_by_id", "update_dtime"])
        audit.record(
            "ALLOCATION",
            allocation.allocation_id,
            "approved",
            actor_id,
            old_value={"status": "Pending"},
            new_value={"status": "Approved"},
            notes="Approved on delivery route creation",
        )

    route_name = optional_text(data.get("route_name"), 120) or (
        f"Allocation {allocation.allocation_id} delivery"
    )
    route = DeliveryRoute.objects.create(
        route_name=route_name,
        warehouse=warehouse,
        allocation=allocation,
        destination_region=optional_text(data.get("destination_region"), 80),
        destination_city=optional_text(data.get("destination_city"), 80),
        destination_address=optional_text(data.get("destination_address")),
        distance_km=distance_km,
        estimated_duration_minutes=duration,
        status="Scheduled",
        scheduled_date=scheduled_date or timezone.now(),
        driver_id=optional_text(data.get("driver_id"), 64),
        vehicle_id=optional_text(data.get("vehicle_id"), 40),
        notes_text=optional_text(data.get("notes"), 2000),
        create_by_id=actor_id,
        update_by_id=actor_id,
    )
    logistic = _create_logistic(route, allocation, actor_id, estimated_value)

    audit.record(
        "DELIVERY_ROUTE",
        route.delivery_route_id,
        "scheduled",
        actor_id,
        new_value={"allocation_id": allocation.allocation_id, "status": "Scheduled"},
    )
    logger.info(
        "delivery_route.created route_id=%s allocation_id=%s tracking=%s actor=%s",
        route.delivery_route_id,
        allocation.allocation_id,
        logistic.tracking_number,
        actor_id,
    )
    return serialize_route(route)


@transaction.atomic
def add_logistic(
    delivery_route_id: int,
    allocation_id: int,
    actor_id: str,
    estimated_value: Any = None,
) -> Dict[str, Any]:
    """Attach another allocation's shipment to an existing open route."""
    errors: Dict[str, str] = {}
    value = None
    if estimated_value not in (None, ""):
        value = parse_decimal(estimated_value, "estimated_value", errors, decimal_places=2)
    if errors:
        raise ValidationError(errors)

    route = lock_route(delivery_route_id)
    if route.status in rules.ROUTE_TERMINAL_STATUSES:
        raise ConflictError(
            f"Delivery route is closed. Current status: {route.status}",
            code="invalid_transition",
        )
    allocation = _lock_allocation(allocation_id)
    if allocation.status in rules.ALLOCATION_TERMINAL_STATUSES:
        raise ConflictError(
            f"Allocation is closed. Current status: {allocation.status}",
            code="invalid_transition",
        )
    if _has_active_route(allocation.allocation_id, exclude_route_id=route.delivery_route_id):
        raise ConflictError(
            "Allocation already has an active delivery route.",
            code="active_route_exists",
        )

    logistic = _create_logistic(route, allocation, actor_id, value)
    logger.info(
        "logistic.created logistic_id=%s route_id=%s allocation_id=%s actor=%s",
        logistic.logistic_id,
        route.delivery_route_id,
        allocation.allocation_id,
        actor_id,
    )
    return serialize_logistic(logistic)


def resolve_allocation_id(route: DeliveryRoute) -> Optional[int]:
    """
    The allocation a route delivers.

    Uses the route's own allocation link when set, otherwise the allocation of
    the route's earliest shipment that carries one. Returns None when neither
    path leads to an allocation.
    """
    if route.allocation_id is not None:
        return route.allocation_id
    return (
        route.logistics.filter(allocation__isnull=False)
        .order_by("logistic_id")
        .values_list("allocation_id", flat=True)
        .first()
    )


def route_allocation_ids(route: DeliveryRoute) -> List[int]:
    """Every allocation a route carries, the one ``resolve_allocation_id`` picks first."""
    primary = resolve_allocation_id(route)
    allocation_ids = [primary] if primary is not None else []
    carried = (
        route.logistics.filter(allocation__isnull=False)
        .order_by("logistic_id")
        .values_list("allocation_id", flat=True)
    )
    for allocation_id in carried:
        if allocation_id not in allocation_ids:
            allocation_ids.append(allocation_id)
    return allocation_ids


@transaction.atomic
def start_transit(delivery_route_id: int, actor_id: str) -> Dict[str, Any]:
    """Scheduled -> In Transit, mirrored onto shipments and the allocations they carry."""
    route = lock_route(delivery_route_id)
    validate_transition(ROUTE_TRANSITIONS, route.status, "In Transit", "delivery route")

    now = timezone.now()
    route.status = "In Transit"
    route.actual_departure_date = now
    route.update_by_id = actor_id
    route.save(update_fields=["status", "actual_departure_date", "update_by_id", "update_dtime"])

    route.logistics.exclude(status__in=rules.ROUTE_TERMINAL_STATUSES).update(
        status="In Transit", update_by_id=actor_id, update_dtime=now
    )

    allocation_ids = route_allocation_ids(route)
    if allocation_ids:
        Allocation.objects.filter(
            allocation_id__in=allocation_ids, status__in=("Pending", "Approved")
        ).update(status="In Transit", update_by_id=actor_id, update_dtime=now)

    audit.record(
        "DELIVERY_ROUTE",
        route.delivery_route_id,
        "in_transit",
        actor_id,
        old_value={"status": "Scheduled"},
        new_value={"status": "In Transit"},
    )
    logger.info(
        "delivery_route.in_transit route_id=%s allocation_ids=%s actor=%s",
        route.delivery_route_id,
        allocation_ids,
        actor_id,
    )
    return serialize_route(route)


@transaction.atomic
def cancel_delivery_route(delivery_route_id: int, actor_id: str, reason: str) -> Dict[str, Any]:
    """Cancel the route only; shipments and the allocation are left as they are."""
    if not reason or not str(reason).strip():
        raise ValidationError({"reason": "Reason is required."})

    route = lock_route(delivery_route_id)
    old_status = route.status
    validate_transition(ROUTE_TRANSITIONS, old_status, "Cancelled", "delivery route")

    route.status = "Cancelled"
    route.update_by_id = actor_id
    existing = route.notes_text or ""
    route.notes_text = f"{existing}\n[Cancelled] {reason}".strip()
    route.save(update_fields=["status", "notes_text", "update_by_id", "update_dtime"])

    audit.record(
        "DELIVERY_ROUTE",
        route.delivery_route_id,
        "cancelled",
        actor_id,
        old_value={"status": old_status},
        new_value={"status": "Cancelled"},
        notes=str(reason).strip(),
    )
    logger.info(
        "delivery_route.cancelled route_id=%s actor=%s reason=%s",
        route.delivery_route_id,
        actor_id,
        reason,
    )
    return serialize_route(route)


@transaction.atomic
def record_location_update(
    logistic_id: int,
    latitude: Any,
    longitude: Any,
    actor_id: str,
    timestamp: Any = None,
) -> Dict[str, Any]:
    """Append a GPS fix to a shipment's location log."""
    errors: Dict[str, str] = {}
    lat = _parse_coordinate(latitude, "latitude", 90, errors)
    lng = _parse_coordinate(longitude, "longitude", 180, errors)
    recorded_at = parse_optional_datetime(timestamp, "timestamp", errors)
    if errors:
        raise ValidationError(errors)

    try:
        logistic = Logistic.objects.select_for_update().get(logistic_id=logistic_id)
    except Logistic.DoesNotExist:
        raise NotFoundError("Logistic not found.", field="logistic_id")
    if logistic.status in rules.ROUTE_TERMINAL_STATUSES:
        raise ConflictError(
            f"Shipment is closed. Current status: {logistic.status}",
            code="invalid_transition",
        )

    recorded_at = recorded_at or timezone.now()
    updates: List[Dict[str, Any]] = list(logistic.location_updates or [])
    updates.append(
        {"latitude": lat, "longitude": lng, "timestamp": recorded_at.isoformat()}
    )
    logistic.location_updates = updates
    logistic.last_location_update = recorded_at
    logistic.update_by_id = actor_id
    logistic.save(
        update_fields=["location_updates", "last_location_update", "update_by_id", "update_dtime"]
    )

    logger.info(
        "logistic.location_update logistic_id=%s actor=%s points=%d",
        logistic.logistic_id,
        actor_id,
        len(updates),
    )
    return serialize_logistic(logistic)


def _parse_coordinate(value: Any, field_name: str, bound: int, errors: Dict[str, str]) -> Optional[float]:
    if isinstance(value, bool):
        errors[field_name] = "Must be a number."
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        errors[field_name] = "Must be a number."
        return None
    if not -bound <= parsed <= bound:
        errors[field_name] = f"Must be between -{bound} and {bound}."
        return None
    return parsed
