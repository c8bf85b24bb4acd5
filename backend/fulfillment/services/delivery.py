"""
Delivery completion cascade.

Completing a route marks, in one transaction, the route, its shipments, every
allocation the route carries and each allocation's donation as Delivered.
Targets that cannot be resolved are skipped and logged; terminal states are
never overwritten. A storage failure rolls the whole cascade back.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from fulfillment import rules
from fulfillment.exceptions import TransientStoreError
from fulfillment.models import Allocation, DeliveryRoute, Donation
from fulfillment.services import audit
from fulfillment.services.allocation import (
    ROUTE_TRANSITIONS,
    lock_route,
    route_allocation_ids,
    serialize_route,
    validate_transition,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("aidlink.audit")


def complete_delivery(delivery_route_id: int, actor_id: Optional[str] = None) -> Dict[str, Any]:
    try:
        return _complete_delivery(delivery_route_id, actor_id)
    except DatabaseError as exc:
        logger.error(
            "delivery.completion_failed route_id=%s error=%s",
            delivery_route_id,
            exc,
        )
        raise TransientStoreError() from exc


def _deliver_donation(
    route: DeliveryRoute, donation_id: int, actor: str, actor_id: Optional[str]
) -> Optional[Donation]:
    donation = Donation.objects.select_for_update().filter(donation_id=donation_id).first()
    if donation is None:
        logger.warning(
            "delivery.donation_missing route_id=%s donation_id=%s",
            route.delivery_route_id,
            donation_id,
        )
        return None
    if donation.status == "Rejected":
        logger.warning(
            "delivery.donation_rejected route_id=%s donation_id=%s",
            route.delivery_route_id,
            donation.donation_id,
        )
    elif donation.status != "Delivered":
        old_status = donation.status
        donation.status = "Delivered"
        donation.update_by_id = actor
        donation.save(update_fields=["status", "update_by_id", "update_dtime"])
        audit.record(
            "DONATION",
            donation.donation_id,
            "delivered",
            actor_id,
            old_value={"status": old_status},
            new_value={"status": "Delivered"},
        )
    return donation


def _deliver_allocation(
    route: DeliveryRoute,
    allocation_id: int,
    today: date,
    actor: str,
    actor_id: Optional[str],
) -> Optional[Dict[str, Any]]:
    allocation = Allocation.objects.select_for_update().filter(allocation_id=allocation_id).first()
    if allocation is None:
        logger.warning(
            "delivery.allocation_missing route_id=%s allocation_id=%s",
            route.delivery_route_id,
            allocation_id,
        )
        return None

    if allocation.status == "Cancelled":
        logger.warning(
            "delivery.allocation_cancelled route_id=%s allocation_id=%s",
            route.delivery_route_id,
            allocation.allocation_id,
        )
    elif allocation.status != "Delivered":
        old_status = allocation.status
        allocation.status = "Delivered"
        allocation.actual_delivery_date = today
        allocation.update_by_id = actor
        allocation.save(
            update_fields=["status", "actual_delivery_date", "update_by_id", "update_dtime"]
        )
        audit.record(
            "ALLOCATION",
            allocation.allocation_id,
            "delivered",
            actor_id,
            old_value={"status": old_status},
            new_value={"status": "Delivered"},
        )

    donation = _deliver_donation(route, allocation.donation_id, actor, actor_id)
    return {
        "allocation_id": allocation.allocation_id,
        "allocation_status": allocation.status,
        "donation_id": donation.donation_id if donation else None,
        "donation_status": donation.status if donation else None,
    }


@transaction.atomic
def _complete_delivery(delivery_route_id: int, actor_id: Optional[str]) -> Dict[str, Any]:
    route = lock_route(delivery_route_id)
    old_status = route.status
    validate_transition(ROUTE_TRANSITIONS, old_status, "Delivered", "delivery route")

    now = timezone.now()
    today = timezone.localdate()
    actor = actor_id or route.update_by_id

    route.status = "Delivered"
    route.actual_arrival_date = now
    route.update_by_id = actor
    route.save(update_fields=["status", "actual_arrival_date", "update_by_id", "update_dtime"])
    audit.record(
        "DELIVERY_ROUTE",
        route.delivery_route_id,
        "delivered",
        actor_id,
        old_value={"status": old_status},
        new_value={"status": "Delivered"},
    )

    logistics_updated = route.logistics.exclude(
        status__in=rules.ROUTE_TERMINAL_STATUSES
    ).update(status="Delivered", update_by_id=actor, update_dtime=now)

    allocation_ids = route_allocation_ids(route)
    if not allocation_ids:
        logger.warning(
            "delivery.no_allocation route_id=%s; allocation and donation left unchanged",
            route.delivery_route_id,
        )

    delivered = []
    for allocation_id in allocation_ids:
        outcome = _deliver_allocation(route, allocation_id, today, actor, actor_id)
        if outcome is not None:
            delivered.append(outcome)

    # The first entry is the allocation the route itself resolves to.
    primary = delivered[0] if delivered else {}
    result: Dict[str, Any] = {
        "logistics_updated": logistics_updated,
        "allocation_id": primary.get("allocation_id"),
        "allocation_status": primary.get("allocation_status"),
        "donation_id": primary.get("donation_id"),
        "donation_status": primary.get("donation_status"),
        "allocations": delivered,
    }

    audit_logger.info(
        "delivery.completed route_id=%s logistics=%d allocation_ids=%s actor=%s",
        route.delivery_route_id,
        logistics_updated,
        [item["allocation_id"] for item in delivered],
        actor_id,
    )
    result["delivery_route"] = serialize_route(route)
    return result
