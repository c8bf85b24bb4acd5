"""
Row-level visibility of fulfillment entities per actor.

Each (role, entity kind) pair maps to a function producing a ``Q`` predicate
over that entity's model. Roles are tried in precedence order and the first
role with a rule for the kind wins; actors with no matching role get the
default rule for the kind. Missing or anonymous actors see nothing.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional, Tuple

from django.db.models import Model, Q, QuerySet

from fulfillment.exceptions import NotFoundError
from fulfillment.models import (
    AidRequest,
    Allocation,
    Contribution,
    DeliveryRoute,
    Donation,
    Logistic,
    Warehouse,
)

REQUEST = "request"
CONTRIBUTION = "contribution"
DONATION = "donation"
ALLOCATION = "allocation"
DELIVERY_ROUTE = "delivery_route"
LOGISTIC = "logistic"
WAREHOUSE = "warehouse"

ENTITY_MODELS: Dict[str, type[Model]] = {
    REQUEST: AidRequest,
    CONTRIBUTION: Contribution,
    DONATION: Donation,
    ALLOCATION: Allocation,
    DELIVERY_ROUTE: DeliveryRoute,
    LOGISTIC: Logistic,
    WAREHOUSE: Warehouse,
}

ROLE_PRECEDENCE = ("admin", "auditor", "supplier", "requestor", "recipient", "distributor")

ScopeRule = Callable[[str], Q]


def no_rows() -> Q:
    return Q(pk__in=[])


def _all_rows(_user_id: str) -> Q:
    return Q()


def _none(_user_id: str) -> Q:
    return no_rows()


# -- supplier: reachable from donations (and contributions) they own -----------

def _supplier_requests(user_id: str) -> Q:
    return (
        Q(targeted_donations__supplier_id=user_id)
        | Q(allocations__donation__supplier_id=user_id)
        | Q(contributions__supplier_id=user_id)
        | Q(status="approved", funding_status__in=["unfunded", "partially_funded"])
    )


def _supplier_routes(user_id: str) -> Q:
    return (
        Q(allocation__donation__supplier_id=user_id)
        | Q(logistics__allocation__donation__supplier_id=user_id)
        | Q(driver_id=user_id)
    )


def _supplier_logistics(user_id: str) -> Q:
    return (
        Q(allocation__donation__supplier_id=user_id)
        | Q(delivery_route__allocation__donation__supplier_id=user_id)
        | Q(delivery_route__driver_id=user_id)
    )


# -- requestor / recipient: reachable from requests they own -------------------

def _recipient_donations(user_id: str) -> Q:
    return Q(aid_request__recipient_id=user_id) | Q(allocations__request__recipient_id=user_id)


def _recipient_routes(user_id: str) -> Q:
    return (
        Q(allocation__request__recipient_id=user_id)
        | Q(logistics__allocation__request__recipient_id=user_id)
    )


def _recipient_logistics(user_id: str) -> Q:
    return (
        Q(allocation__request__recipient_id=user_id)
        | Q(delivery_route__allocation__request__recipient_id=user_id)
    )


_RECIPIENT_RULES: Dict[str, ScopeRule] = {
    REQUEST: lambda uid: Q(recipient_id=uid),
    CONTRIBUTION: lambda uid: Q(request__recipient_id=uid),
    DONATION: _recipient_donations,
    ALLOCATION: lambda uid: Q(request__recipient_id=uid),
    DELIVERY_ROUTE: _recipient_routes,
    LOGISTIC: _recipient_logistics,
}

SCOPE_RULES: Dict[Tuple[str, str], ScopeRule] = {
    **{("admin", kind): _all_rows for kind in ENTITY_MODELS},
    **{("auditor", kind): _all_rows for kind in ENTITY_MODELS},
    ("supplier", REQUEST): _supplier_requests,
    ("supplier", CONTRIBUTION): lambda uid: Q(supplier_id=uid),
    ("supplier", DONATION): lambda uid: Q(supplier_id=uid),
    ("supplier", ALLOCATION): lambda uid: Q(donation__supplier_id=uid),
    ("supplier", DELIVERY_ROUTE): _supplier_routes,
    ("supplier", LOGISTIC): _supplier_logistics,
    **{("requestor", kind): rule for kind, rule in _RECIPIENT_RULES.items()},
    **{("recipient", kind): rule for kind, rule in _RECIPIENT_RULES.items()},
    ("distributor", DELIVERY_ROUTE): _all_rows,
    ("distributor", LOGISTIC): _all_rows,
}

# Drivers and any other authenticated role.
DEFAULT_RULES: Dict[str, ScopeRule] = {
    REQUEST: _none,
    CONTRIBUTION: _none,
    DONATION: _none,
    ALLOCATION: lambda uid: Q(allocated_by=uid),
    DELIVERY_ROUTE: lambda uid: Q(driver_id=uid),
    LOGISTIC: lambda uid: Q(delivery_route__driver_id=uid),
    WAREHOUSE: _all_rows,
}


def _normalized_roles(actor) -> set[str]:
    return {str(role).strip().lower() for role in (getattr(actor, "roles", None) or [])}


def scope_for(actor, entity_kind: str) -> Q:
    """Return the visibility predicate for ``actor`` over ``entity_kind``."""
    if entity_kind not in ENTITY_MODELS:
        raise ValueError(f"unknown entity kind: {entity_kind!r}")
    if actor is None or not getattr(actor, "is_authenticated", False):
        return no_rows()
    user_id: Optional[str] = getattr(actor, "user_id", None)
    if not user_id:
        return no_rows()

    roles = _normalized_roles(actor)
    for role in ROLE_PRECEDENCE:
        if role in roles:
            rule = SCOPE_RULES.get((role, entity_kind))
            if rule is not None:
                return rule(str(user_id))
    return DEFAULT_RULES[entity_kind](str(user_id))


def scoped_queryset(actor, entity_kind: str, queryset: QuerySet | None = None) -> QuerySet:
    if queryset is None:
        queryset = ENTITY_MODELS[entity_kind].objects.all()
    predicate = scope_for(actor, entity_kind)
    if not predicate:
        return queryset
    return queryset.filter(predicate).distinct()


def get_visible(actor, entity_kind: str, pk: int, queryset: QuerySet | None = None):
    """Single-record read through the same scope as list reads."""
    try:
        return scoped_queryset(actor, entity_kind, queryset).get(pk=pk)
    except ENTITY_MODELS[entity_kind].DoesNotExist:
        raise NotFoundError(field=f"{entity_kind}_id")
