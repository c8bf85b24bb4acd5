from __future__ import annotations

from typing import Iterable, Tuple

from api.authentication import Principal

PERM_URGENCY_PREVIEW = "fulfillment.urgency.preview"

PERM_REQUEST_CREATE = "fulfillment.request.create"
PERM_REQUEST_VIEW = "fulfillment.request.view"
PERM_REQUEST_EDIT = "fulfillment.request.edit"
PERM_REQUEST_APPROVE = "fulfillment.request.approve"
PERM_REQUEST_OVERRIDE_URGENCY = "fulfillment.request.override_urgency"
PERM_REQUEST_CANCEL = "fulfillment.request.cancel"
PERM_REQUEST_COMPLETE = "fulfillment.request.complete"
PERM_REQUEST_REVIEW_FLAGGED = "fulfillment.request.review_flagged"

PERM_CONTRIBUTION_VIEW = "fulfillment.contribution.view"
PERM_CONTRIBUTION_COMMIT = "fulfillment.contribution.commit"
PERM_CONTRIBUTION_CONFIRM = "fulfillment.contribution.confirm"

PERM_DONATION_VIEW = "fulfillment.donation.view"
PERM_DONATION_CREATE = "fulfillment.donation.create"
PERM_DONATION_VERIFY = "fulfillment.donation.verify"
PERM_DONATION_MANAGE = "fulfillment.donation.manage"

PERM_ALLOCATION_VIEW = "fulfillment.allocation.view"
PERM_ALLOCATION_CREATE = "fulfillment.allocation.create"

PERM_DELIVERY_VIEW = "fulfillment.delivery.view"
PERM_DELIVERY_SCHEDULE = "fulfillment.delivery.schedule"
PERM_DELIVERY_UPDATE = "fulfillment.delivery.update"
PERM_DELIVERY_CANCEL = "fulfillment.delivery.cancel"

PERM_WAREHOUSE_VIEW = "fulfillment.warehouse.view"

_READ_PERMISSIONS = {
    PERM_URGENCY_PREVIEW,
    PERM_REQUEST_VIEW,
    PERM_CONTRIBUTION_VIEW,
    PERM_DONATION_VIEW,
    PERM_ALLOCATION_VIEW,
    PERM_DELIVERY_VIEW,
    PERM_WAREHOUSE_VIEW,
}

ROLE_PERMISSION_MAP = {
    "ADMIN": _READ_PERMISSIONS
    | {
        PERM_REQUEST_CREATE,
        PERM_REQUEST_EDIT,
        PERM_REQUEST_APPROVE,
        PERM_REQUEST_OVERRIDE_URGENCY,
        PERM_REQUEST_CANCEL,
        PERM_REQUEST_COMPLETE,
        PERM_REQUEST_REVIEW_FLAGGED,
        PERM_CONTRIBUTION_CONFIRM,
        PERM_DONATION_VERIFY,
        PERM_DONATION_MANAGE,
        PERM_ALLOCATION_CREATE,
        PERM_DELIVERY_SCHEDULE,
        PERM_DELIVERY_UPDATE,
        PERM_DELIVERY_CANCEL,
    },
    "AUDITOR": _READ_PERMISSIONS | {PERM_REQUEST_APPROVE, PERM_DONATION_VERIFY},
    "SUPPLIER": _READ_PERMISSIONS
    | {
        PERM_CONTRIBUTION_COMMIT,
        PERM_CONTRIBUTION_CONFIRM,
        PERM_DONATION_CREATE,
        PERM_REQUEST_COMPLETE,
    },
    "REQUESTOR": _READ_PERMISSIONS
    | {PERM_REQUEST_CREATE, PERM_REQUEST_EDIT, PERM_REQUEST_CANCEL},
    "RECIPIENT": _READ_PERMISSIONS
    | {PERM_REQUEST_CREATE, PERM_REQUEST_EDIT, PERM_REQUEST_CANCEL},
    "DISTRIBUTOR": {
        PERM_URGENCY_PREVIEW,
        PERM_DELIVERY_VIEW,
        PERM_DELIVERY_SCHEDULE,
        PERM_DELIVERY_UPDATE,
        PERM_DELIVERY_CANCEL,
        PERM_ALLOCATION_VIEW,
        PERM_WAREHOUSE_VIEW,
    },
    "DRIVER": {
        PERM_DELIVERY_VIEW,
        PERM_DELIVERY_UPDATE,
        PERM_WAREHOUSE_VIEW,
    },
}


def _dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def resolve_roles_and_permissions(
    request, principal: Principal
) -> Tuple[list[str], list[str]]:
    """Roles come from the token; permissions are token grants plus role defaults."""
    if hasattr(request, "_rbac_cache"):
        cached = request._rbac_cache
        return cached["roles"], cached["permissions"]

    roles: list[str] = _dedupe_preserve_order(principal.roles or [])
    permissions: list[str] = list(getattr(principal, "permissions", []) or [])
    permissions = _dedupe_preserve_order(
        permissions + sorted(_permissions_for_roles(roles))
    )

    request._rbac_cache = {"roles": roles, "permissions": permissions}
    return roles, permissions


def _permissions_for_roles(roles: Iterable[str]) -> set[str]:
    permissions: set[str] = set()
    for role in roles:
        permissions |= ROLE_PERMISSION_MAP.get(str(role).strip().upper(), set())
    return permissions

