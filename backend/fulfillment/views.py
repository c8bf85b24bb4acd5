from typing import Any, Dict

from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from api.authentication import BearerTokenAuthentication
from api.permissions import FulfillmentPermission
from api.rbac import (
    PERM_ALLOCATION_CREATE,
    PERM_ALLOCATION_VIEW,
    PERM_CONTRIBUTION_COMMIT,
    PERM_CONTRIBUTION_CONFIRM,
    PERM_CONTRIBUTION_VIEW,
    PERM_DELIVERY_CANCEL,
    PERM_DELIVERY_SCHEDULE,
    PERM_DELIVERY_UPDATE,
    PERM_DELIVERY_VIEW,
    PERM_DONATION_CREATE,
    PERM_DONATION_MANAGE,
    PERM_DONATION_VERIFY,
    PERM_DONATION_VIEW,
    PERM_REQUEST_APPROVE,
    PERM_REQUEST_CANCEL,
    PERM_REQUEST_COMPLETE,
    PERM_REQUEST_CREATE,
    PERM_REQUEST_EDIT,
    PERM_REQUEST_OVERRIDE_URGENCY,
    PERM_REQUEST_REVIEW_FLAGGED,
    PERM_REQUEST_VIEW,
    PERM_URGENCY_PREVIEW,
    PERM_WAREHOUSE_VIEW,
    resolve_roles_and_permissions,
)
from fulfillment.exceptions import FulfillmentError
from fulfillment.models import Warehouse
from fulfillment.services import access_scope
from fulfillment.services import aid_requests as request_service
from fulfillment.services import allocation as allocation_service
from fulfillment.services import audit, contributions, delivery, donations, urgency
from fulfillment.validators import parse_int


_TRUTHY = {"1", "true", "yes"}


def _actor_id(request) -> str | None:
    return getattr(request.user, "user_id", None)


def _error_response(exc: FulfillmentError) -> Response:
    return Response(exc.as_payload(), status=exc.status_code)


def _can_override_urgency(request) -> bool:
    _, permissions = resolve_roles_and_permissions(request, request.user)
    return PERM_REQUEST_OVERRIDE_URGENCY in permissions


def _payload(request) -> Dict[str, Any]:
    return request.data if isinstance(request.data, dict) else {}


def _serialize_warehouse(warehouse: Warehouse) -> Dict[str, Any]:
    return {
        "warehouse_id": warehouse.warehouse_id,
        "name": warehouse.name,
        "city": warehouse.city,
        "region": warehouse.region,
        "capacity": str(warehouse.capacity) if warehouse.capacity is not None else None,
        "capacity_unit": warehouse.capacity_unit,
        "current_occupancy": str(warehouse.current_occupancy),
        "occupancy_percentage": warehouse.occupancy_percentage,
        "status_code": warehouse.status_code,
    }


# ── Urgency ─────────────────────────────────────────────────────────────────


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def urgency_preview(request):
    """Score a factor set without persisting anything."""
    return Response(urgency.score_urgency(_payload(request)))


# ── Requests ────────────────────────────────────────────────────────────────


@api_view(["GET", "POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def request_collection(request):
    if request.method == "POST":
        try:
            record = request_service.create_request(
                _payload(request),
                _actor_id(request),
                allow_override=_can_override_urgency(request),
            )
        except FulfillmentError as exc:
            return _error_response(exc)
        return Response(record, status=201)

    queryset = access_scope.scoped_queryset(request.user, access_scope.REQUEST)
    status_filter = request.query_params.get("status")
    if status_filter:
        queryset = queryset.filter(status=status_filter)
    aid_type = request.query_params.get("aid_type")
    if aid_type:
        queryset = queryset.filter(aid_type=aid_type)
    level = request.query_params.get("urgency_level")
    if level:
        queryset = queryset.filter(urgency_level=level)
    if str(request.query_params.get("flagged", "")).lower() in _TRUTHY:
        queryset = queryset.filter(is_flagged_for_review=True)

    queryset = queryset.order_by("-urgency_score", "-create_dtime")
    return Response({"requests": [request_service.serialize_request(r) for r in queryset]})


@api_view(["GET", "PATCH"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def request_detail(request, request_id: int):
    try:
        req = access_scope.get_visible(request.user, access_scope.REQUEST, request_id)
        if request.method == "PATCH":
            record = request_service.update_request(
                req.request_id,
                _payload(request),
                _actor_id(request),
                allow_override=_can_override_urgency(request),
            )
            return Response(record)
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(request_service.serialize_request(req))


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def request_approve(request, request_id: int):
    try:
        record = request_service.approve_request(
            request_id, _actor_id(request), _payload(request).get("notes") or ""
        )
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record)


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def request_cancel(request, request_id: int):
    try:
        access_scope.get_visible(request.user, access_scope.REQUEST, request_id)
        record = request_service.cancel_request(
            request_id, _actor_id(request), _payload(request).get("reason")
        )
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record)


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def request_complete(request, request_id: int):
    try:
        access_scope.get_visible(request.user, access_scope.REQUEST, request_id)
        record = request_service.complete_request(request_id, _actor_id(request))
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record)


@api_view(["GET"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def request_history(request, request_id: int):
    try:
        access_scope.get_visible(request.user, access_scope.REQUEST, request_id)
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response({"history": audit.history("AID_REQUEST", request_id)})


@api_view(["GET", "POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def request_funding(request, request_id: int):
    """GET the funding summary; POST commits (or pledges) the caller's share."""
    try:
        access_scope.get_visible(request.user, access_scope.REQUEST, request_id)
        if request.method == "POST":
            payload = _payload(request)
            if str(payload.get("status", "committed")).lower() == "pending":
                result = contributions.pledge_contribution(
                    request_id,
                    _actor_id(request),
                    payload.get("percentage"),
                    payload.get("amount_value"),
                )
            else:
                result = contributions.commit_contribution(
                    request_id,
                    _actor_id(request),
                    payload.get("percentage"),
                    payload.get("amount_value"),
                )
            return Response(result, status=201)
        summary = contributions.get_funding_summary(request_id)
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(summary)


@api_view(["GET"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def marketplace(request):
    queryset = access_scope.scoped_queryset(request.user, access_scope.REQUEST)
    return Response({"requests": contributions.list_fundable_requests(queryset)})


@api_view(["GET", "POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def flagged_review(request):
    if request.method == "POST":
        payload = _payload(request)
        try:
            result = request_service.review_flagged_requests(
                payload.get("request_ids"), payload.get("action"), _actor_id(request)
            )
        except FulfillmentError as exc:
            return _error_response(exc)
        return Response(result)

    errors: Dict[str, str] = {}
    days = None
    if request.query_params.get("days") not in (None, ""):
        days = parse_int(request.query_params.get("days"), "days", errors, minimum=0)
    if errors:
        return Response({"errors": errors}, status=400)
    return Response({"requests": request_service.list_flagged_requests(days=days)})


# ── Contributions ───────────────────────────────────────────────────────────


@api_view(["GET"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def contribution_list(request):
    queryset = access_scope.scoped_queryset(request.user, access_scope.CONTRIBUTION)
    request_id = request.query_params.get("request_id")
    if request_id:
        errors: Dict[str, str] = {}
        parsed = parse_int(request_id, "request_id", errors, minimum=1)
        if errors:
            return Response({"errors": errors}, status=400)
        queryset = queryset.filter(request_id=parsed)
    return Response({"contributions": contributions.list_contributions(queryset)})


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def contribution_confirm(request, contribution_id: int):
    try:
        access_scope.get_visible(request.user, access_scope.CONTRIBUTION, contribution_id)
        result = contributions.confirm_contribution(contribution_id, _actor_id(request))
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(result)


# ── Donations ───────────────────────────────────────────────────────────────


@api_view(["GET", "POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def donation_collection(request):
    if request.method == "POST":
        try:
            record = donations.create_donation(_payload(request), _actor_id(request))
        except FulfillmentError as exc:
            return _error_response(exc)
        return Response(record, status=201)

    queryset = access_scope.scoped_queryset(request.user, access_scope.DONATION)
    status_filter = request.query_params.get("status")
    if status_filter:
        queryset = queryset.filter(status=status_filter)
    queryset = queryset.order_by("-create_dtime")
    return Response({"donations": [donations.serialize_donation(d) for d in queryset]})


@api_view(["GET"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def donation_detail(request, donation_id: int):
    try:
        donation = access_scope.get_visible(request.user, access_scope.DONATION, donation_id)
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(donations.serialize_donation(donation))


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def donation_verify(request, donation_id: int):
    payload = _payload(request)
    try:
        record = donations.lock_price(
            donation_id,
            payload.get("audited_price"),
            _actor_id(request),
            payload.get("notes") or "",
        )
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record)


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def donation_reject(request, donation_id: int):
    try:
        record = donations.reject_donation(
            donation_id, _actor_id(request), _payload(request).get("reason")
        )
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record)


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def donation_assign_warehouse(request, donation_id: int):
    try:
        record = donations.assign_warehouse(
            donation_id, _payload(request).get("warehouse_id"), _actor_id(request)
        )
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record)


# ── Allocations and delivery ────────────────────────────────────────────────


@api_view(["GET", "POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def allocation_collection(request):
    if request.method == "POST":
        payload = _payload(request)
        errors: Dict[str, str] = {}
        request_id = parse_int(payload.get("request_id"), "request_id", errors, minimum=1)
        donation_id = parse_int(payload.get("donation_id"), "donation_id", errors, minimum=1)
        if errors:
            return Response({"errors": errors}, status=400)
        try:
            record = allocation_service.allocate(
                request_id,
                donation_id,
                payload.get("quantity"),
                _actor_id(request),
                expected_delivery_date=payload.get("expected_delivery_date"),
                notes=payload.get("notes") or "",
            )
        except FulfillmentError as exc:
            return _error_response(exc)
        return Response(record, status=201)

    queryset = access_scope.scoped_queryset(request.user, access_scope.ALLOCATION)
    status_filter = request.query_params.get("status")
    if status_filter:
        queryset = queryset.filter(status=status_filter)
    queryset = queryset.order_by("-allocated_date")
    return Response(
        {"allocations": [allocation_service.serialize_allocation(a) for a in queryset]}
    )


@api_view(["GET"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def allocation_detail(request, allocation_id: int):
    try:
        allocation = access_scope.get_visible(
            request.user, access_scope.ALLOCATION, allocation_id
        )
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(allocation_service.serialize_allocation(allocation))


@api_view(["GET", "POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def route_collection(request):
    if request.method == "POST":
        payload = _payload(request)
        errors: Dict[str, str] = {}
        allocation_id = parse_int(payload.get("allocation_id"), "allocation_id", errors, minimum=1)
        if errors:
            return Response({"errors": errors}, status=400)
        try:
            record = allocation_service.create_delivery_route(
                allocation_id, payload.get("warehouse_id"), payload, _actor_id(request)
            )
        except FulfillmentError as exc:
            return _error_response(exc)
        return Response(record, status=201)

    queryset = access_scope.scoped_queryset(request.user, access_scope.DELIVERY_ROUTE)
    status_filter = request.query_params.get("status")
    if status_filter:
        queryset = queryset.filter(status=status_filter)
    queryset = queryset.order_by("-create_dtime")
    return Response(
        {
            "routes": [
                allocation_service.serialize_route(route, include_logistics=False)
                for route in queryset
            ]
        }
    )


@api_view(["GET"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def route_detail(request, route_id: int):
    try:
        route = access_scope.get_visible(request.user, access_scope.DELIVERY_ROUTE, route_id)
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(allocation_service.serialize_route(route))


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def route_start(request, route_id: int):
    try:
        access_scope.get_visible(request.user, access_scope.DELIVERY_ROUTE, route_id)
        record = allocation_service.start_transit(route_id, _actor_id(request))
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record)


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def route_complete(request, route_id: int):
    try:
        access_scope.get_visible(request.user, access_scope.DELIVERY_ROUTE, route_id)
        result = delivery.complete_delivery(route_id, _actor_id(request))
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(result)


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def route_cancel(request, route_id: int):
    try:
        access_scope.get_visible(request.user, access_scope.DELIVERY_ROUTE, route_id)
        record = allocation_service.cancel_delivery_route(
            route_id, _actor_id(request), _payload(request).get("reason")
        )
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record)


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def route_add_logistic(request, route_id: int):
    payload = _payload(request)
    errors: Dict[str, str] = {}
    allocation_id = parse_int(payload.get("allocation_id"), "allocation_id", errors, minimum=1)
    if errors:
        return Response({"errors": errors}, status=400)
    try:
        access_scope.get_visible(request.user, access_scope.DELIVERY_ROUTE, route_id)
        record = allocation_service.add_logistic(
            route_id,
            allocation_id,
            _actor_id(request),
            estimated_value=payload.get("estimated_value"),
        )
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record, status=201)


@api_view(["GET"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def logistic_list(request):
    queryset = access_scope.scoped_queryset(request.user, access_scope.LOGISTIC)
    tracking_number = request.query_params.get("tracking_number")
    if tracking_number:
        queryset = queryset.filter(tracking_number=tracking_number)
    queryset = queryset.order_by("-create_dtime")
    return Response({"logistics": [allocation_service.serialize_logistic(item) for item in queryset]})


@api_view(["POST"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def logistic_location(request, logistic_id: int):
    payload = _payload(request)
    try:
        access_scope.get_visible(request.user, access_scope.LOGISTIC, logistic_id)
        record = allocation_service.record_location_update(
            logistic_id,
            payload.get("latitude"),
            payload.get("longitude"),
            _actor_id(request),
            timestamp=payload.get("timestamp"),
        )
    except FulfillmentError as exc:
        return _error_response(exc)
    return Response(record)


@api_view(["GET"])
@authentication_classes([BearerTokenAuthentication])
@permission_classes([FulfillmentPermission])
def warehouse_list(request):
    queryset = access_scope.scoped_queryset(request.user, access_scope.WAREHOUSE)
    queryset = queryset.filter(status_code="A").order_by("name")
    return Response({"warehouses": [_serialize_warehouse(w) for w in queryset]})


urgency_preview.required_permission = PERM_URGENCY_PREVIEW
request_collection.required_permission = {"GET": PERM_REQUEST_VIEW, "POST": PERM_REQUEST_CREATE}
request_detail.required_permission = {"GET": PERM_REQUEST_VIEW, "PATCH": PERM_REQUEST_EDIT}
request_approve.required_permission = PERM_REQUEST_APPROVE
request_cancel.required_permission = PERM_REQUEST_CANCEL
request_complete.required_permission = PERM_REQUEST_COMPLETE
request_history.required_permission = PERM_REQUEST_VIEW
request_funding.required_permission = {
    "GET": PERM_CONTRIBUTION_VIEW,
    "POST": PERM_CONTRIBUTION_COMMIT,
}
marketplace.required_permission = PERM_CONTRIBUTION_COMMIT
flagged_review.required_permission = PERM_REQUEST_REVIEW_FLAGGED
contribution_list.required_permission = PERM_CONTRIBUTION_VIEW
contribution_confirm.required_permission = PERM_CONTRIBUTION_CONFIRM
donation_collection.required_permission = {
    "GET": PERM_DONATION_VIEW,
    "POST": PERM_DONATION_CREATE,
}
donation_detail.required_permission = PERM_DONATION_VIEW
donation_verify.required_permission = PERM_DONATION_VERIFY
donation_reject.required_permission = PERM_DONATION_MANAGE
donation_assign_warehouse.required_permission = PERM_DONATION_MANAGE
allocation_collection.required_permission = {
    "GET": PERM_ALLOCATION_VIEW,
    "POST": PERM_ALLOCATION_CREATE,
}
allocation_detail.required_permission = PERM_ALLOCATION_VIEW
route_collection.required_permission = {
    "GET": PERM_DELIVERY_VIEW,
    "POST": PERM_DELIVERY_SCHEDULE,
}
route_detail.required_permission = PERM_DELIVERY_VIEW
route_start.required_permission = PERM_DELIVERY_UPDATE
route_complete.required_permission = PERM_DELIVERY_UPDATE
route_cancel.required_permission = PERM_DELIVERY_CANCEL
route_add_logistic.required_permission = PERM_DELIVERY_SCHEDULE
logistic_list.required_permission = PERM_DELIVERY_VIEW
logistic_location.required_permission = PERM_DELIVERY_UPDATE
warehouse_list.required_permission = PERM_WAREHOUSE_VIEW

for view_func in (
    urgency_preview,
    request_collection,
    request_detail,
    request_approve,
    request_cancel,
    request_complete,
    request_history,
    request_funding,
    marketplace,
    flagged_review,
    contribution_list,
    contribution_confirm,
    donation_collection,
    donation_detail,
    donation_verify,
    donation_reject,
    donation_assign_warehouse,
    allocation_collection,
    allocation_detail,
    route_collection,
    route_detail,
    route_start,
    route_complete,
    route_cancel,
    route_add_logistic,
    logistic_list,
    logistic_location,
    warehouse_list,
):
    if hasattr(view_func, "cls"):
        view_func.cls.required_permission = view_func.required_permission
