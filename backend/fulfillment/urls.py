from django.urls import path

from fulfillment import views

urlpatterns = [
    path("urgency/preview", views.urgency_preview, name="urgency_preview"),
    path("requests", views.request_collection, name="request_collection"),
    path("requests/flagged", views.flagged_review, name="flagged_review"),
    path("requests/<int:request_id>", views.request_detail, name="request_detail"),
    path("requests/<int:request_id>/approve", views.request_approve, name="request_approve"),
    path("requests/<int:request_id>/cancel", views.request_cancel, name="request_cancel"),
    path("requests/<int:request_id>/complete", views.request_complete, name="request_complete"),
    path("requests/<int:request_id>/history", views.request_history, name="request_history"),
    path("requests/<int:request_id>/funding", views.request_funding, name="request_funding"),
    path("marketplace", views.marketplace, name="marketplace"),
    path("contributions", views.contribution_list, name="contribution_list"),
    path(
        "contributions/<int:contribution_id>/confirm",
        views.contribution_confirm,
        name="contribution_confirm",
    ),
    path("donations", views.donation_collection, name="donation_collection"),
    path("donations/<int:donation_id>", views.donation_detail, name="donation_detail"),
    path("donations/<int:donation_id>/verify", views.donation_verify, name="donation_verify"),
    path("donations/<int:donation_id>/reject", views.donation_reject, name="donation_reject"),
    path(
        "donations/<int:donation_id>/warehouse",
        views.donation_assign_warehouse,
        name="donation_assign_warehouse",
    ),
    path("allocations", views.allocation_collection, name="allocation_collection"),
    path("allocations/<int:allocation_id>", views.allocation_detail, name="allocation_detail"),
    path("routes", views.route_collection, name="route_collection"),
    path("routes/<int:route_id>", views.route_detail, name="route_detail"),
    path("routes/<int:route_id>/start", views.route_start, name="route_start"),
    path("routes/<int:route_id>/complete", views.route_complete, name="route_complete"),
    path("routes/<int:route_id>/cancel", views.route_cancel, name="route_cancel"),
    path("routes/<int:route_id>/logistics", views.route_add_logistic, name="route_add_logistic"),
    path("logistics", views.logistic_list, name="logistic_list"),
    path(
        "logistics/<int:logistic_id>/location",
        views.logistic_location,
        name="logistic_location",
    ),
    path("warehouses", views.warehouse_list, name="warehouse_list"),
]
