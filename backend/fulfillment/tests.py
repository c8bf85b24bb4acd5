import random
import re
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from api.authentication import Principal
from fulfillment import rules
from fulfillment.exceptions import (
    ConflictError,
    DonationUnavailable,
    DuplicateContribution,
    FundingExceeded,
    InsufficientQuantity,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from fulfillment.models import (
    AidRequest,
    Allocation,
    Contribution,
    DeliveryRoute,
    Donation,
    FulfillmentAudit,
    Logistic,
    Warehouse,
)
from fulfillment.rules import UrgencyConfig
from fulfillment.services import (
    access_scope,
    aid_requests,
    allocation as allocation_service,
    audit,
    contributions,
    delivery,
    donations,
    lifecycle,
    urgency,
)

CRITICAL_FACTORS = {
    "need_type": "medical_emergency",
    "time_sensitivity": "less_than_24h",
    "recipient_type": "disaster_zone",
    "availability_gap": 0,
    "admin_override": 3,
}


def _request_payload(**overrides):
    payload = {
        "title": "Insulin for district clinic",
        "description": "Cold-chain insulin for 40 patients.",
        "aid_type": "Health",
        "need_type": "life_saving_meds",
        "time_sensitivity": "24_to_72h",
        "recipient_type": "rural_clinic",
        "availability_gap": 20,
        "region": "North",
    }
    payload.update(overrides)
    return payload


def _make_request(recipient_id="recipient-1", status="approved", **overrides):
    fields = {
        "recipient_id": recipient_id,
        "title": "Water purification tablets",
        "description": "Tablets for 200 households.",
        "aid_type": "Health",
        "status": status,
        "need_type": "clean_water",
        "time_sensitivity": "3_to_7_days",
        "recipient_type": "refugee_camp",
        "availability_gap": 50,
        "expires_at": timezone.now() + timedelta(days=30),
        "create_by_id": recipient_id,
        "update_by_id": recipient_id,
    }
    fields.update(overrides)
    req = AidRequest(**fields)
    urgency.apply_urgency(req)
    req.save()
    return req


def _make_donation(supplier_id="supplier-1", quantity="100", status="Verified", **overrides):
    fields = {
        "supplier_id": supplier_id,
        "item": "Rice",
        "unit": "kg",
        "quantity": Decimal(quantity),
        "remaining_quantity": Decimal(quantity),
        "status": status,
        "create_by_id": supplier_id,
        "update_by_id": supplier_id,
    }
    fields.update(overrides)
    return Donation.objects.create(**fields)


def _make_warehouse(**overrides):
    fields = {
        "name": "Central Depot",
        "city": "Kingston",
        "capacity": Decimal("1000"),
        "create_by_id": "admin-1",
        "update_by_id": "admin-1",
    }
    fields.update(overrides)
    return Warehouse.objects.create(**fields)


def _principal(user_id, *roles):
    return Principal(user_id=user_id, username=user_id, roles=list(roles))


def _age(req, days):
    AidRequest.objects.filter(pk=req.pk).update(
        create_dtime=timezone.now() - timedelta(days=days)
    )


class UrgencyScoringTests(SimpleTestCase):
    def test_all_critical_factors_score_nine_point_three(self) -> None:
        result = urgency.score_urgency(CRITICAL_FACTORS)

        self.assertEqual(result["score"], 9.3)
        self.assertEqual(result["level"], "critical")
        self.assertEqual(result["response_time"], "< 6 hours")
        self.assertEqual(
            result["raw_scores"],
            {
                "criticality": 10,
                "time_sensitivity": 10,
                "vulnerability": 10,
                "availability_gap": 10,
                "admin_override": 3.0,
            },
        )
        expected_weighted = {
            "criticality": 3.0,
            "time_sensitivity": 2.5,
            "vulnerability": 2.0,
            "availability_gap": 1.5,
            "admin_override": 0.3,
        }
        for name, value in expected_weighted.items():
            self.assertAlmostEqual(result["weighted_scores"][name], value)
        self.assertEqual(result["visualization"]["color"], "#ef4444")
        self.assertEqual(result["weights"], rules.URGENCY_WEIGHTS)

    def test_unknown_factor_values_score_zero(self) -> None:
        result = urgency.score_urgency(
            {
                "need_type": "unicorns",
                "time_sensitivity": "eventually",
                "recipient_type": 42,
                "availability_gap": 0,
            }
        )

        self.assertEqual(result["raw_scores"]["criticality"], 0)
        self.assertEqual(result["raw_scores"]["time_sensitivity"], 0)
        self.assertEqual(result["raw_scores"]["vulnerability"], 0)
        self.assertEqual(result["score"], 1.5)
        self.assertEqual(result["level"], "low")

    def test_missing_availability_gap_defaults_to_fully_available(self) -> None:
        self.assertEqual(urgency.availability_gap_score(None), 0)
        result = urgency.score_urgency({"need_type": "shelter"})
        self.assertEqual(result["raw_scores"]["availability_gap"], 0)

    def test_non_numeric_availability_gap_scores_zero(self) -> None:
        self.assertEqual(urgency.availability_gap_score("lots"), 0)
        self.assertEqual(urgency.availability_gap_score(True), 0)
        self.assertEqual(urgency.availability_gap_score(float("nan")), 0)

    def test_availability_gap_tiers(self) -> None:
        cases = {0: 10, -5: 10, 25: 8, 26: 5, 50: 5, 75: 2, 75.5: 0, 100: 0, "10": 8}
        for gap, expected in cases.items():
            with self.subTest(gap=gap):
                self.assertEqual(urgency.availability_gap_score(gap), expected)

    def test_negative_override_clamps_score_at_zero(self) -> None:
        result = urgency.score_urgency({"availability_gap": 100, "admin_override": -3})

        self.assertEqual(result["score"], 0.0)
        self.assertEqual(result["level"], "low")
        self.assertAlmostEqual(result["weighted_scores"]["admin_override"], -0.3)

    def test_level_thresholds(self) -> None:
        self.assertEqual(urgency.get_urgency_level(9.0), "critical")
        self.assertEqual(urgency.get_urgency_level(8.99), "high")
        self.assertEqual(urgency.get_urgency_level(7.0), "high")
        self.assertEqual(urgency.get_urgency_level(4.0), "medium")
        self.assertEqual(urgency.get_urgency_level(3.99), "low")
        self.assertEqual(urgency.get_response_time("unknown"), "> 72 hours")
        self.assertEqual(urgency.get_urgency_color("unknown"), "#6b7280")

    def test_random_factor_sets_stay_in_range(self) -> None:
        rng = random.Random(20240601)
        need_types = list(rules.NEED_TYPE_SCORES) + ["bogus", None]
        times = list(rules.TIME_SENSITIVITY_SCORES) + ["bogus", None]
        recipients = list(rules.RECIPIENT_TYPE_SCORES) + ["bogus", None]
        for _ in range(500):
            factors = {
                "need_type": rng.choice(need_types),
                "time_sensitivity": rng.choice(times),
                "recipient_type": rng.choice(recipients),
                "availability_gap": rng.choice([None, "n/a", rng.uniform(-10, 120)]),
                "admin_override": rng.randint(-3, 3),
            }
            result = urgency.score_urgency(factors)
            unrounded = min(10.0, max(0.0, sum(result["weighted_scores"].values())))
            self.assertGreaterEqual(result["score"], 0.0)
            self.assertLessEqual(result["score"], 10.0)
            self.assertEqual(result["level"], urgency.get_urgency_level(unrounded))

    def test_custom_config_weights(self) -> None:
        config = UrgencyConfig(
            weights={
                "criticality": 1.0,
                "time_sensitivity": 0.0,
                "vulnerability": 0.0,
                "availability_gap": 0.0,
                "admin_override": 0.0,
            }
        )

        result = urgency.score_urgency({"need_type": "medical_emergency"}, config)

        self.assertEqual(result["score"], 10.0)
        self.assertEqual(result["level"], "critical")

    def test_config_requires_every_weight(self) -> None:
        with self.assertRaises(ValueError):
            UrgencyConfig(weights={"criticality": 1.0})

    def test_config_tables_are_read_only(self) -> None:
        config = UrgencyConfig()
        with self.assertRaises(TypeError):
            config.need_type_scores["new_need"] = 10


class AidRequestServiceTests(TestCase):
    def test_create_request_scores_and_sets_expiry(self) -> None:
        before = timezone.now()
        record = aid_requests.create_request(_request_payload(), "recipient-1")

        self.assertEqual(record["status"], "pending")
        self.assertEqual(record["funding_status"], "unfunded")
        req = AidRequest.objects.get(request_id=record["request_id"])
        self.assertGreaterEqual(req.expires_at, before + timedelta(days=30))
        self.assertLessEqual(req.expires_at, timezone.now() + timedelta(days=30))
        expected = urgency.score_urgency(_request_payload())
        self.assertEqual(req.urgency_score, expected["score"])
        self.assertEqual(req.urgency_level, expected["level"])
        self.assertEqual(req.urgency_calculation_log["score"], expected["score"])
        self.assertTrue(
            FulfillmentAudit.objects.filter(
                entity_type="AID_REQUEST", entity_id=req.request_id, action_type="created"
            ).exists()
        )

    def test_create_request_requires_factors(self) -> None:
        payload = _request_payload()
        del payload["need_type"]
        payload["availability_gap"] = 140

        with self.assertRaises(ValidationError) as ctx:
            aid_requests.create_request(payload, "recipient-1")

        self.assertIn("need_type", ctx.exception.errors)
        self.assertIn("availability_gap", ctx.exception.errors)
        self.assertFalse(AidRequest.objects.exists())

    def test_override_requires_admin(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            aid_requests.create_request(_request_payload(admin_override=2), "recipient-1")
        self.assertIn("admin_override", ctx.exception.errors)

        record = aid_requests.create_request(
            _request_payload(admin_override=2), "recipient-1", allow_override=True
        )
        self.assertEqual(record["admin_override"], 2)

    def test_other_aid_type_needs_custom_label(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            aid_requests.create_request(_request_payload(aid_type="Other"), "recipient-1")
        self.assertIn("custom_aid_type", ctx.exception.errors)

    def test_update_rescores_on_factor_change(self) -> None:
        req = _make_request(status="pending")
        old_score = req.urgency_score

        record = aid_requests.update_request(
            req.request_id, {"need_type": "medical_emergency"}, "recipient-1"
        )

        self.assertGreater(record["urgency_score"], old_score)
        self.assertTrue(
            FulfillmentAudit.objects.filter(
                entity_id=req.request_id, action_type="urgency_rescored"
            ).exists()
        )

    def test_update_closed_request_conflicts(self) -> None:
        req = _make_request(status="cancelled")

        with self.assertRaises(ConflictError) as ctx:
            aid_requests.update_request(req.request_id, {"title": "New"}, "recipient-1")
        self.assertEqual(ctx.exception.code, "request_closed")

    def test_approve_only_from_pending(self) -> None:
        req = _make_request(status="pending")

        record = aid_requests.approve_request(req.request_id, "auditor-1", "Documents checked")

        self.assertEqual(record["status"], "approved")
        self.assertEqual(record["audited_by"], "auditor-1")
        with self.assertRaises(ConflictError):
            aid_requests.approve_request(req.request_id, "auditor-1")

    def test_cancel_requires_reason(self) -> None:
        req = _make_request()

        with self.assertRaises(ValidationError):
            aid_requests.cancel_request(req.request_id, "recipient-1", "  ")
        record = aid_requests.cancel_request(req.request_id, "recipient-1", "Duplicate")

        self.assertEqual(record["status"], "cancelled")
        with self.assertRaises(ConflictError):
            aid_requests.cancel_request(req.request_id, "recipient-1", "Again")

    def test_unknown_request_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            aid_requests.approve_request(9999, "auditor-1")


class ContributionLedgerTests(TestCase):
    def setUp(self) -> None:
        self.req = _make_request()

    def test_sequential_commits_fund_then_reject_overflow(self) -> None:
        first = contributions.commit_contribution(self.req.request_id, "s-1", 40)
        self.assertEqual(first["funding"]["funding_status"], "partially_funded")
        self.assertEqual(first["funding"]["remaining_percentage"], 60)

        contributions.commit_contribution(self.req.request_id, "s-2", 35)
        third = contributions.commit_contribution(self.req.request_id, "s-3", 25)
        self.assertEqual(third["funding"]["funding_status"], "fully_funded")
        self.assertEqual(third["funding"]["total_funded_percentage"], 100)

        with self.assertRaises(FundingExceeded) as ctx:
            contributions.commit_contribution(self.req.request_id, "s-4", 1)
        self.assertEqual(ctx.exception.remaining, 0)

        self.req.refresh_from_db()
        self.assertEqual(self.req.funding_status, "fully_funded")
        self.assertEqual(self.req.status, "claimed")
        self.assertEqual(Contribution.objects.filter(request=self.req).count(), 3)

    def test_commit_over_remaining_reports_remaining(self) -> None:
        contributions.commit_contribution(self.req.request_id, "s-1", 70)

        with self.assertRaises(FundingExceeded) as ctx:
            contributions.commit_contribution(self.req.request_id, "s-2", 31)

        self.assertEqual(ctx.exception.remaining, 30)
        self.assertEqual(ctx.exception.status_code, 409)

    def test_duplicate_supplier_rejected(self) -> None:
        contributions.commit_contribution(self.req.request_id, "s-1", 10)

        with self.assertRaises(DuplicateContribution):
            contributions.commit_contribution(self.req.request_id, "s-1", 10)

    def test_percentage_bounds_validated_before_locking(self) -> None:
        for bad in (0, 101, "ten", 12.5, True, None):
            with self.subTest(percentage=bad):
                with self.assertRaises(ValidationError):
                    contributions.commit_contribution(self.req.request_id, "s-1", bad)

    def test_closed_request_not_fundable(self) -> None:
        closed = _make_request(status="completed")

        with self.assertRaises(ConflictError) as ctx:
            contributions.commit_contribution(closed.request_id, "s-1", 10)
        self.assertEqual(ctx.exception.code, "request_not_fundable")

    @override_settings(AID_FUNDABLE_STATUSES=["approved"])
    def test_fundable_statuses_are_configurable(self) -> None:
        pending = _make_request(status="pending")

        with self.assertRaises(ConflictError):
            contributions.commit_contribution(pending.request_id, "s-1", 10)

    def test_pledge_counts_only_after_confirmation(self) -> None:
        pledged = contributions.pledge_contribution(self.req.request_id, "s-1", 60)
        summary = contributions.get_funding_summary(self.req.request_id)
        self.assertEqual(summary["total_funded_percentage"], 0)
        self.assertEqual(summary["contribution_count"], 0)

        contributions.commit_contribution(self.req.request_id, "s-2", 50)
        with self.assertRaises(FundingExceeded):
            contributions.confirm_contribution(
                pledged["contribution"]["contribution_id"], "s-1"
            )

    def test_confirm_pledge_commits(self) -> None:
        pledged = contributions.pledge_contribution(self.req.request_id, "s-1", 30)

        result = contributions.confirm_contribution(
            pledged["contribution"]["contribution_id"], "s-1"
        )

        self.assertEqual(result["contribution"]["status"], "committed")
        self.assertEqual(result["funding"]["total_funded_percentage"], 30)

    def test_random_commit_sequences_never_exceed_full_funding(self) -> None:
        rng = random.Random(7)
        for round_no in range(5):
            req = _make_request(title=f"Round {round_no}")
            for idx in range(15):
                pct = rng.randint(1, 60)
                try:
                    contributions.commit_contribution(req.request_id, f"s-{idx}", pct)
                except FundingExceeded:
                    pass
                summary = contributions.get_funding_summary(req.request_id)
                req.refresh_from_db()
                self.assertLessEqual(summary["total_funded_percentage"], 100)
                self.assertEqual(
                    req.funding_status,
                    rules.funding_status_for(summary["total_funded_percentage"]),
                )

    def test_marketplace_lists_open_approved_requests(self) -> None:
        contributions.commit_contribution(self.req.request_id, "s-1", 40)
        _make_request(status="pending", title="Not yet approved")
        _make_request(title="Expired", expires_at=timezone.now() - timedelta(days=1))

        listing = contributions.list_fundable_requests()

        self.assertEqual([row["request_id"] for row in listing], [self.req.request_id])
        self.assertEqual(listing[0]["total_funded_percentage"], 40)
        self.assertEqual(listing[0]["remaining_percentage"], 60)


class DonationServiceTests(TestCase):
    def test_targeted_goods_donation_is_verified(self) -> None:
        req = _make_request()

        record = donations.create_donation(
            {"item": "Blankets", "unit": "pcs", "quantity": "50", "aid_request_id": req.request_id},
            "supplier-1",
        )

        self.assertEqual(record["status"], "Verified")
        self.assertEqual(Decimal(record["remaining_quantity"]), Decimal("50"))

    def test_untargeted_and_monetary_donations_wait_for_verification(self) -> None:
        req = _make_request()
        untargeted = donations.create_donation(
            {"item": "Tents", "unit": "pcs", "quantity": 5}, "supplier-1"
        )
        monetary = donations.create_donation(
            {
                "item": "Cash grant",
                "unit": "USD",
                "quantity": 500,
                "donation_type": "Monetary",
                "aid_request_id": req.request_id,
            },
            "supplier-1",
        )

        self.assertEqual(untargeted["status"], "Pending")
        self.assertEqual(monetary["status"], "Pending")

    def test_supplier_cannot_target_own_request(self) -> None:
        req = _make_request(recipient_id="supplier-1")

        with self.assertRaises(ConflictError) as ctx:
            donations.create_donation(
                {"item": "Rice", "unit": "kg", "quantity": 5, "aid_request_id": req.request_id},
                "supplier-1",
            )
        self.assertEqual(ctx.exception.code, "conflict_of_interest")

    def test_lock_price_verifies(self) -> None:
        donation = _make_donation(status="Pending")

        record = donations.lock_price(donation.donation_id, "120.50", "auditor-1")

        self.assertEqual(record["status"], "Verified")
        self.assertEqual(record["price_status"], "Locked")
        self.assertEqual(record["audited_by"], "auditor-1")

    def test_reject_blocked_by_active_allocation(self) -> None:
        req = _make_request()
        donation = _make_donation()
        allocation_service.allocate(req.request_id, donation.donation_id, 10, "admin-1")

        with self.assertRaises(ConflictError) as ctx:
            donations.reject_donation(donation.donation_id, "admin-1", "Damaged")
        self.assertEqual(ctx.exception.code, "donation_allocated")

    def test_assign_warehouse_checks_capacity(self) -> None:
        warehouse = _make_warehouse(capacity=Decimal("120"))
        _make_donation(quantity="100", warehouse=warehouse)
        donation = _make_donation(quantity="30")

        with self.assertRaises(ConflictError) as ctx:
            donations.assign_warehouse(donation.donation_id, warehouse.warehouse_id, "admin-1")
        self.assertEqual(ctx.exception.code, "warehouse_capacity_exceeded")

        small = _make_donation(quantity="20")
        record = donations.assign_warehouse(small.donation_id, warehouse.warehouse_id, "admin-1")
        self.assertEqual(record["warehouse_id"], warehouse.warehouse_id)

    def test_money_and_quantity_reject_extra_decimal_places(self) -> None:
        donation = _make_donation(status="Pending")

        with self.assertRaises(ValidationError) as ctx:
            donations.lock_price(donation.donation_id, "10.005", "auditor-1")
        self.assertIn("audited_price", ctx.exception.errors)

        with self.assertRaises(ValidationError) as ctx:
            donations.create_donation(
                {"item": "Rice", "unit": "kg", "quantity": "1.001", "value": "3.333"},
                "supplier-1",
            )
        self.assertIn("quantity", ctx.exception.errors)
        self.assertIn("value", ctx.exception.errors)

    def test_closed_donation_cannot_take_warehouse_space(self) -> None:
        warehouse = _make_warehouse()
        donation = _make_donation(status="Rejected")

        with self.assertRaises(ConflictError) as ctx:
            donations.assign_warehouse(donation.donation_id, warehouse.warehouse_id, "admin-1")
        self.assertEqual(ctx.exception.code, "invalid_transition")
        donation.refresh_from_db()
        self.assertIsNone(donation.warehouse_id)


class AllocationTests(TestCase):
    def setUp(self) -> None:
        self.req = _make_request()
        self.donation = _make_donation(quantity="100")

    def test_allocations_draw_down_remaining_quantity(self) -> None:
        allocation_service.allocate(self.req.request_id, self.donation.donation_id, 60, "admin-1")
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.remaining_quantity, Decimal("40"))

        with self.assertRaises(InsufficientQuantity):
            allocation_service.allocate(
                self.req.request_id, self.donation.donation_id, 50, "admin-1"
            )
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.remaining_quantity, Decimal("40"))

        record = allocation_service.allocate(
            self.req.request_id, self.donation.donation_id, 40, "admin-1"
        )
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.remaining_quantity, Decimal("0"))
        self.assertEqual(record["status"], "Pending")
        self.assertEqual(Allocation.objects.filter(donation=self.donation).count(), 2)

    def test_conditional_decrement_rejects_stale_read(self) -> None:
        stale_a = Donation.objects.get(pk=self.donation.pk)
        stale_b = Donation.objects.get(pk=self.donation.pk)
        self.assertEqual(stale_a.remaining_quantity, stale_b.remaining_quantity)

        allocation_service.decrement_remaining(stale_a.donation_id, Decimal("60"), "admin-1")
        with self.assertRaises(InsufficientQuantity):
            allocation_service.decrement_remaining(stale_b.donation_id, Decimal("60"), "admin-2")

        self.donation.refresh_from_db()
        self.assertEqual(self.donation.remaining_quantity, Decimal("40"))

    def test_expired_donation_unavailable(self) -> None:
        expired = _make_donation(expiry_date=timezone.localdate() - timedelta(days=1))

        with self.assertRaises(DonationUnavailable):
            allocation_service.allocate(self.req.request_id, expired.donation_id, 1, "admin-1")

    def test_unverified_donation_unavailable(self) -> None:
        pending = _make_donation(status="Pending")

        with self.assertRaises(DonationUnavailable):
            allocation_service.allocate(self.req.request_id, pending.donation_id, 1, "admin-1")

    def test_closed_request_cannot_be_allocated(self) -> None:
        closed = _make_request(status="cancelled")

        with self.assertRaises(ConflictError):
            allocation_service.allocate(closed.request_id, self.donation.donation_id, 1, "admin-1")

    def test_quantity_must_be_positive(self) -> None:
        with self.assertRaises(ValidationError):
            allocation_service.allocate(self.req.request_id, self.donation.donation_id, 0, "admin-1")

    def test_quantity_beyond_stored_precision_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            allocation_service.allocate(
                self.req.request_id, self.donation.donation_id, "0.004", "admin-1"
            )
        self.assertIn("quantity", ctx.exception.errors)
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.remaining_quantity, Decimal("100"))
        self.assertFalse(Allocation.objects.filter(donation=self.donation).exists())

        record = allocation_service.allocate(
            self.req.request_id, self.donation.donation_id, "12.50", "admin-1"
        )
        allocation = Allocation.objects.get(pk=record["allocation_id"])
        self.donation.refresh_from_db()
        self.assertEqual(allocation.quantity_allocated, Decimal("12.50"))
        self.assertEqual(
            allocation.quantity_allocated + self.donation.remaining_quantity, Decimal("100")
        )


class DeliveryRouteTests(TestCase):
    def setUp(self) -> None:
        self.req = _make_request()
        self.donation = _make_donation()
        self.warehouse = _make_warehouse()
        record = allocation_service.allocate(
            self.req.request_id, self.donation.donation_id, 25, "admin-1"
        )
        self.allocation = Allocation.objects.get(allocation_id=record["allocation_id"])

    def _route(self, **data):
        return allocation_service.create_delivery_route(
            self.allocation.allocation_id, self.warehouse.warehouse_id, data, "distributor-1"
        )

    def test_route_creation_approves_allocation_and_opens_shipment(self) -> None:
        route = self._route(driver_id="driver-1", estimated_value="300")

        self.allocation.refresh_from_db()
        self.assertEqual(self.allocation.status, "Approved")
        self.assertEqual(route["status"], "Scheduled")
        self.assertEqual(len(route["logistics"]), 1)
        tracking = route["logistics"][0]["tracking_number"]
        self.assertRegex(tracking, rf"^RF-[A-Z0-9]{{8}}-{route['delivery_route_id']}$")

    def test_second_active_route_rejected(self) -> None:
        self._route()

        with self.assertRaises(ConflictError) as ctx:
            self._route()
        self.assertEqual(ctx.exception.code, "active_route_exists")

    def test_start_transit_mirrors_status(self) -> None:
        route = self._route()

        allocation_service.start_transit(route["delivery_route_id"], "driver-1")

        self.allocation.refresh_from_db()
        self.assertEqual(self.allocation.status, "In Transit")
        self.assertEqual(
            set(Logistic.objects.values_list("status", flat=True)), {"In Transit"}
        )

    def test_complete_delivery_cascades_through_route_link(self) -> None:
        route = self._route()

        result = delivery.complete_delivery(route["delivery_route_id"], "driver-1")

        self.assertEqual(result["delivery_route"]["status"], "Delivered")
        self.assertEqual(result["logistics_updated"], 1)
        self.assertEqual(result["allocation_status"], "Delivered")
        self.assertEqual(result["donation_status"], "Delivered")
        self.allocation.refresh_from_db()
        self.assertEqual(self.allocation.actual_delivery_date, timezone.localdate())

    def test_complete_delivery_resolves_allocation_through_logistic(self) -> None:
        route = self._route()
        DeliveryRoute.objects.filter(pk=route["delivery_route_id"]).update(allocation=None)

        result = delivery.complete_delivery(route["delivery_route_id"], "driver-1")

        self.assertEqual(result["allocation_id"], self.allocation.allocation_id)
        self.assertEqual(result["allocation_status"], "Delivered")
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.status, "Delivered")

    def test_complete_delivery_without_allocation_only_closes_route(self) -> None:
        route = DeliveryRoute.objects.create(
            route_name="Orphan run",
            warehouse=self.warehouse,
            create_by_id="distributor-1",
            update_by_id="distributor-1",
        )
        Logistic.objects.create(
            delivery_route=route,
            tracking_number="RF-ORPHAN01-1",
            create_by_id="distributor-1",
            update_by_id="distributor-1",
        )

        with self.assertLogs("fulfillment.services.delivery", level="WARNING"):
            result = delivery.complete_delivery(route.delivery_route_id, "driver-1")

        self.assertIsNone(result["allocation_id"])
        self.assertEqual(result["logistics_updated"], 1)
        self.allocation.refresh_from_db()
        self.assertEqual(self.allocation.status, "Pending")

    def test_route_carrying_two_allocations_delivers_both(self) -> None:
        other_req = _make_request(recipient_id="recipient-2")
        other_donation = _make_donation(supplier_id="supplier-2")
        record = allocation_service.allocate(
            other_req.request_id, other_donation.donation_id, 10, "admin-1"
        )
        other = Allocation.objects.get(pk=record["allocation_id"])
        route = self._route()
        allocation_service.add_logistic(
            route["delivery_route_id"], other.allocation_id, "distributor-1"
        )

        allocation_service.start_transit(route["delivery_route_id"], "driver-1")
        other.refresh_from_db()
        self.assertEqual(other.status, "In Transit")

        result = delivery.complete_delivery(route["delivery_route_id"], "driver-1")

        self.assertEqual(result["logistics_updated"], 2)
        self.assertEqual(result["allocation_id"], self.allocation.allocation_id)
        self.assertEqual(
            [item["allocation_id"] for item in result["allocations"]],
            [self.allocation.allocation_id, other.allocation_id],
        )
        for allocation, donation in ((self.allocation, self.donation), (other, other_donation)):
            allocation.refresh_from_db()
            donation.refresh_from_db()
            self.assertEqual(allocation.status, "Delivered")
            self.assertEqual(donation.status, "Delivered")
        self.assertEqual(
            set(Logistic.objects.values_list("status", flat=True)), {"Delivered"}
        )

    def test_cancelled_allocation_is_not_overwritten(self) -> None:
        route = self._route()
        Allocation.objects.filter(pk=self.allocation.pk).update(status="Cancelled")

        result = delivery.complete_delivery(route["delivery_route_id"], "driver-1")

        self.assertEqual(result["allocation_status"], "Cancelled")
        self.assertEqual(result["donation_status"], "Delivered")

    def test_complete_delivery_rolls_back_on_store_failure(self) -> None:
        route = self._route()
        real_record = audit.record

        def fail_on_allocation(entity_type, *args, **kwargs):
            if entity_type == "ALLOCATION":
                raise DatabaseError("connection lost")
            return real_record(entity_type, *args, **kwargs)

        with patch.object(delivery.audit, "record", side_effect=fail_on_allocation):
            with self.assertRaises(TransientStoreError) as ctx:
                delivery.complete_delivery(route["delivery_route_id"], "driver-1")

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(
            DeliveryRoute.objects.get(pk=route["delivery_route_id"]).status, "Scheduled"
        )
        self.allocation.refresh_from_db()
        self.assertEqual(self.allocation.status, "Approved")

    def test_delivered_route_cannot_complete_twice(self) -> None:
        route = self._route()
        delivery.complete_delivery(route["delivery_route_id"], "driver-1")

        with self.assertRaises(ConflictError):
            delivery.complete_delivery(route["delivery_route_id"], "driver-1")

    def test_cancel_route_leaves_allocation(self) -> None:
        route = self._route()

        allocation_service.cancel_delivery_route(route["delivery_route_id"], "admin-1", "Road closed")

        self.allocation.refresh_from_db()
        self.assertEqual(self.allocation.status, "Approved")
        self._route()

    def test_location_updates_append(self) -> None:
        route = self._route()
        logistic_id = route["logistics"][0]["logistic_id"]

        allocation_service.record_location_update(logistic_id, 18.0, -76.8, "driver-1")
        record = allocation_service.record_location_update(logistic_id, "18.1", "-76.7", "driver-1")

        self.assertEqual(len(record["location_updates"]), 2)
        self.assertEqual(record["location_updates"][1]["latitude"], 18.1)
        with self.assertRaises(ValidationError):
            allocation_service.record_location_update(logistic_id, 91, 0, "driver-1")

    def test_request_completes_only_after_delivery(self) -> None:
        contributions.commit_contribution(self.req.request_id, "s-1", 100)
        route = self._route()

        with self.assertRaises(ConflictError) as ctx:
            aid_requests.complete_request(self.req.request_id, "supplier-1")
        self.assertEqual(ctx.exception.code, "delivery_incomplete")

        delivery.complete_delivery(route["delivery_route_id"], "driver-1")
        record = aid_requests.complete_request(self.req.request_id, "supplier-1")
        self.assertEqual(record["status"], "completed")


class LifecycleTests(TestCase):
    @override_settings(AID_REQUEST_TTL_DAYS=0, AID_REQUEST_FLAG_AFTER_DAYS=0)
    def test_zero_day_windows_are_honoured(self) -> None:
        self.assertEqual(rules.get_request_ttl_days(), 0)
        self.assertEqual(rules.get_flag_after_days(), 0)

    @override_settings(AID_REQUEST_TTL_DAYS=None, AID_REQUEST_FLAG_AFTER_DAYS=None)
    def test_unset_windows_fall_back_to_defaults(self) -> None:
        self.assertEqual(rules.get_request_ttl_days(), rules.REQUEST_TTL_DAYS)
        self.assertEqual(rules.get_flag_after_days(), rules.FLAG_UNMATCHED_AFTER_DAYS)

    def test_expire_donations_is_idempotent(self) -> None:
        yesterday = timezone.localdate() - timedelta(days=1)
        stale = _make_donation(expiry_date=yesterday)
        delivered = _make_donation(expiry_date=yesterday, status="Delivered")
        fresh = _make_donation(expiry_date=timezone.localdate())

        self.assertEqual(lifecycle.expire_donations(), 1)
        self.assertEqual(lifecycle.expire_donations(), 0)

        stale.refresh_from_db()
        delivered.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(stale.status, "Unavailable")
        self.assertEqual(delivered.status, "Delivered")
        self.assertEqual(fresh.status, "Verified")

    def test_expire_requests_closes_open_only(self) -> None:
        past = timezone.now() - timedelta(minutes=1)
        open_req = _make_request(status="pending", expires_at=past)
        claimed = _make_request(status="claimed", expires_at=past)

        counts = lifecycle.run_daily()

        self.assertEqual(counts, {"donations_expired": 0, "requests_expired": 1})
        open_req.refresh_from_db()
        claimed.refresh_from_db()
        self.assertEqual(open_req.status, "closed_no_match")
        self.assertEqual(claimed.status, "claimed")
        self.assertEqual(lifecycle.expire_requests(), 0)

    def test_flag_unmatched_skips_funded_and_allocated(self) -> None:
        unmatched = _make_request(status="pending")
        funded = _make_request()
        allocated = _make_request()
        cancelled_only = _make_request()
        young = _make_request()
        contributions.commit_contribution(funded.request_id, "s-1", 10)
        donation = _make_donation()
        allocation_service.allocate(allocated.request_id, donation.donation_id, 5, "admin-1")
        cancelled = allocation_service.allocate(
            cancelled_only.request_id, donation.donation_id, 5, "admin-1"
        )
        Allocation.objects.filter(pk=cancelled["allocation_id"]).update(status="Cancelled")
        for req in (unmatched, funded, allocated, cancelled_only):
            _age(req, 31)
        _age(young, 5)

        self.assertEqual(lifecycle.flag_unmatched_requests(), 2)
        self.assertEqual(lifecycle.flag_unmatched_requests(), 0)

        flagged = set(
            AidRequest.objects.filter(is_flagged_for_review=True).values_list("pk", flat=True)
        )
        self.assertEqual(flagged, {unmatched.pk, cancelled_only.pk})
        unmatched.refresh_from_db()
        self.assertEqual(unmatched.status, "pending")
        self.assertIsNotNone(unmatched.flagged_at)

    def test_batch_boost_raises_urgency_and_clears_flag(self) -> None:
        req = _make_request(is_flagged_for_review=True, flagged_at=timezone.now())
        _age(req, 40)
        old_score = req.urgency_score

        result = aid_requests.review_flagged_requests(
            [req.request_id], rules.REVIEW_ACTION_BOOST, "admin-1"
        )

        self.assertEqual(result["updated_count"], 1)
        req.refresh_from_db()
        self.assertEqual(req.admin_override, 3)
        self.assertAlmostEqual(req.urgency_score, round(old_score + 0.3, 2))
        self.assertFalse(req.is_flagged_for_review)
        self.assertIsNone(req.flagged_at)

    def test_batch_close_skips_closed_and_recent_requests(self) -> None:
        old = _make_request()
        done = _make_request(status="completed")
        recent = _make_request()
        _age(old, 40)
        _age(done, 40)

        result = aid_requests.review_flagged_requests(
            [old.request_id, done.request_id, recent.request_id],
            rules.REVIEW_ACTION_CLOSE,
            "admin-1",
        )

        self.assertEqual(result["request_ids"], [old.request_id])
        old.refresh_from_db()
        self.assertEqual(old.status, "closed_no_match")
        self.assertTrue(
            FulfillmentAudit.objects.filter(
                entity_id=old.request_id, action_type="batch_closed"
            ).exists()
        )

    def test_batch_review_validates_input(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            aid_requests.review_flagged_requests([], "delete", "admin-1")
        self.assertIn("action", ctx.exception.errors)
        self.assertIn("request_ids", ctx.exception.errors)

    def test_flagged_listing_oldest_first(self) -> None:
        older = _make_request()
        newer = _make_request()
        _age(older, 60)
        _age(newer, 45)

        listing = aid_requests.list_flagged_requests()

        self.assertEqual([row["request_id"] for row in listing], [older.request_id, newer.request_id])

    def test_run_daily_command(self) -> None:
        _make_donation(expiry_date=timezone.localdate() - timedelta(days=3))
        out = StringIO()

        call_command("run_daily_lifecycle", stdout=out)

        self.assertIn("Expired 1 donation(s)", out.getvalue())

    def test_flag_command_days_option(self) -> None:
        req = _make_request()
        _age(req, 10)
        out = StringIO()

        call_command("flag_unmatched_requests", "--days", "7", stdout=out)

        self.assertIn("Flagged 1 request(s)", out.getvalue())
        with self.assertRaises(CommandError):
            call_command("flag_unmatched_requests", days=-1, stdout=StringIO())


class AccessScopeTests(TestCase):
    def setUp(self) -> None:
        self.own = _make_request(recipient_id="recipient-1", status="pending")
        self.other = _make_request(recipient_id="recipient-2", status="pending")
        self.market = _make_request(recipient_id="recipient-3")
        self.donation = _make_donation(supplier_id="supplier-1")
        record = allocation_service.allocate(
            self.own.request_id, self.donation.donation_id, 5, "admin-1"
        )
        self.allocation = Allocation.objects.get(pk=record["allocation_id"])
        self.warehouse = _make_warehouse()
        route = allocation_service.create_delivery_route(
            self.allocation.allocation_id,
            self.warehouse.warehouse_id,
            {"driver_id": "driver-1"},
            "admin-1",
        )
        self.route_id = route["delivery_route_id"]

    def _visible(self, principal, kind):
        return set(access_scope.scoped_queryset(principal, kind).values_list("pk", flat=True))

    def test_admin_and_auditor_see_everything(self) -> None:
        every = {self.own.pk, self.other.pk, self.market.pk}
        self.assertEqual(self._visible(_principal("a", "admin"), access_scope.REQUEST), every)
        self.assertEqual(self._visible(_principal("b", "AUDITOR"), access_scope.REQUEST), every)

    def test_recipient_sees_own_requests_and_their_deliveries(self) -> None:
        recipient = _principal("recipient-1", "recipient")

        self.assertEqual(self._visible(recipient, access_scope.REQUEST), {self.own.pk})
        self.assertEqual(self._visible(recipient, access_scope.DELIVERY_ROUTE), {self.route_id})
        self.assertEqual(self._visible(recipient, access_scope.DONATION), {self.donation.pk})

    def test_supplier_sees_linked_requests_and_marketplace(self) -> None:
        supplier = _principal("supplier-1", "supplier")

        self.assertEqual(
            self._visible(supplier, access_scope.REQUEST), {self.own.pk, self.market.pk}
        )
        self.assertEqual(
            self._visible(supplier, access_scope.ALLOCATION), {self.allocation.pk}
        )

    def test_driver_sees_assigned_routes_only(self) -> None:
        driver = _principal("driver-1", "driver")

        self.assertEqual(self._visible(driver, access_scope.DELIVERY_ROUTE), {self.route_id})
        self.assertEqual(self._visible(driver, access_scope.REQUEST), set())
        self.assertEqual(len(self._visible(driver, access_scope.LOGISTIC)), 1)
        other_driver = _principal("driver-2", "driver")
        self.assertEqual(self._visible(other_driver, access_scope.DELIVERY_ROUTE), set())

    def test_role_precedence_uses_first_matching_rule(self) -> None:
        both = _principal("recipient-2", "recipient", "admin")

        self.assertEqual(len(self._visible(both, access_scope.REQUEST)), 3)

    def test_missing_actor_sees_nothing(self) -> None:
        self.assertEqual(self._visible(None, access_scope.REQUEST), set())
        self.assertEqual(self._visible(_principal(None, "admin"), access_scope.REQUEST), set())

    def test_unknown_kind_rejected(self) -> None:
        with self.assertRaises(ValueError):
            access_scope.scope_for(_principal("a", "admin"), "invoice")

    def test_get_visible_hides_out_of_scope_rows(self) -> None:
        recipient = _principal("recipient-1", "recipient")

        self.assertEqual(
            access_scope.get_visible(recipient, access_scope.REQUEST, self.own.pk).pk,
            self.own.pk,
        )
        with self.assertRaises(NotFoundError):
            access_scope.get_visible(recipient, access_scope.REQUEST, self.other.pk)


class FulfillmentApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="recipient-1",
        DEV_AUTH_ROLES=["RECIPIENT"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_recipient_creates_and_lists_requests(self) -> None:
        response = self.client.post(
            "/api/v1/fulfillment/requests", _request_payload(), format="json"
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["recipient_id"], "recipient-1")
        self.assertEqual(body["status"], "pending")

        listing = self.client.get("/api/v1/fulfillment/requests")
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(len(listing.json()["requests"]), 1)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="recipient-1",
        DEV_AUTH_ROLES=["RECIPIENT"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_invalid_request_returns_field_errors(self) -> None:
        response = self.client.post(
            "/api/v1/fulfillment/requests", {"title": ""}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        errors = response.json()["errors"]
        self.assertIn("title", errors)
        self.assertIn("need_type", errors)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="driver-1",
        DEV_AUTH_ROLES=["DRIVER"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_driver_cannot_list_requests(self) -> None:
        response = self.client.get("/api/v1/fulfillment/requests")

        self.assertEqual(response.status_code, 403)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="supplier-9",
        DEV_AUTH_ROLES=["SUPPLIER"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_supplier_commits_and_duplicate_conflicts(self) -> None:
        req = _make_request()
        url = f"/api/v1/fulfillment/requests/{req.request_id}/funding"

        first = self.client.post(url, {"percentage": 40}, format="json")
        second = self.client.post(url, {"percentage": 10}, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.json()["funding"]["funding_status"], "partially_funded")
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "duplicate_contribution")

        summary = self.client.get(url)
        self.assertEqual(summary.status_code, 200)
        self.assertEqual(summary.json()["total_funded_percentage"], 40)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="recipient-1",
        DEV_AUTH_ROLES=["RECIPIENT"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_recipient_cannot_commit_funding(self) -> None:
        req = _make_request(recipient_id="recipient-1")

        response = self.client.post(
            f"/api/v1/fulfillment/requests/{req.request_id}/funding",
            {"percentage": 10},
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="recipient-2",
        DEV_AUTH_ROLES=["RECIPIENT"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_other_recipients_request_is_not_found(self) -> None:
        req = _make_request(recipient_id="recipient-1")

        response = self.client.get(f"/api/v1/fulfillment/requests/{req.request_id}")

        self.assertEqual(response.status_code, 404)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="admin-1",
        DEV_AUTH_ROLES=["ADMIN"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_admin_allocates_and_schedules_delivery(self) -> None:
        req = _make_request()
        donation = _make_donation(quantity="10")
        warehouse = _make_warehouse()

        allocated = self.client.post(
            "/api/v1/fulfillment/allocations",
            {"request_id": req.request_id, "donation_id": donation.donation_id, "quantity": "4"},
            format="json",
        )
        self.assertEqual(allocated.status_code, 201)
        too_much = self.client.post(
            "/api/v1/fulfillment/allocations",
            {"request_id": req.request_id, "donation_id": donation.donation_id, "quantity": "7"},
            format="json",
        )
        self.assertEqual(too_much.status_code, 409)
        self.assertEqual(too_much.json()["code"], "insufficient_quantity")

        route = self.client.post(
            "/api/v1/fulfillment/routes",
            {
                "allocation_id": allocated.json()["allocation_id"],
                "warehouse_id": warehouse.warehouse_id,
                "driver_id": "driver-1",
            },
            format="json",
        )
        self.assertEqual(route.status_code, 201)
        route_id = route.json()["delivery_route_id"]

        completed = self.client.post(f"/api/v1/fulfillment/routes/{route_id}/complete")
        self.assertEqual(completed.status_code, 200)
        self.assertEqual(completed.json()["allocation_status"], "Delivered")

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="admin-1",
        DEV_AUTH_ROLES=["ADMIN"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    @patch("fulfillment.views.delivery.complete_delivery")
    def test_store_failure_maps_to_503(self, mock_complete) -> None:
        mock_complete.side_effect = TransientStoreError()
        req = _make_request()
        donation = _make_donation()
        record = allocation_service.allocate(req.request_id, donation.donation_id, 1, "admin-1")
        route = allocation_service.create_delivery_route(
            record["allocation_id"], _make_warehouse().warehouse_id, {}, "admin-1"
        )

        response = self.client.post(
            f"/api/v1/fulfillment/routes/{route['delivery_route_id']}/complete"
        )

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "store_unavailable")

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="admin-1",
        DEV_AUTH_ROLES=["ADMIN"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_flagged_review_endpoints(self) -> None:
        req = _make_request()
        _age(req, 40)

        listing = self.client.get("/api/v1/fulfillment/requests/flagged")
        self.assertEqual(listing.status_code, 200)
        self.assertEqual([r["request_id"] for r in listing.json()["requests"]], [req.request_id])

        bad_days = self.client.get("/api/v1/fulfillment/requests/flagged?days=-2")
        self.assertEqual(bad_days.status_code, 400)

        response = self.client.post(
            "/api/v1/fulfillment/requests/flagged",
            {"request_ids": [req.request_id], "action": "boosted_urgency"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["updated_count"], 1)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="viewer",
        DEV_AUTH_ROLES=["DISTRIBUTOR"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_urgency_preview(self) -> None:
        response = self.client.post(
            "/api/v1/fulfillment/urgency/preview", CRITICAL_FACTORS, format="json"
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["score"], 9.3)
        self.assertTrue(re.match(r"^#[0-9a-f]{6}$", response.json()["visualization"]["color"]))
