import os
import threading
import unittest
from datetime import timedelta
from decimal import Decimal

from django.db import connection, connections
from django.test import TransactionTestCase
from django.utils import timezone

from fulfillment.exceptions import ConflictError
from fulfillment.models import AidRequest, Allocation, Contribution, Donation
from fulfillment.services import allocation as allocation_service, contributions, urgency


def _run_concurrently(target, args_list):
    barrier = threading.Barrier(len(args_list))
    outcomes = []
    lock = threading.Lock()

    def worker(args):
        barrier.wait()
        try:
            target(*args)
            result = "ok"
        except ConflictError as exc:
            result = exc.code
        finally:
            connections.close_all()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(args,)) for args in args_list]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return outcomes


@unittest.skipUnless(
    os.getenv("DJANGO_USE_POSTGRES_TEST") == "1",
    "Postgres integration test disabled (set DJANGO_USE_POSTGRES_TEST=1).",
)
class ConcurrentFulfillmentTests(TransactionTestCase):
    def setUp(self) -> None:
        if connection.vendor != "postgresql":
            self.skipTest("Row-lock concurrency tests require Postgres.")

    def _request(self) -> AidRequest:
        req = AidRequest(
            recipient_id="recipient-1",
            title="Generators",
            description="Backup power for the field hospital.",
            aid_type="Infrastructure",
            status="approved",
            need_type="medical_emergency",
            time_sensitivity="less_than_24h",
            recipient_type="disaster_zone",
            availability_gap=0,
            expires_at=timezone.now() + timedelta(days=30),
            create_by_id="recipient-1",
            update_by_id="recipient-1",
        )
        urgency.apply_urgency(req)
        req.save()
        return req

    def test_concurrent_commits_never_exceed_full_funding(self) -> None:
        req = self._request()

        outcomes = _run_concurrently(
            contributions.commit_contribution,
            [(req.request_id, f"supplier-{idx}", 30) for idx in range(6)],
        )

        self.assertEqual(outcomes.count("ok"), 3)
        self.assertEqual(outcomes.count("funding_exceeded"), 3)
        total = sum(
            Contribution.objects.filter(request=req, status="committed").values_list(
                "percentage", flat=True
            )
        )
        self.assertEqual(total, 90)
        req.refresh_from_db()
        self.assertEqual(req.funding_status, "partially_funded")

    def test_concurrent_duplicate_commit_keeps_one_row(self) -> None:
        req = self._request()

        outcomes = _run_concurrently(
            contributions.commit_contribution,
            [(req.request_id, "supplier-1", 10) for _ in range(4)],
        )

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("duplicate_contribution"), 3)
        self.assertEqual(Contribution.objects.filter(request=req).count(), 1)

    def test_concurrent_allocations_never_overdraw(self) -> None:
        req = self._request()
        donation = Donation.objects.create(
            supplier_id="supplier-1",
            item="Diesel",
            unit="litre",
            quantity=Decimal("100"),
            remaining_quantity=Decimal("100"),
            status="Verified",
            create_by_id="supplier-1",
            update_by_id="supplier-1",
        )

        outcomes = _run_concurrently(
            allocation_service.allocate,
            [(req.request_id, donation.donation_id, 30, f"admin-{idx}") for idx in range(5)],
        )

        self.assertEqual(outcomes.count("ok"), 3)
        self.assertEqual(outcomes.count("insufficient_quantity"), 2)
        donation.refresh_from_db()
        self.assertEqual(donation.remaining_quantity, Decimal("10"))
        allocated = sum(
            Allocation.objects.filter(donation=donation).values_list("quantity_allocated", flat=True)
        )
        self.assertEqual(allocated + donation.remaining_quantity, Decimal("100"))
