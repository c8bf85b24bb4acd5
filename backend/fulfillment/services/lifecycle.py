"""
Periodic request and donation lifecycle jobs.

Each job is one conditional bulk UPDATE, so reruns are no-ops and the jobs
can run alongside live traffic. Errors propagate to the caller; a failed run
is simply retried on the next tick.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from django.db.models import Exists, OuterRef
from django.utils import timezone

from fulfillment import rules
from fulfillment.models import AidRequest, Allocation, Contribution, Donation

logger = logging.getLogger("aidlink.audit")

SYSTEM_ACTOR = "system"


def expire_donations(now: Optional[datetime] = None) -> int:
    """Donations past their expiry date become Unavailable."""
    now = now or timezone.now()
    today = timezone.localdate(now)
    count = (
        Donation.objects.filter(expiry_date__isnull=False, expiry_date__lt=today)
        .exclude(status__in=rules.DONATION_EXPIRY_EXEMPT_STATUSES)
        .update(status="Unavailable", update_by_id=SYSTEM_ACTOR, update_dtime=now)
    )
    logger.info("lifecycle.donations_expired count=%d as_of=%s", count, today.isoformat())
    return count


def expire_requests(now: Optional[datetime] = None) -> int:
    """Open requests past expires_at close as closed_no_match."""
    now = now or timezone.now()
    count = AidRequest.objects.filter(
        expires_at__isnull=False,
        expires_at__lte=now,
        status__in=rules.EXPIRABLE_REQUEST_STATUSES,
    ).update(status="closed_no_match", update_by_id=SYSTEM_ACTOR, update_dtime=now)
    logger.info("lifecycle.requests_expired count=%d as_of=%s", count, now.isoformat())
    return count


def flag_unmatched_requests(now: Optional[datetime] = None, days: Optional[int] = None) -> int:
    """
    Flag old open requests nobody has funded or allocated to.

    Status is left unchanged; admins act on flagged requests through the
    batch review.
    """
    now = now or timezone.now()
    days = rules.get_flag_after_days() if days is None else days
    cutoff = now - timedelta(days=days)

    committed = Contribution.objects.filter(request=OuterRef("pk"), status="committed")
    allocated = Allocation.objects.filter(request=OuterRef("pk")).exclude(status="Cancelled")

    count = (
        AidRequest.objects.filter(
            status__in=rules.FLAGGABLE_REQUEST_STATUSES,
            is_flagged_for_review=False,
            create_dtime__lt=cutoff,
        )
        .filter(~Exists(committed), ~Exists(allocated))
        .update(is_flagged_for_review=True, flagged_at=now, update_dtime=now)
    )
    logger.info(
        "lifecycle.requests_flagged count=%d days=%d cutoff=%s",
        count,
        days,
        cutoff.isoformat(),
    )
    return count


def run_daily(now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or timezone.now()
    return {
        "donations_expired": expire_donations(now),
        "requests_expired": expire_requests(now),
    }
