# ==========================================================
# powerlineapp/ledger.py
# COMMISSION LEDGER (append-only)
# ==========================================================
from datetime import timedelta
from decimal import Decimal

from django.core.paginator import Paginator
from django.db import IntegrityError, transaction
from django.db.models import Avg, Count, Q, Sum
from django.utils import timezone

from .exceptions import QualificationReplay
from .models import CommissionEvent


def make_event_id(node_id, cycle_number) -> str:
    return f"{node_id}:{cycle_number}"


def has_event(event_id) -> bool:
    return CommissionEvent.objects.filter(event_id=event_id).exists()


def record(*, position, recipient_id, amount, cycle_number, matched_volume,
           left_leg_after, right_leg_after, commission_type=CommissionEvent.BINARY_CYCLE):
    """
    Append one commission event. A duplicate event id raises
    QualificationReplay and leaves the ledger untouched.
    """
    event_id = make_event_id(position.node_id, cycle_number)
    try:
        with transaction.atomic():
            return CommissionEvent.objects.create(
                event_id=event_id,
                position=position,
                recipient_id=recipient_id,
                commission_type=commission_type,
                amount=amount,
                cycle_number=cycle_number,
                matched_volume=matched_volume,
                left_leg_after=left_leg_after,
                right_leg_after=right_leg_after,
            )
    except IntegrityError:
        raise QualificationReplay(event_id) from None


def _filtered(recipient_id=None, commission_type=None, start=None, end=None):
    qs = CommissionEvent.objects.all()
    if recipient_id is not None:
        qs = qs.filter(recipient_id=recipient_id)
    if commission_type:
        qs = qs.filter(commission_type=commission_type)
    if start is not None:
        qs = qs.filter(created_at__gte=start)
    if end is not None:
        qs = qs.filter(created_at__lte=end)
    return qs


def feed_item(event: CommissionEvent):
    return {
        "id": event.pk,
        "event_id": event.event_id,
        "amount": event.amount,
        "type": event.commission_type,
        "recipient_id": event.recipient_id,
        "node_id": event.position_id,
        "cycle_number": event.cycle_number,
        "timestamp": event.created_at,
    }


def recent_feed(limit=20, recipient_id=None):
    qs = _filtered(recipient_id=recipient_id).order_by("-created_at", "-id")
    return [feed_item(event) for event in qs[: int(limit)]]


def summary(recipient_id=None, commission_type=None, start=None, end=None):
    week_ago = timezone.now() - timedelta(days=7)
    totals = _filtered(recipient_id, commission_type, start, end).aggregate(
        total_amount=Sum("amount"),
        total_count=Count("id"),
        average_amount=Avg("amount"),
        this_week_amount=Sum("amount", filter=Q(created_at__gte=week_ago)),
    )
    average = totals["average_amount"]
    return {
        "total_amount": totals["total_amount"] or Decimal("0.00"),
        "total_count": totals["total_count"] or 0,
        "average_amount": Decimal(average).quantize(Decimal("0.01")) if average is not None else Decimal("0.00"),
        "this_week_amount": totals["this_week_amount"] or Decimal("0.00"),
    }


def history(recipient_id, page=1, limit=20, commission_type=None, start=None, end=None):
    qs = _filtered(recipient_id, commission_type, start, end).order_by("-created_at", "-id")
    paginator = Paginator(qs, int(limit))
    current = paginator.get_page(page)
    return {
        "commissions": [feed_item(event) for event in current.object_list],
        "pagination": {
            "current_page": current.number,
            "total_pages": paginator.num_pages,
            "total_commissions": paginator.count,
        },
        "summary": summary(recipient_id, commission_type, start, end),
    }
