"""
Representative transaction reduction.

A single vehicle purchase can be recorded as several transaction rows: a
failed retry, a booking token, a balance settlement. Every read surface
(purchases, bookings, delivery tracking, sales, dashboard counts) collapses
those rows to one representative per vehicle through this module, so all of
them agree on what the current state of a purchase is.
"""

from collections import namedtuple
from datetime import timedelta
from decimal import Decimal
from django.utils import timezone
from utils.constants import Classification, TransactionState
from utils.transition_policy import to_decimal

Representative = namedtuple("Representative", ["transaction", "classification"])


def is_valid(transaction):
    return transaction.status not in TransactionState.INVALID


def is_fully_settled(transaction):
    if transaction.status not in TransactionState.MONEY_RECEIVED:
        return False
    return transaction.remaining_amount is None or to_decimal(transaction.remaining_amount) <= 0


def _priority(transaction):
    # Compared left to right: validity, settlement, amount paid, recency, id.
    return (
        is_valid(transaction),
        is_fully_settled(transaction),
        to_decimal(transaction.booking_amount),
        transaction.created_at,
        str(transaction.pk),
    )


def pick_representative(candidates):
    """
    Picks the single transaction that describes a vehicle's purchase state.

    No filtering happens here, so results from call sites that filtered
    differently can be merged and reduced again.
    """
    candidates = list(candidates)
    if not candidates:
        return None
    return max(candidates, key=_priority)


def classify(transaction):
    """
    Classifies a representative as a purchase, a booking or neither.
    """
    if is_fully_settled(transaction):
        return Classification.PURCHASE
    if transaction.status in TransactionState.AWAITING_PAYMENT:
        return Classification.BOOKING
    if (transaction.status in TransactionState.MONEY_RECEIVED
            and to_decimal(transaction.remaining_amount) > 0):
        return Classification.BOOKING
    return Classification.NONE


def reduce_transactions(transactions):
    """
    Reduces raw transaction rows to one representative per vehicle.

    Failed, cancelled and refunded rows are dropped first; vehicles left
    with no valid rows do not appear in the result.

    Args:
        transactions: Iterable of transactions for one buyer, seller or vehicle

    Returns:
        dict: vehicle_id -> Representative(transaction, classification)
    """
    groups = {}
    for transaction in transactions:
        if not is_valid(transaction):
            continue
        groups.setdefault(transaction.vehicle_id, []).append(transaction)

    result = {}
    for vehicle_id, group in groups.items():
        winner = pick_representative(group)
        result[vehicle_id] = Representative(winner, classify(winner))
    return result


def filter_by_classification(representatives, classification=None):
    """
    Returns representatives newest first, optionally keeping one class.
    """
    items = representatives.values() if isinstance(representatives, dict) else representatives
    if classification:
        items = [rep for rep in items if rep.classification == classification]
    return sorted(items, key=lambda rep: rep.transaction.created_at, reverse=True)


def summarize(representatives):
    """
    Aggregate counts for dashboards, always taken over representatives and
    never over raw rows.
    """
    items = representatives.values() if isinstance(representatives, dict) else representatives
    purchases = 0
    bookings = 0
    purchased_amount = Decimal("0")
    for rep in items:
        if rep.classification == Classification.PURCHASE:
            purchases += 1
            purchased_amount += to_decimal(rep.transaction.amount)
        elif rep.classification == Classification.BOOKING:
            bookings += 1
    return {
        "vehicles": purchases + bookings,
        "purchases": purchases,
        "active_bookings": bookings,
        "purchased_amount": purchased_amount,
    }


def daily_series(representatives, days=7, today=None):
    """
    Completed purchases per day for the last `days` days, oldest first.
    Days without sales are included with zero totals.

    Returns:
        list: dicts with date, count and total_amount
    """
    today = today or timezone.localdate()
    buckets = {}
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        buckets[day] = {"date": day.isoformat(), "count": 0, "total_amount": Decimal("0")}

    items = representatives.values() if isinstance(representatives, dict) else representatives
    for rep in items:
        if rep.classification != Classification.PURCHASE:
            continue
        day = timezone.localdate(rep.transaction.created_at)
        if day in buckets:
            buckets[day]["count"] += 1
            buckets[day]["total_amount"] += to_decimal(rep.transaction.amount)
    return list(buckets.values())
