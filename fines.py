"""Overdue fines.

Fines are derived on read and never stored: a record is charged a flat
amount for every full day past ``due_at``.
"""

import math
from datetime import timedelta
from decimal import Decimal

from flask import current_app

from models import ACTIVE_BORROW_STATUSES, BorrowRecord, utcnow

DEFAULT_FINE_PER_DAY = Decimal('0.50')
CENTS = Decimal('0.01')


def fine_rate():
    return Decimal(str(current_app.config.get('FINE_PER_DAY', DEFAULT_FINE_PER_DAY)))


def days_overdue(due_at, reference):
    return math.floor((reference - due_at) / timedelta(days=1))


def compute_fine(due_at, returned_at=None, now=None, rate=DEFAULT_FINE_PER_DAY):
    reference = returned_at or now or utcnow()
    days = max(0, days_overdue(due_at, reference))
    return (days * Decimal(rate)).quantize(CENTS)


def record_fine(record, now=None, rate=None):
    """Fine shown for ``record``: returned books carry none."""
    if record.returned_at is not None:
        return Decimal('0.00')
    return compute_fine(record.due_at, now=now, rate=rate if rate is not None else fine_rate())


def outstanding_fines(student_id, now=None):
    now = now or utcnow()
    rate = fine_rate()
    records = BorrowRecord.query.filter(
        BorrowRecord.student_id == student_id,
        BorrowRecord.status.in_(ACTIVE_BORROW_STATUSES),
        BorrowRecord.returned_at.is_(None),
    ).order_by(BorrowRecord.due_at.asc()).all()
    items = []
    for record in records:
        amount = record_fine(record, now=now, rate=rate)
        if amount > 0:
            items.append((record, amount))
    total = sum((amount for _, amount in items), Decimal('0.00'))
    return items, total
