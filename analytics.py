from sqlalchemy import func

from models import (ACTIVE_BORROW_STATUSES, Book, BorrowRecord, BorrowStatus,
                    Reservation, ReservationStatus, db, utcnow)

MONTHS_SHOWN = 6


def _shift_month(year, month):
    while month < 1:
        month += 12
        year -= 1
    return year, month


def borrows_per_month(now=None, months=MONTHS_SHOWN):
    """Borrow counts for the last ``months`` calendar months, oldest first."""
    now = now or utcnow()
    counts = {}
    for offset in range(months - 1, -1, -1):
        year, month = _shift_month(now.year, now.month - offset)
        counts[f'{year:04d}-{month:02d}'] = 0

    first_year, first_month = _shift_month(now.year, now.month - (months - 1))
    since = now.replace(year=first_year, month=first_month, day=1, hour=0, minute=0, second=0, microsecond=0)
    rows = db.session.query(BorrowRecord.borrowed_at).filter(
        BorrowRecord.borrowed_at >= since,
        BorrowRecord.borrowed_at <= now,
    ).all()
    for (borrowed_at,) in rows:
        label = f'{borrowed_at.year:04d}-{borrowed_at.month:02d}'
        if label in counts:
            counts[label] += 1
    return [{'label': label, 'count': count} for label, count in counts.items()]


def popular_books(limit=5):
    borrow_count = func.count(BorrowRecord.id)
    return db.session.query(Book, borrow_count).join(
        BorrowRecord, Book.id == BorrowRecord.book_id
    ).filter(
        BorrowRecord.status.in_(ACTIVE_BORROW_STATUSES + (BorrowStatus.RETURNED,))
    ).group_by(Book.id).order_by(borrow_count.desc(), Book.id.asc()).limit(limit).all()


def library_stats(now=None):
    now = now or utcnow()
    active = BorrowRecord.query.filter(BorrowRecord.status.in_(ACTIVE_BORROW_STATUSES))
    return {
        'total_books': Book.query.count(),
        'total_copies': db.session.query(func.coalesce(func.sum(Book.total_copies), 0)).scalar(),
        'available_copies': db.session.query(func.coalesce(func.sum(Book.available_copies), 0)).scalar(),
        'total_borrows': BorrowRecord.query.count(),
        'active_borrows': active.count(),
        'overdue_borrows': active.filter(BorrowRecord.due_at < now).count(),
        'return_requests': BorrowRecord.query.filter_by(status=BorrowStatus.RETURN_REQUESTED).count(),
        'pending_requests': BorrowRecord.query.filter_by(status=BorrowStatus.PENDING).count(),
        'active_reservations': Reservation.query.filter_by(active=True).count(),
        'waitlisted': Reservation.query.filter_by(active=True, status=ReservationStatus.WAITLISTED).count(),
    }
