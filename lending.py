"""Borrowing, returns, borrow requests and reservations.

Every operation takes the caller's :class:`auth.Identity` explicitly and
either returns the changed row or raises an :mod:`errors` exception.  Writes
belonging to one operation are committed together or not at all.

Copy counts are only touched in two places: :func:`borrow_book` (-1) and
:func:`approve_return` (+1).  Both use a conditional ``UPDATE`` so that
concurrent callers cannot push ``available_copies`` outside
``0..total_copies``.  The per-student checks (one active loan per book,
``MAX_ACTIVE_LOANS`` in total) are repeated inside the transaction with the
student row locked, so two borrows by the same student run one after the
other.
"""

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from auth import require_identity, require_staff, require_student
from errors import (AlreadyBorrowed, BookNotFound, BookUnavailable,
                    BorrowLimitExceeded, DuplicateReservation,
                    InvalidTransition, RecordNotFound, ReservationNotFound)
from models import (ACTIVE_BORROW_STATUSES, Book, BorrowRecord, BorrowStatus,
                    Reservation, ReservationStatus, Student, db, log_action,
                    unit_of_work, utcnow)


def _get_book(book_id):
    book = db.session.get(Book, book_id)
    if book is None:
        raise BookNotFound(book_id=book_id)
    return book


def _get_record(record_id):
    record = db.session.get(BorrowRecord, record_id)
    if record is None:
        raise RecordNotFound(record_id=record_id)
    return record


def _check_transition(record, target):
    if not record.can_transition_to(target):
        raise InvalidTransition(
            f'Cannot move borrow record from {record.status.value} to {target.value}',
            record_id=record.id,
            status=record.status.value,
        )


def _check_can_hold(student, book, statuses):
    """Raise unless ``student`` may take one more record with ``statuses``.

    Records in any of ``statuses`` count toward the limit.
    """
    existing = BorrowRecord.query.filter(
        BorrowRecord.student_id == student.id,
        BorrowRecord.book_id == book.id,
        BorrowRecord.status.in_(statuses),
    ).first()
    if existing is not None:
        raise AlreadyBorrowed(record_id=existing.id)
    limit = current_app.config['MAX_ACTIVE_LOANS']
    held = BorrowRecord.query.filter(
        BorrowRecord.student_id == student.id,
        BorrowRecord.status.in_(statuses),
    ).count()
    if held >= limit:
        raise BorrowLimitExceeded(f'Borrow limit of {limit} books reached', limit=limit)


def _lock_student(student):
    # Row lock on PostgreSQL; SQLite already holds the database write lock here
    db.session.execute(select(Student.id).where(Student.id == student.id).with_for_update())


def _due_date(borrowed_at):
    return borrowed_at + timedelta(days=current_app.config['LOAN_PERIOD_DAYS'])


def borrow_book(identity, book_id, now=None) -> BorrowRecord:
    student = require_student(identity)
    book = _get_book(book_id)
    _check_can_hold(student, book, ACTIVE_BORROW_STATUSES)
    if book.available_copies < 1:
        raise BookUnavailable(book_id=book.id)

    now = now or utcnow()
    try:
        with unit_of_work():
            taken = db.session.execute(
                update(Book)
                .where(Book.id == book.id, Book.available_copies > 0)
                .values(available_copies=Book.available_copies - 1)
                .execution_options(synchronize_session=False)
            )
            if taken.rowcount != 1:
                raise BookUnavailable(book_id=book.id)
            _lock_student(student)
            _check_can_hold(student, book, ACTIVE_BORROW_STATUSES)
            record = BorrowRecord(
                student_id=student.id,
                book_id=book.id,
                borrowed_at=now,
                due_at=_due_date(now),
                status=BorrowStatus.BORROWED,
            )
            db.session.add(record)
            db.session.flush()
            log_action('student', student.id, 'BORROW_CREATED', 'borrow_record', record.id, {'book_id': book.id})
    except IntegrityError:
        raise AlreadyBorrowed(book_id=book.id)
    return record


def request_return(identity, record_id) -> BorrowRecord:
    student = require_student(identity)
    record = _get_record(record_id)
    if record.student_id != student.id:
        raise RecordNotFound(record_id=record_id)
    _check_transition(record, BorrowStatus.RETURN_REQUESTED)
    with unit_of_work():
        record.status = BorrowStatus.RETURN_REQUESTED
        log_action('student', student.id, 'RETURN_REQUESTED', 'borrow_record', record.id, {'book_id': record.book_id})
    return record


def approve_return(identity, record_id, now=None) -> BorrowRecord:
    staff = require_staff(identity)
    record = _get_record(record_id)
    _check_transition(record, BorrowStatus.RETURNED)

    now = now or utcnow()
    with unit_of_work():
        closed = db.session.execute(
            update(BorrowRecord)
            .where(
                BorrowRecord.id == record.id,
                BorrowRecord.status == BorrowStatus.RETURN_REQUESTED,
            )
            .values(status=BorrowStatus.RETURNED, returned_at=now)
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount != 1:
            # Another staff member approved it first
            raise InvalidTransition('Return already processed', record_id=record.id)
        restored = db.session.execute(
            update(Book)
            .where(Book.id == record.book_id, Book.available_copies < Book.total_copies)
            .values(available_copies=Book.available_copies + 1)
            .execution_options(synchronize_session=False)
        )
        if restored.rowcount != 1:
            current_app.logger.warning(
                'Book %s already at total copies when approving return %s', record.book_id, record.id)
        log_action('staff', staff.id, 'RETURN_APPROVED', 'borrow_record', record.id, {'book_id': record.book_id})
    return _get_record(record_id)


def request_borrow(identity, book_id, now=None) -> BorrowRecord:
    """Ask staff for a book instead of taking a copy directly."""
    student = require_student(identity)
    book = _get_book(book_id)
    requested = ACTIVE_BORROW_STATUSES + (BorrowStatus.PENDING,)
    _check_can_hold(student, book, requested)

    now = now or utcnow()
    with unit_of_work():
        _lock_student(student)
        _check_can_hold(student, book, requested)
        record = BorrowRecord(
            student_id=student.id,
            book_id=book.id,
            borrowed_at=now,
            due_at=_due_date(now),
            status=BorrowStatus.PENDING,
        )
        db.session.add(record)
        db.session.flush()
        log_action('student', student.id, 'BORROW_REQUESTED', 'borrow_record', record.id, {'book_id': book.id})
    return record


def _decide_borrow_request(identity, record_id, target, action):
    staff = require_staff(identity)
    record = _get_record(record_id)
    _check_transition(record, target)
    with unit_of_work():
        record.status = target
        log_action('staff', staff.id, action, 'borrow_record', record.id, {'book_id': record.book_id})
    return record


def approve_borrow_request(identity, record_id) -> BorrowRecord:
    return _decide_borrow_request(identity, record_id, BorrowStatus.APPROVED, 'BORROW_REQUEST_APPROVED')


def reject_borrow_request(identity, record_id) -> BorrowRecord:
    return _decide_borrow_request(identity, record_id, BorrowStatus.REJECTED, 'BORROW_REQUEST_REJECTED')


def reserve_book(identity, book_id, now=None) -> Reservation:
    student = require_student(identity)
    book = _get_book(book_id)
    if book.available_copies > 0:
        status = ReservationStatus.RESERVED
    else:
        status = ReservationStatus.WAITLISTED

    reservation = Reservation(
        student_id=student.id,
        book_id=book.id,
        status=status,
        reserved_on=now or utcnow(),
        active=True,
    )
    try:
        with unit_of_work():
            db.session.add(reservation)
            db.session.flush()
            log_action('student', student.id, 'RESERVATION_CREATED', 'reservation', reservation.id,
                       {'book_id': book.id, 'status': status.value})
    except IntegrityError:
        raise DuplicateReservation(book_id=book_id)
    return reservation


def cancel_reservation(identity, reservation_id) -> Reservation:
    identity = require_identity(identity)
    reservation = db.session.get(Reservation, reservation_id)
    if reservation is None or (not identity.is_staff and reservation.student_id != identity.student_id):
        raise ReservationNotFound(reservation_id=reservation_id)
    if not reservation.active:
        raise InvalidTransition('Reservation already cancelled', reservation_id=reservation.id)
    with unit_of_work():
        reservation.active = False
        log_action(identity.actor_type, identity.actor_id, 'RESERVATION_CANCELLED', 'reservation',
                   reservation.id, {'book_id': reservation.book_id})
    return reservation


def mark_overdue(now=None, identity=None) -> int:
    """Flag borrowed records whose due date has passed.  Returns how many changed."""
    now = now or utcnow()
    actor_type, actor_id = 'system', None
    if identity is not None:
        actor_type, actor_id = 'staff', require_staff(identity).id
    with unit_of_work():
        result = db.session.execute(
            update(BorrowRecord)
            .where(BorrowRecord.status == BorrowStatus.BORROWED, BorrowRecord.due_at < now)
            .values(status=BorrowStatus.OVERDUE)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount
        if changed:
            log_action(actor_type, actor_id, 'OVERDUE_MARKED', 'borrow_record', None, {'count': changed})
    return changed


def student_records(student_id):
    return BorrowRecord.query.filter_by(student_id=student_id).order_by(
        BorrowRecord.borrowed_at.desc(), BorrowRecord.id.desc()).all()


def student_reservations(student_id):
    return Reservation.query.filter_by(student_id=student_id, active=True).order_by(
        Reservation.reserved_on.asc()).all()


def records_with_status(status):
    return BorrowRecord.query.filter_by(status=status).order_by(BorrowRecord.borrowed_at.asc()).all()


def overdue_records(now=None):
    now = now or utcnow()
    return BorrowRecord.query.filter(
        BorrowRecord.returned_at.is_(None),
        BorrowRecord.status.in_(ACTIVE_BORROW_STATUSES),
        BorrowRecord.due_at < now,
    ).order_by(BorrowRecord.due_at.asc()).all()


def borrow_history(student=None, book=None, date_from=None, date_to=None):
    """All borrow records, newest first, optionally filtered.

    ``student`` matches a student name (case-insensitive substring) or id,
    ``book`` matches a title or id; the dates bound ``borrowed_at``.
    """
    query = BorrowRecord.query.join(Student).join(Book)
    if student:
        clauses = [Student.name.ilike(f'%{student}%')]
        if str(student).isdigit():
            clauses.append(Student.id == int(student))
        query = query.filter(or_(*clauses))
    if book:
        clauses = [Book.title.ilike(f'%{book}%')]
        if str(book).isdigit():
            clauses.append(Book.id == int(book))
        query = query.filter(or_(*clauses))
    if date_from:
        query = query.filter(BorrowRecord.borrowed_at >= date_from)
    if date_to:
        if isinstance(date_to, datetime) and date_to.time() == datetime.min.time():
            # A bare date includes the whole day
            date_to = date_to + timedelta(days=1)
            query = query.filter(BorrowRecord.borrowed_at < date_to)
        else:
            query = query.filter(BorrowRecord.borrowed_at <= date_to)
    return query.order_by(BorrowRecord.borrowed_at.desc(), BorrowRecord.id.desc()).all()
