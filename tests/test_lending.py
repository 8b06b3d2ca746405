from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

import lending
from conftest import T0, make_book
from errors import (AlreadyBorrowed, BookNotFound, BookUnavailable,
                    BorrowLimitExceeded, InvalidTransition, NotStaff,
                    RecordNotFound, StudentRecordNotFound, Unauthenticated)
from models import AuditLog, BorrowRecord, BorrowStatus, ReservationStatus, db


def test_borrow_creates_record_and_takes_a_copy(library):
    book = library.books[1]

    record = lending.borrow_book(library.x_identity, book.id, now=T0)

    assert record.status is BorrowStatus.BORROWED
    assert record.borrowed_at == T0
    assert record.due_at == T0 + timedelta(days=14)
    assert record.returned_at is None
    assert db.session.get(type(book), book.id).available_copies == 1


def test_borrow_requires_identity(library):
    with pytest.raises(Unauthenticated):
        lending.borrow_book(None, library.books[0].id)


def test_borrow_requires_student_row(library):
    with pytest.raises(StudentRecordNotFound):
        lending.borrow_book(library.orphan_identity, library.books[0].id)
    with pytest.raises(StudentRecordNotFound):
        lending.borrow_book(library.staff_identity, library.books[0].id)


def test_borrow_unknown_book(library):
    with pytest.raises(BookNotFound):
        lending.borrow_book(library.x_identity, 9999)


def test_cannot_borrow_same_book_twice(library):
    book = library.books[1]
    lending.borrow_book(library.x_identity, book.id)

    with pytest.raises(AlreadyBorrowed):
        lending.borrow_book(library.x_identity, book.id)
    assert book.available_copies == 1


def test_unavailable_book_produces_no_record(library):
    book = library.books[5]

    with pytest.raises(BookUnavailable):
        lending.borrow_book(library.x_identity, book.id)

    assert BorrowRecord.query.count() == 0
    assert book.available_copies == 0


def test_borrow_limit_is_four_active_records(library):
    for book in library.books[:4]:
        lending.borrow_book(library.x_identity, book.id)

    with pytest.raises(BorrowLimitExceeded):
        lending.borrow_book(library.x_identity, library.books[4].id)

    assert BorrowRecord.query.filter_by(student_id=library.x.id).count() == 4
    assert library.books[4].available_copies == 2


def test_returned_records_free_a_borrow_slot(library):
    records = [lending.borrow_book(library.x_identity, book.id) for book in library.books[:4]]
    lending.request_return(library.x_identity, records[0].id)
    with pytest.raises(BorrowLimitExceeded):
        lending.borrow_book(library.x_identity, library.books[4].id)

    lending.approve_return(library.staff_identity, records[0].id)
    record = lending.borrow_book(library.x_identity, library.books[4].id)
    assert record.status is BorrowStatus.BORROWED


def test_borrow_reserve_return_scenario(library):
    book_a = library.books[0]

    record = lending.borrow_book(library.x_identity, book_a.id, now=T0)
    assert book_a.available_copies == 0
    assert record.status is BorrowStatus.BORROWED

    with pytest.raises(BookUnavailable):
        lending.borrow_book(library.y_identity, book_a.id)
    reservation = lending.reserve_book(library.y_identity, book_a.id)
    assert reservation.status is ReservationStatus.WAITLISTED

    record = lending.request_return(library.x_identity, record.id)
    assert record.status is BorrowStatus.RETURN_REQUESTED
    assert record.returned_at is None
    assert book_a.available_copies == 0

    returned_at = T0 + timedelta(days=3)
    record = lending.approve_return(library.staff_identity, record.id, now=returned_at)
    assert record.status is BorrowStatus.RETURNED
    assert record.returned_at == returned_at
    assert book_a.available_copies == 1


def test_only_owner_can_request_return(library):
    record = lending.borrow_book(library.x_identity, library.books[1].id)

    with pytest.raises(RecordNotFound):
        lending.request_return(library.y_identity, record.id)


def test_request_return_only_from_borrowed(library):
    record = lending.borrow_book(library.x_identity, library.books[1].id)
    lending.request_return(library.x_identity, record.id)

    with pytest.raises(InvalidTransition):
        lending.request_return(library.x_identity, record.id)


def test_approve_return_requires_staff(library):
    record = lending.borrow_book(library.x_identity, library.books[1].id)
    lending.request_return(library.x_identity, record.id)

    with pytest.raises(NotStaff):
        lending.approve_return(library.x_identity, record.id)
    with pytest.raises(Unauthenticated):
        lending.approve_return(None, record.id)
    assert record.status is BorrowStatus.RETURN_REQUESTED


def test_approve_return_needs_a_request_first(library):
    book = library.books[1]
    record = lending.borrow_book(library.x_identity, book.id)

    with pytest.raises(InvalidTransition):
        lending.approve_return(library.staff_identity, record.id)
    assert record.returned_at is None
    assert book.available_copies == 1


def test_approving_twice_does_not_restore_two_copies(library):
    book = library.books[0]
    record = lending.borrow_book(library.x_identity, book.id)
    lending.request_return(library.x_identity, record.id)
    lending.approve_return(library.staff_identity, record.id)

    with pytest.raises(InvalidTransition):
        lending.approve_return(library.staff_identity, record.id)
    assert book.available_copies == 1


def test_inventory_stays_within_bounds(library):
    book = library.books[1]
    identities = [library.x_identity, library.y_identity]
    for _ in range(3):
        records = [lending.borrow_book(identity, book.id) for identity in identities]
        assert 0 <= book.available_copies <= book.total_copies
        for identity, record in zip(identities, records):
            lending.request_return(identity, record.id)
            lending.approve_return(library.staff_identity, record.id)
            assert 0 <= book.available_copies <= book.total_copies
    assert book.available_copies == book.total_copies


def test_borrow_request_does_not_touch_copies(library):
    book = library.books[0]

    record = lending.request_borrow(library.x_identity, book.id)
    assert record.status is BorrowStatus.PENDING
    assert book.available_copies == 1

    with pytest.raises(AlreadyBorrowed):
        lending.request_borrow(library.x_identity, book.id)

    record = lending.approve_borrow_request(library.staff_identity, record.id)
    assert record.status is BorrowStatus.APPROVED
    assert book.available_copies == 1


def test_rejected_borrow_request_is_final(library):
    record = lending.request_borrow(library.x_identity, library.books[2].id)

    record = lending.reject_borrow_request(library.staff_identity, record.id)
    assert record.status is BorrowStatus.REJECTED
    with pytest.raises(InvalidTransition):
        lending.approve_borrow_request(library.staff_identity, record.id)
    with pytest.raises(NotStaff):
        lending.reject_borrow_request(library.y_identity, record.id)


def test_borrow_request_cannot_be_returned(library):
    record = lending.request_borrow(library.x_identity, library.books[2].id)

    with pytest.raises(InvalidTransition):
        lending.request_return(library.x_identity, record.id)


def test_mark_overdue_flags_only_late_borrowed_records(library):
    late = lending.borrow_book(library.x_identity, library.books[1].id, now=T0)
    fresh = lending.borrow_book(library.x_identity, library.books[2].id, now=T0 + timedelta(days=10))
    requested = lending.borrow_book(library.y_identity, library.books[1].id, now=T0)
    lending.request_return(library.y_identity, requested.id)

    changed = lending.mark_overdue(now=T0 + timedelta(days=15))

    assert changed == 1
    assert db.session.get(BorrowRecord, late.id).status is BorrowStatus.OVERDUE
    assert db.session.get(BorrowRecord, fresh.id).status is BorrowStatus.BORROWED
    assert db.session.get(BorrowRecord, requested.id).status is BorrowStatus.RETURN_REQUESTED


def test_overdue_record_can_still_be_returned(library):
    book = library.books[0]
    record = lending.borrow_book(library.x_identity, book.id, now=T0)
    lending.mark_overdue(now=T0 + timedelta(days=20))

    lending.request_return(library.x_identity, record.id)
    record = lending.approve_return(library.staff_identity, record.id)

    assert record.status is BorrowStatus.RETURNED
    assert book.available_copies == 1


def test_overdue_records_are_live(library):
    record = lending.borrow_book(library.x_identity, library.books[1].id, now=T0)

    assert lending.overdue_records(now=T0 + timedelta(days=14)) == []
    assert lending.overdue_records(now=T0 + timedelta(days=14, seconds=1)) == [record]


def test_state_changes_are_audited(library):
    record = lending.borrow_book(library.x_identity, library.books[1].id)
    lending.request_return(library.x_identity, record.id)
    lending.approve_return(library.staff_identity, record.id)

    actions = [entry.action for entry in AuditLog.query.order_by(AuditLog.id).all()]
    assert actions == ['BORROW_CREATED', 'RETURN_REQUESTED', 'RETURN_APPROVED']


def test_borrow_history_filters(library):
    lending.borrow_book(library.x_identity, library.books[1].id, now=T0)
    lending.borrow_book(library.y_identity, library.books[2].id, now=T0 + timedelta(days=5))

    assert len(lending.borrow_history()) == 2
    assert [r.student_id for r in lending.borrow_history(student='xavier')] == [library.x.id]
    assert [r.book_id for r in lending.borrow_history(book='Book C')] == [library.books[2].id]
    assert [r.book_id for r in lending.borrow_history(book=str(library.books[1].id))] == [library.books[1].id]
    assert [r.student_id for r in lending.borrow_history(date_from=T0 + timedelta(days=1))] == [library.y.id]


def test_new_copy_added_later_can_be_borrowed(library):
    book = make_book('Book G', 'Biology', copies=1)
    record = lending.borrow_book(library.y_identity, book.id)
    assert record.book.title == 'Book G'


def test_pending_requests_count_toward_the_request_limit(library):
    for book in library.books[:4]:
        lending.request_borrow(library.x_identity, book.id)

    with pytest.raises(BorrowLimitExceeded):
        lending.request_borrow(library.x_identity, library.books[4].id)
    assert BorrowRecord.query.filter_by(student_id=library.x.id, status=BorrowStatus.PENDING).count() == 4

    # Requests do not hold copies, so a direct borrow is still allowed
    record = lending.borrow_book(library.x_identity, library.books[4].id)
    assert record.status is BorrowStatus.BORROWED


def test_storage_rejects_a_second_active_loan_for_the_same_book(library):
    book = library.books[2]
    returned = lending.borrow_book(library.x_identity, book.id, now=T0)
    lending.request_return(library.x_identity, returned.id)
    lending.approve_return(library.staff_identity, returned.id)
    lending.borrow_book(library.x_identity, book.id, now=T0 + timedelta(days=20))

    db.session.add(BorrowRecord(
        student_id=library.x.id, book_id=book.id,
        borrowed_at=T0, due_at=T0 + timedelta(days=14), status=BorrowStatus.OVERDUE,
    ))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()
