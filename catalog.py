"""Catalog reads and staff book management."""

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from auth import require_staff
from errors import BookInUse, BookNotFound, InvalidPayload
from models import (ACTIVE_BORROW_STATUSES, Book, BorrowRecord, Reservation,
                    db, log_action, unit_of_work)

EDITABLE_FIELDS = ('title', 'author', 'category', 'isbn', 'description', 'cover_url')
OPTIONAL_FIELDS = ('category', 'isbn', 'description', 'cover_url')


def list_books(category=None, q=None):
    query = Book.query
    if category:
        query = query.filter(Book.category == category)
    if q:
        pattern = f'%{q.strip()}%'
        query = query.filter(or_(
            Book.title.ilike(pattern),
            Book.author.ilike(pattern),
            Book.category.ilike(pattern),
            Book.isbn.ilike(pattern),
        ))
    return query.order_by(Book.title.asc()).all()


def list_categories():
    rows = db.session.query(Book.category).filter(Book.category.is_not(None)).distinct().order_by(Book.category).all()
    return [category for (category,) in rows if category]


def get_book(book_id):
    book = db.session.get(Book, book_id)
    if book is None:
        raise BookNotFound(book_id=book_id)
    return book


def _positive_int(value, name, minimum):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidPayload(f'{name} must be an integer')
    if number < minimum:
        raise InvalidPayload(f'{name} must be at least {minimum}')
    return number


def _clean_text_fields(data):
    cleaned = {}
    for field in EDITABLE_FIELDS:
        if field in data:
            value = data[field]
            if isinstance(value, str):
                value = value.strip()
            if field in OPTIONAL_FIELDS and not value:
                value = None
            cleaned[field] = value
    return cleaned


def create_book(identity, data) -> Book:
    staff = require_staff(identity)
    fields = _clean_text_fields(data)
    if not fields.get('title') or not fields.get('author'):
        raise InvalidPayload('Title and author are required')
    total = _positive_int(data.get('total_copies', 1), 'total_copies', 1)
    book = Book(total_copies=total, available_copies=total, **fields)
    try:
        with unit_of_work():
            db.session.add(book)
            db.session.flush()
            log_action('staff', staff.id, 'BOOK_CREATED', 'book', book.id, {'title': book.title})
    except IntegrityError:
        raise InvalidPayload('A book with this ISBN already exists', isbn=fields.get('isbn'))
    return book


def _resize(book, total):
    # Shift available by the change in total, against the stored row, never below zero
    delta = total - Book.total_copies
    resized = db.session.execute(
        update(Book)
        .where(Book.id == book.id, Book.available_copies + delta >= 0)
        .values(total_copies=total, available_copies=Book.available_copies + delta)
        .execution_options(synchronize_session=False)
    )
    if resized.rowcount != 1:
        on_loan = db.session.execute(
            select(Book.total_copies - Book.available_copies).where(Book.id == book.id)
        ).scalar()
        raise InvalidPayload(f'{on_loan} copies are on loan', on_loan=on_loan)


def update_book(identity, book_id, data) -> Book:
    """Edit a book.  A new ``total_copies`` moves ``available_copies`` by the same amount."""
    staff = require_staff(identity)
    book = get_book(book_id)
    fields = _clean_text_fields(data)
    if 'title' in fields and not fields['title']:
        raise InvalidPayload('Title cannot be empty')

    total = None
    if 'total_copies' in data:
        total = _positive_int(data['total_copies'], 'total_copies', 1)

    try:
        with unit_of_work():
            if total is not None:
                _resize(book, total)
            for field, value in fields.items():
                setattr(book, field, value)
            changed = sorted(fields) + (['total_copies'] if total is not None else [])
            log_action('staff', staff.id, 'BOOK_UPDATED', 'book', book.id, {'fields': changed})
    except IntegrityError:
        raise InvalidPayload('A book with this ISBN already exists', isbn=fields.get('isbn'))
    return book


def delete_book(identity, book_id) -> None:
    staff = require_staff(identity)
    book = get_book(book_id)

    active_loans = BorrowRecord.query.filter(
        BorrowRecord.book_id == book.id,
        BorrowRecord.status.in_(ACTIVE_BORROW_STATUSES),
    ).count()
    active_reservations = Reservation.query.filter_by(book_id=book.id, active=True).count()
    if active_loans > 0 or active_reservations > 0:
        raise BookInUse(active_loans=active_loans, active_reservations=active_reservations)

    with unit_of_work():
        BorrowRecord.query.filter_by(book_id=book.id).delete(synchronize_session='fetch')
        Reservation.query.filter_by(book_id=book.id).delete(synchronize_session='fetch')
        log_action('staff', staff.id, 'BOOK_DELETED', 'book', book.id, {'title': book.title})
        db.session.delete(book)
