from flask import current_app
from sqlalchemy import and_, func, select

from models import ACTIVE_BORROW_STATUSES, Book, BorrowRecord, BorrowStatus, db

# Records that count as a real borrow, past or present
LOAN_STATUSES = ACTIVE_BORROW_STATUSES + (BorrowStatus.RETURNED,)


def recommend_books(student_id, limit=None):
    """Popular books from the categories the student has borrowed from.

    Books the student currently holds are left out.  Ranking is by how many
    times each book has been borrowed by anyone, ties broken by book id.
    Returns ``(book, borrow_count)`` pairs.
    """
    if limit is None:
        limit = current_app.config['RECOMMENDATION_LIMIT']

    categories = (
        select(Book.category)
        .join(BorrowRecord, BorrowRecord.book_id == Book.id)
        .where(
            BorrowRecord.student_id == student_id,
            BorrowRecord.status.in_(LOAN_STATUSES),
            Book.category.is_not(None),
        )
        .distinct()
    )
    held = select(BorrowRecord.book_id).where(
        BorrowRecord.student_id == student_id,
        BorrowRecord.status.in_(ACTIVE_BORROW_STATUSES),
    )
    borrow_count = func.count(BorrowRecord.id)

    return db.session.query(Book, borrow_count).outerjoin(
        BorrowRecord,
        and_(BorrowRecord.book_id == Book.id, BorrowRecord.status.in_(LOAN_STATUSES)),
    ).filter(
        Book.category.in_(categories),
        Book.id.not_in(held),
    ).group_by(Book.id).order_by(borrow_count.desc(), Book.id.asc()).limit(limit).all()
