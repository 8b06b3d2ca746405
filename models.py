import enum
import json
from contextlib import contextmanager
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import text

db = SQLAlchemy()


def utcnow():
    # Naive UTC, the way the DateTime columns store it
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def unit_of_work():
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


class Role(str, enum.Enum):
    STUDENT = 'student'
    STAFF = 'staff'


class BorrowStatus(str, enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    BORROWED = 'borrowed'
    OVERDUE = 'overdue'
    RETURN_REQUESTED = 'return_requested'
    RETURNED = 'returned'


class ReservationStatus(str, enum.Enum):
    RESERVED = 'reserved'
    WAITLISTED = 'waitlisted'


# Statuses in which the student physically holds a copy
ACTIVE_BORROW_STATUSES = (
    BorrowStatus.BORROWED,
    BorrowStatus.OVERDUE,
    BorrowStatus.RETURN_REQUESTED,
)

ACTIVE_STATUS_SQL = "status IN ('borrowed', 'overdue', 'return_requested')"

BORROW_TRANSITIONS = {
    BorrowStatus.PENDING: {BorrowStatus.APPROVED, BorrowStatus.REJECTED},
    BorrowStatus.APPROVED: set(),
    BorrowStatus.REJECTED: set(),
    BorrowStatus.BORROWED: {BorrowStatus.RETURN_REQUESTED, BorrowStatus.OVERDUE},
    BorrowStatus.OVERDUE: {BorrowStatus.RETURN_REQUESTED},
    BorrowStatus.RETURN_REQUESTED: {BorrowStatus.RETURNED},
    BorrowStatus.RETURNED: set(),
}


def _enum_column(enum_cls, **kwargs):
    return db.Column(
        db.Enum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=32,
            validate_strings=True,
        ),
        **kwargs
    )


class Account(db.Model):
    __tablename__ = 'accounts'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_on = db.Column(db.DateTime, default=utcnow, nullable=False)

    student = db.relationship('Student', backref='account', uselist=False, lazy=True)
    staff = db.relationship('Staff', backref='account', uselist=False, lazy=True)


class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    student_number = db.Column(db.String(32), unique=True, nullable=True)
    account_id = db.Column(db.Integer, db.ForeignKey('accounts.id'), unique=True, nullable=True)

    borrow_records = db.relationship('BorrowRecord', backref='student', lazy=True)
    reservations = db.relationship('Reservation', backref='student', lazy=True)


class Staff(db.Model):
    __tablename__ = 'staff'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    account_id = db.Column(db.Integer, db.ForeignKey('accounts.id'), unique=True, nullable=True)


class Book(db.Model):
    __tablename__ = 'books'
    __table_args__ = (
        db.CheckConstraint(
            'available_copies >= 0 AND available_copies <= total_copies',
            name='ck_books_available_copies',
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(250), nullable=False)
    author = db.Column(db.String(200))
    category = db.Column(db.String(120), nullable=True)
    isbn = db.Column(db.String(20), unique=True, nullable=True)
    description = db.Column(db.Text, nullable=True)
    cover_url = db.Column(db.String(500), nullable=True)
    total_copies = db.Column(db.Integer, default=1, nullable=False)
    available_copies = db.Column(db.Integer, default=1, nullable=False)
    created_on = db.Column(db.DateTime, default=utcnow)

    borrow_records = db.relationship('BorrowRecord', backref='book', lazy=True)
    reservations = db.relationship('Reservation', backref='book', lazy=True)


class BorrowRecord(db.Model):
    __tablename__ = 'borrow_records'
    __table_args__ = (
        # One active loan per (student, book)
        db.Index(
            'uq_borrow_records_active_student_book',
            'student_id',
            'book_id',
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_SQL),
            postgresql_where=text(ACTIVE_STATUS_SQL),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey('books.id'), nullable=False, index=True)
    borrowed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    due_at = db.Column(db.DateTime, nullable=False)
    returned_at = db.Column(db.DateTime, nullable=True)
    status = _enum_column(BorrowStatus, default=BorrowStatus.BORROWED, nullable=False, index=True)

    def can_transition_to(self, target):
        return target in BORROW_TRANSITIONS[self.status]

    @property
    def is_active(self):
        return self.status in ACTIVE_BORROW_STATUSES


class Reservation(db.Model):
    __tablename__ = 'reservations'
    __table_args__ = (
        # One active reservation per (student, book); cancelled rows are kept
        db.Index(
            'uq_reservations_active_student_book',
            'student_id',
            'book_id',
            unique=True,
            sqlite_where=text('active = 1'),
            postgresql_where=text('active'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('books.id'), nullable=False)
    status = _enum_column(ReservationStatus, nullable=False)
    reserved_on = db.Column(db.DateTime, default=utcnow, nullable=False)
    active = db.Column(db.Boolean, default=True, nullable=False)


class PasswordResetToken(db.Model):
    __tablename__ = 'password_reset_tokens'

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey('accounts.id'), nullable=False)
    token = db.Column(db.String(64), unique=True, nullable=False)
    expires_on = db.Column(db.DateTime, nullable=False)
    used = db.Column(db.Boolean, default=False, nullable=False)

    account = db.relationship('Account', lazy=True)


class AuditLog(db.Model):
    __tablename__ = 'audit_log'

    id = db.Column(db.Integer, primary_key=True)
    actor_type = db.Column(db.String(32), nullable=False)  # student, staff, system
    actor_id = db.Column(db.Integer, nullable=True)
    action = db.Column(db.String(120), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)  # book, borrow_record, reservation, account
    entity_id = db.Column(db.Integer, nullable=True)
    payload = db.Column(db.Text, nullable=True)
    created_on = db.Column(db.DateTime, default=utcnow, nullable=False)


def log_action(actor_type, actor_id, action, entity_type, entity_id, payload=None):
    entry = AuditLog(
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=json.dumps(payload, ensure_ascii=True, default=str) if payload else None
    )
    db.session.add(entry)
    return entry
