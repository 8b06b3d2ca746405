import os
from datetime import datetime
from functools import wraps

import click
from flask import Blueprint, Flask, current_app, jsonify, request, session
from sqlalchemy.exc import SQLAlchemyError

import analytics
import auth
import catalog
import lending
from config import Config
from errors import InvalidPayload, LibraryError
from fines import outstanding_fines, record_fine
from models import AuditLog, BorrowStatus, ReservationStatus, db, utcnow
from recommendations import recommend_books

api = Blueprint('api', __name__, url_prefix='/api')


def current_identity():
    account_id = session.get('account_id')
    identity = auth.load_identity(account_id)
    if account_id is not None and identity is None:
        session.pop('account_id', None)
    return identity


def with_identity(f):
    """Pass the caller's identity (or None) as the first argument."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        return f(current_identity(), *args, **kwargs)
    return decorated_function


def staff_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        identity = current_identity()
        auth.require_staff(identity)
        return f(identity, *args, **kwargs)
    return decorated_function


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidPayload('Request body must be a JSON object')
    return data


def parse_date_arg(name):
    value = request.args.get(name, '').strip()
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise InvalidPayload(f'{name} must be an ISO date', **{name: value})


def _iso(value):
    return value.isoformat() if value else None


def identity_to_dict(identity):
    return {
        'account_id': identity.account_id,
        'email': identity.email,
        'role': identity.role.value if identity.role else None,
        'student_id': identity.student_id,
        'staff_id': identity.staff_id,
    }


def book_to_dict(b):
    return {
        'id': b.id,
        'title': b.title,
        'author': b.author,
        'category': b.category,
        'isbn': b.isbn,
        'description': b.description,
        'cover_url': b.cover_url,
        'total_copies': b.total_copies,
        'available_copies': b.available_copies,
    }


def student_to_dict(s):
    return {
        'id': s.id,
        'name': s.name,
        'email': s.email,
        'student_number': s.student_number,
    }


def record_to_dict(r, now=None):
    return {
        'id': r.id,
        'student_id': r.student_id,
        'book_id': r.book_id,
        'student': {'name': r.student.name, 'email': r.student.email, 'student_number': r.student.student_number},
        'book': {'title': r.book.title, 'author': r.book.author, 'category': r.book.category},
        'borrowed_at': _iso(r.borrowed_at),
        'due_at': _iso(r.due_at),
        'returned_at': _iso(r.returned_at),
        'status': r.status.value,
        'fine': str(record_fine(r, now=now)),
    }


def reservation_to_dict(r):
    return {
        'id': r.id,
        'student_id': r.student_id,
        'book_id': r.book_id,
        'book': {'title': r.book.title, 'author': r.book.author},
        'status': r.status.value,
        'reserved_on': _iso(r.reserved_on),
        'active': r.active,
    }


def audit_to_dict(entry):
    return {
        'id': entry.id,
        'actor_type': entry.actor_type,
        'actor_id': entry.actor_id,
        'action': entry.action,
        'entity_type': entry.entity_type,
        'entity_id': entry.entity_id,
        'payload': entry.payload,
        'created_on': _iso(entry.created_on),
    }


@api.app_errorhandler(LibraryError)
def handle_library_error(error):
    return jsonify(error.to_dict()), error.status


@api.app_errorhandler(SQLAlchemyError)
def handle_backend_error(error):
    db.session.rollback()
    current_app.logger.exception('Database error while handling %s %s', request.method, request.path)
    return jsonify({'error': 'Something went wrong, please try again', 'code': 'backend_error'}), 500


@api.app_errorhandler(404)
def handle_not_found(error):
    return jsonify({'error': 'Not found', 'code': 'not_found'}), 404


@api.app_errorhandler(405)
def handle_method_not_allowed(error):
    return jsonify({'error': 'Method not allowed', 'code': 'method_not_allowed'}), 405


# Authentication

@api.route('/auth/signin', methods=['POST'])
def sign_in():
    data = json_body()
    identity = auth.sign_in(data.get('email'), data.get('password'))
    session.clear()
    session['account_id'] = identity.account_id
    return jsonify(identity_to_dict(identity))


@api.route('/auth/signout', methods=['POST'])
def sign_out():
    session.pop('account_id', None)
    return '', 204


@api.route('/auth/me')
@with_identity
def me(identity):
    identity = auth.require_identity(identity)
    return jsonify(identity_to_dict(identity))


@api.route('/auth/password-reset', methods=['POST'])
def password_reset():
    data = json_body()
    auth.send_password_reset(data.get('email'))
    # Same answer whether or not the email exists
    return jsonify({'message': 'If the email is registered, a reset link has been sent'}), 202


@api.route('/auth/password-reset/confirm', methods=['POST'])
def password_reset_confirm():
    data = json_body()
    auth.reset_password(data.get('token'), data.get('password'))
    return jsonify({'message': 'Password reset successful'})


@api.route('/auth/password', methods=['POST'])
@with_identity
def change_password(identity):
    data = json_body()
    auth.update_password(identity, data.get('password'))
    return jsonify({'message': 'Password updated'})


@api.route('/students', methods=['POST'])
@with_identity
def create_student(identity):
    data = json_body()
    student = auth.register_student(
        identity, data.get('name'), data.get('email'), data.get('password'), data.get('student_number'))
    return jsonify(student_to_dict(student)), 201


@api.route('/staff', methods=['POST'])
@with_identity
def create_staff(identity):
    data = json_body()
    member = auth.register_staff(identity, data.get('name'), data.get('email'), data.get('password'))
    return jsonify({'id': member.id, 'name': member.name, 'email': member.email}), 201


# Catalog

@api.route('/books')
def list_books():
    books = catalog.list_books(category=request.args.get('category'), q=request.args.get('q'))
    return jsonify([book_to_dict(b) for b in books])


@api.route('/categories')
def list_categories():
    return jsonify(catalog.list_categories())


@api.route('/books/<int:book_id>')
def book_detail(book_id):
    return jsonify(book_to_dict(catalog.get_book(book_id)))


@api.route('/books', methods=['POST'])
@with_identity
def add_book(identity):
    book = catalog.create_book(identity, json_body())
    return jsonify(book_to_dict(book)), 201


@api.route('/books/<int:book_id>', methods=['PUT', 'PATCH'])
@with_identity
def edit_book(identity, book_id):
    book = catalog.update_book(identity, book_id, json_body())
    return jsonify(book_to_dict(book))


@api.route('/books/<int:book_id>', methods=['DELETE'])
@with_identity
def remove_book(identity, book_id):
    catalog.delete_book(identity, book_id)
    return '', 204


# Lending

@api.route('/books/<int:book_id>/borrow', methods=['POST'])
@with_identity
def borrow(identity, book_id):
    record = lending.borrow_book(identity, book_id)
    return jsonify({'message': 'Book borrowed successfully', 'record': record_to_dict(record)}), 201


@api.route('/books/<int:book_id>/borrow-request', methods=['POST'])
@with_identity
def borrow_request(identity, book_id):
    record = lending.request_borrow(identity, book_id)
    return jsonify({'message': 'Borrow request sent', 'record': record_to_dict(record)}), 201


@api.route('/books/<int:book_id>/reserve', methods=['POST'])
@with_identity
def reserve(identity, book_id):
    reservation = lending.reserve_book(identity, book_id)
    if reservation.status is ReservationStatus.RESERVED:
        message = 'Book reserved successfully'
    else:
        message = 'Added to waitlist'
    return jsonify({'message': message, 'reservation': reservation_to_dict(reservation)}), 201


@api.route('/reservations/<int:reservation_id>/cancel', methods=['POST'])
@with_identity
def cancel_reservation(identity, reservation_id):
    reservation = lending.cancel_reservation(identity, reservation_id)
    return jsonify({'message': 'Reservation cancelled', 'reservation': reservation_to_dict(reservation)})


@api.route('/records/<int:record_id>/request-return', methods=['POST'])
@with_identity
def request_return(identity, record_id):
    record = lending.request_return(identity, record_id)
    return jsonify({'message': 'Return requested', 'record': record_to_dict(record)})


@api.route('/records/<int:record_id>/approve-return', methods=['POST'])
@with_identity
def approve_return(identity, record_id):
    record = lending.approve_return(identity, record_id)
    return jsonify({'message': 'Return approved', 'record': record_to_dict(record)})


@api.route('/records/<int:record_id>/approve', methods=['POST'])
@with_identity
def approve_request(identity, record_id):
    record = lending.approve_borrow_request(identity, record_id)
    return jsonify({'message': 'Borrow request approved', 'record': record_to_dict(record)})


@api.route('/records/<int:record_id>/reject', methods=['POST'])
@with_identity
def reject_request(identity, record_id):
    record = lending.reject_borrow_request(identity, record_id)
    return jsonify({'message': 'Borrow request rejected', 'record': record_to_dict(record)})


@api.route('/records/mark-overdue', methods=['POST'])
@staff_required
def mark_overdue(identity):
    changed = lending.mark_overdue(identity=identity)
    return jsonify({'marked_overdue': changed})


# Student dashboard

@api.route('/me/records')
@with_identity
def my_records(identity):
    student = auth.require_student(identity)
    now = utcnow()
    return jsonify([record_to_dict(r, now) for r in lending.student_records(student.id)])


@api.route('/me/fines')
@with_identity
def my_fines(identity):
    student = auth.require_student(identity)
    now = utcnow()
    items, total = outstanding_fines(student.id, now)
    return jsonify({
        'total': str(total),
        'records': [record_to_dict(record, now) for record, _ in items],
    })


@api.route('/me/reservations')
@with_identity
def my_reservations(identity):
    student = auth.require_student(identity)
    return jsonify([reservation_to_dict(r) for r in lending.student_reservations(student.id)])


@api.route('/me/recommendations')
@with_identity
def my_recommendations(identity):
    student = auth.require_student(identity)
    return jsonify([
        dict(book_to_dict(book), borrow_count=count)
        for book, count in recommend_books(student.id)
    ])


# Staff views

@api.route('/staff/dashboard')
@staff_required
def staff_dashboard(identity):
    now = utcnow()
    return jsonify({
        'return_requests': [record_to_dict(r, now) for r in lending.records_with_status(BorrowStatus.RETURN_REQUESTED)],
        'pending_requests': [record_to_dict(r, now) for r in lending.records_with_status(BorrowStatus.PENDING)],
        'borrowed': [record_to_dict(r, now) for r in lending.records_with_status(BorrowStatus.BORROWED)],
        'overdue': [record_to_dict(r, now) for r in lending.overdue_records(now)],
    })


@api.route('/records')
@staff_required
def borrow_history(identity):
    records = lending.borrow_history(
        student=request.args.get('student', '').strip() or None,
        book=request.args.get('book', '').strip() or None,
        date_from=parse_date_arg('date_from'),
        date_to=parse_date_arg('date_to'),
    )
    now = utcnow()
    return jsonify([record_to_dict(r, now) for r in records])


@api.route('/stats')
@staff_required
def stats(identity):
    now = utcnow()
    payload = analytics.library_stats(now)
    payload['borrows_per_month'] = analytics.borrows_per_month(now)
    payload['popular_books'] = [
        {'id': book.id, 'title': book.title, 'author': book.author, 'borrow_count': count}
        for book, count in analytics.popular_books()
    ]
    return jsonify(payload)


@api.route('/audit')
@staff_required
def audit_log(identity):
    logs = AuditLog.query.order_by(AuditLog.created_on.desc(), AuditLog.id.desc()).limit(200).all()
    return jsonify([audit_to_dict(entry) for entry in logs])


def register_commands(app):
    @app.cli.command('init-db')
    @click.option('--seed/--no-seed', default=True, help='Add the sample catalog and accounts.')
    def init_db_command(seed):
        """Create tables and optionally seed sample data."""
        import init_db
        db.create_all()
        if seed:
            added_books, added_students = init_db.seed()
            click.echo(f'Seeded {added_books} books and {added_students} students.')
        click.echo('Database ready.')

    @app.cli.command('mark-overdue')
    def mark_overdue_command():
        """Flag borrowed records past their due date."""
        changed = lending.mark_overdue()
        click.echo(f'{changed} record(s) marked overdue.')


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    db.init_app(app)
    app.register_blueprint(api)
    register_commands(app)

    with app.app_context():
        db.create_all()

    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    create_app().run(debug=True, port=port)
