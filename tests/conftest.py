from datetime import datetime
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from auth import identity_for
from models import Account, Book, Staff, Student, db

PASSWORD = 'secret-pass'
T0 = datetime(2025, 3, 3, 9, 30)


@pytest.fixture
def app(tmp_path, request):
    # Each test gets its own SQLite file
    db_file = tmp_path / f'library_{request.node.name}.db'
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{db_file}',
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_student(name, email, number=None):
    account = Account(email=email, password_hash=generate_password_hash(PASSWORD))
    db.session.add(account)
    db.session.flush()
    student = Student(name=name, email=email, student_number=number, account_id=account.id)
    db.session.add(student)
    db.session.commit()
    return student, identity_for(account)


def make_staff(name, email):
    account = Account(email=email, password_hash=generate_password_hash(PASSWORD))
    db.session.add(account)
    db.session.flush()
    member = Staff(name=name, email=email, account_id=account.id)
    db.session.add(member)
    db.session.commit()
    return member, identity_for(account)


def make_book(title, category='General', copies=1, author='Some Author'):
    book = Book(title=title, author=author, category=category, total_copies=copies, available_copies=copies)
    db.session.add(book)
    db.session.commit()
    return book


@pytest.fixture
def library(app):
    x, x_identity = make_student('Xavier Student', 'x@university.edu', 'S1')
    y, y_identity = make_student('Yara Student', 'y@university.edu', 'S2')
    staff, staff_identity = make_staff('Desk Staff', 'desk@university.edu')

    orphan = Account(email='orphan@university.edu', password_hash=generate_password_hash(PASSWORD))
    db.session.add(orphan)
    db.session.commit()

    books = [
        make_book('Book A', 'Computer Science', copies=1),
        make_book('Book B', 'Computer Science', copies=2),
        make_book('Book C', 'Mathematics', copies=3),
        make_book('Book D', 'Mathematics', copies=1),
        make_book('Book E', 'Physics', copies=2),
        make_book('Book F', 'Physics', copies=0),
    ]
    return SimpleNamespace(
        x=x, x_identity=x_identity,
        y=y, y_identity=y_identity,
        staff=staff, staff_identity=staff_identity,
        orphan_identity=identity_for(orphan),
        books=books,
    )


@pytest.fixture
def signin(client):
    def _signin(email, password=PASSWORD):
        response = client.post('/api/auth/signin', json={'email': email, 'password': password})
        assert response.status_code == 200, response.get_json()
        return response.get_json()
    return _signin
