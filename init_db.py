"""Sample catalog and accounts for a fresh database.

Run ``flask --app app init-db`` or ``python init_db.py``.  Seeding is
idempotent: rows that already exist (by title or email) are skipped.
"""

import os

from werkzeug.security import generate_password_hash

from models import Account, Book, Staff, Student, db

SEED_PASSWORD = os.environ.get('SEED_PASSWORD', 'library123')

books_data = [
    ('Introduction to Algorithms', 'Thomas H. Cormen', 'Computer Science', '9780262046305', 3),
    ('Structure and Interpretation of Computer Programs', 'Harold Abelson', 'Computer Science', '9780262510875', 2),
    ('The Pragmatic Programmer', 'David Thomas', 'Computer Science', '9780135957059', 2),
    ('Operating System Concepts', 'Abraham Silberschatz', 'Computer Science', '9781119800361', 1),
    ('Calculus: Early Transcendentals', 'James Stewart', 'Mathematics', '9781337613927', 4),
    ('Linear Algebra Done Right', 'Sheldon Axler', 'Mathematics', '9783031410253', 2),
    ('Principles of Mathematical Analysis', 'Walter Rudin', 'Mathematics', '9780070542358', 1),
    ('University Physics', 'Hugh D. Young', 'Physics', '9780135159552', 3),
    ('The Feynman Lectures on Physics', 'Richard P. Feynman', 'Physics', '9780465023820', 2),
    ('A Brief History of Time', 'Stephen Hawking', 'Physics', '9780553380163', 1),
    ('Thinking, Fast and Slow', 'Daniel Kahneman', 'Psychology', '9780374533557', 2),
    ('Influence', 'Robert B. Cialdini', 'Psychology', '9780062937650', 1),
    ('Principles of Economics', 'N. Gregory Mankiw', 'Economics', '9780357038314', 3),
    ('The Wealth of Nations', 'Adam Smith', 'Economics', '9780553585971', 1),
    ('Molecular Biology of the Cell', 'Bruce Alberts', 'Biology', '9780393884821', 2),
    ('The Selfish Gene', 'Richard Dawkins', 'Biology', '9780198788607', 2),
    ('Sapiens', 'Yuval Noah Harari', 'History', '9780062316097', 2),
    ('Guns, Germs, and Steel', 'Jared Diamond', 'History', '9780393354324', 1),
    ('Pride and Prejudice', 'Jane Austen', 'Literature', '9780141439518', 2),
    ('One Hundred Years of Solitude', 'Gabriel Garcia Marquez', 'Literature', '9780060883287', 1),
]

students_data = [
    ('Alice Martin', 'alice.martin@university.edu', 'S2024001'),
    ('Bob Dupont', 'bob.dupont@university.edu', 'S2024002'),
    ('Charlie Bernard', 'charlie.bernard@university.edu', 'S2024003'),
    ('Diana Leclerc', 'diana.leclerc@university.edu', 'S2024004'),
    ('Eva Moreau', 'eva.moreau@university.edu', 'S2024005'),
]

staff_data = [
    ('Library Desk', 'desk@library.university.edu'),
]


def _account(email):
    account = Account.query.filter_by(email=email).first()
    if account is None:
        account = Account(email=email, password_hash=generate_password_hash(SEED_PASSWORD))
        db.session.add(account)
        db.session.flush()
    return account


def seed():
    added_books = 0
    for title, author, category, isbn, copies in books_data:
        if not Book.query.filter_by(title=title).first():
            db.session.add(Book(
                title=title,
                author=author,
                category=category,
                isbn=isbn,
                total_copies=copies,
                available_copies=copies,
            ))
            added_books += 1

    added_students = 0
    for name, email, number in students_data:
        if not Student.query.filter_by(email=email).first():
            account = _account(email)
            db.session.add(Student(name=name, email=email, student_number=number, account_id=account.id))
            added_students += 1

    for name, email in staff_data:
        if not Staff.query.filter_by(email=email).first():
            account = _account(email)
            db.session.add(Staff(name=name, email=email, account_id=account.id))

    db.session.commit()
    return added_books, added_students


if __name__ == '__main__':
    from app import create_app

    app = create_app()
    with app.app_context():
        added_books, added_students = seed()
        print(f'Database ready with {Book.query.count()} books and {Student.query.count()} students.')
        if added_books > 0 or added_students > 0:
            print(f'  -> {added_books} new books added')
            print(f'  -> {added_students} new students added')
