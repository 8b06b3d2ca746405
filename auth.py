"""Accounts, sessions and the identity value passed to the lending rules.

An :class:`Identity` is resolved once per request from the signed session
cookie and then handed explicitly to every operation in ``lending``.  The
role is derived from which table (``students`` or ``staff``) links to the
account; an account is never linked to both.
"""

import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from errors import (InvalidCredentials, InvalidPayload, InvalidResetToken,
                    NotStaff, StudentRecordNotFound, Unauthenticated)
from models import (Account, PasswordResetToken, Role, Staff, Student, db,
                    log_action, unit_of_work, utcnow)

MIN_PASSWORD_LENGTH = 6


@dataclass(frozen=True)
class Identity:
    account_id: int
    email: str
    role: Optional[Role] = None
    student_id: Optional[int] = None
    staff_id: Optional[int] = None

    @property
    def is_staff(self):
        return self.role is Role.STAFF

    @property
    def actor_type(self):
        return self.role.value if self.role else 'account'

    @property
    def actor_id(self):
        return self.staff_id if self.is_staff else self.student_id


def _normalize_email(email):
    return (email or '').strip().lower()


def _check_password_strength(password):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidPayload(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')


def identity_for(account: Account) -> Identity:
    if account.staff is not None:
        return Identity(account.id, account.email, Role.STAFF, staff_id=account.staff.id)
    if account.student is not None:
        return Identity(account.id, account.email, Role.STUDENT, student_id=account.student.id)
    return Identity(account.id, account.email)


def load_identity(account_id) -> Optional[Identity]:
    if account_id is None:
        return None
    account = db.session.get(Account, account_id)
    if account is None:
        return None
    return identity_for(account)


def require_identity(identity: Optional[Identity]) -> Identity:
    if identity is None:
        raise Unauthenticated()
    return identity


def require_student(identity: Optional[Identity]) -> Student:
    """Return the student row linked to ``identity``."""
    identity = require_identity(identity)
    student = None
    if identity.student_id is not None:
        student = db.session.get(Student, identity.student_id)
    if student is None:
        raise StudentRecordNotFound()
    return student


def require_staff(identity: Optional[Identity]) -> Staff:
    identity = require_identity(identity)
    staff = None
    if identity.staff_id is not None:
        staff = db.session.get(Staff, identity.staff_id)
    if staff is None:
        raise NotStaff()
    return staff


def sign_in(email, password) -> Identity:
    account = Account.query.filter_by(email=_normalize_email(email)).first()
    if account is None or not check_password_hash(account.password_hash, password or ''):
        raise InvalidCredentials()
    return identity_for(account)


def _create_account(email, password):
    email = _normalize_email(email)
    if not email or '@' not in email:
        raise InvalidPayload('A valid email is required')
    _check_password_strength(password)
    if Account.query.filter_by(email=email).first():
        raise InvalidPayload('Email already registered', email=email)
    account = Account(email=email, password_hash=generate_password_hash(password))
    db.session.add(account)
    db.session.flush()
    return account


def register_student(identity, name, email, password, student_number=None) -> Student:
    staff = require_staff(identity)
    if not (name or '').strip():
        raise InvalidPayload('Name is required')
    try:
        with unit_of_work():
            account = _create_account(email, password)
            student = Student(
                name=name.strip(),
                email=account.email,
                student_number=student_number or None,
                account_id=account.id,
            )
            db.session.add(student)
            db.session.flush()
            log_action('staff', staff.id, 'STUDENT_CREATED', 'student', student.id, {'email': student.email})
    except IntegrityError:
        raise InvalidPayload('Email or student number already registered')
    return student


def register_staff(identity, name, email, password) -> Staff:
    staff = require_staff(identity)
    if not (name or '').strip():
        raise InvalidPayload('Name is required')
    try:
        with unit_of_work():
            account = _create_account(email, password)
            member = Staff(name=name.strip(), email=account.email, account_id=account.id)
            db.session.add(member)
            db.session.flush()
            log_action('staff', staff.id, 'STAFF_CREATED', 'staff', member.id, {'email': member.email})
    except IntegrityError:
        raise InvalidPayload('Email already registered')
    return member


def _deliver_reset_link(account, reset_url):
    sender = current_app.config.get('PASSWORD_RESET_SENDER')
    if sender is not None:
        sender(account.email, reset_url)
    elif current_app.debug or current_app.testing:
        current_app.logger.info('Password reset link for %s: %s', account.email, reset_url)
    else:
        current_app.logger.warning('No PASSWORD_RESET_SENDER configured, reset link for account %s not sent', account.id)


def send_password_reset(email, now=None) -> Optional[str]:
    """Issue a single-use reset token for ``email``.

    Returns the token, or None when no account matches.  Callers must not
    reveal which of the two happened.  The reset link goes to the
    ``PASSWORD_RESET_SENDER`` callable when one is configured.
    """
    now = now or utcnow()
    account = Account.query.filter_by(email=_normalize_email(email)).first()
    if account is None:
        current_app.logger.info('Password reset requested for unknown email')
        return None
    token = secrets.token_urlsafe(32)
    hours = current_app.config['PASSWORD_RESET_HOURS']
    db.session.add(PasswordResetToken(
        account_id=account.id,
        token=token,
        expires_on=now + timedelta(hours=hours),
    ))
    log_action('account', account.id, 'PASSWORD_RESET_REQUESTED', 'account', account.id)
    db.session.commit()
    current_app.logger.info('Password reset token issued for account %s', account.id)
    _deliver_reset_link(account, current_app.config['PASSWORD_RESET_URL'].format(token=token))
    return token


def reset_password(token, new_password, now=None) -> Identity:
    now = now or utcnow()
    reset = PasswordResetToken.query.filter_by(token=token or '').first()
    if reset is None or reset.used or reset.expires_on < now:
        raise InvalidResetToken()
    _check_password_strength(new_password)
    reset.used = True
    reset.account.password_hash = generate_password_hash(new_password)
    log_action('account', reset.account_id, 'PASSWORD_RESET', 'account', reset.account_id)
    db.session.commit()
    return identity_for(reset.account)


def update_password(identity, new_password) -> None:
    identity = require_identity(identity)
    _check_password_strength(new_password)
    account = db.session.get(Account, identity.account_id)
    if account is None:
        raise Unauthenticated()
    account.password_hash = generate_password_hash(new_password)
    log_action(identity.actor_type, identity.actor_id, 'PASSWORD_UPDATED', 'account', account.id)
    db.session.commit()
