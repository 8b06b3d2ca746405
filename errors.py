"""Errors raised by the lending rules.

Every error carries a machine readable ``code`` and the HTTP ``status`` the
API answers with.  Validation failures abort the operation and are shown to
the user; auth failures send the client back to sign-in.
"""


class LibraryError(Exception):
    code = 'library_error'
    status = 400
    message = 'Library error'

    def __init__(self, message=None, **details):
        super().__init__(message or self.message)
        self.details = details

    def to_dict(self):
        payload = {'error': str(self), 'code': self.code}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(LibraryError):
    code = 'invalid'
    message = 'Invalid request'


class InvalidPayload(ValidationError):
    code = 'invalid_payload'
    message = 'Missing or malformed fields'


class BookNotFound(ValidationError):
    code = 'book_not_found'
    status = 404
    message = 'Book not found'


class RecordNotFound(ValidationError):
    code = 'record_not_found'
    status = 404
    message = 'Borrow record not found'


class ReservationNotFound(ValidationError):
    code = 'reservation_not_found'
    status = 404
    message = 'Reservation not found'


class AlreadyBorrowed(ValidationError):
    code = 'already_borrowed'
    status = 409
    message = 'You already have an active borrow for this book'


class BorrowLimitExceeded(ValidationError):
    code = 'borrow_limit_exceeded'
    status = 409
    message = 'Borrow limit reached'


class BookUnavailable(ValidationError):
    code = 'book_unavailable'
    status = 409
    message = 'No copies available to borrow'


class DuplicateReservation(ValidationError):
    code = 'duplicate_reservation'
    status = 409
    message = 'You already have a reservation or waitlist entry for this book'


class InvalidTransition(ValidationError):
    code = 'invalid_transition'
    status = 409
    message = 'Status change not allowed'


class BookInUse(ValidationError):
    code = 'book_in_use'
    status = 409
    message = 'Book has active loans or reservations'


class AuthError(LibraryError):
    code = 'auth_error'
    status = 401
    message = 'Authentication error'


class Unauthenticated(AuthError):
    code = 'not_authenticated'
    message = 'Please sign in'


class InvalidCredentials(AuthError):
    code = 'invalid_credentials'
    message = 'Invalid email or password'


class InvalidResetToken(AuthError):
    code = 'invalid_reset_token'
    status = 400
    message = 'Reset link is invalid or expired'


class StudentRecordNotFound(AuthError):
    code = 'student_not_found'
    status = 403
    message = 'Student record not found. Please contact the library.'


class NotStaff(AuthError):
    code = 'not_staff'
    status = 403
    message = 'Staff access required'
