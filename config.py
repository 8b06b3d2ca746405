import os


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///library.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Lending rules
    MAX_ACTIVE_LOANS = int(os.environ.get('MAX_ACTIVE_LOANS', '4'))
    LOAN_PERIOD_DAYS = int(os.environ.get('LOAN_PERIOD_DAYS', '14'))
    FINE_PER_DAY = os.environ.get('FINE_PER_DAY', '0.50')
    RECOMMENDATION_LIMIT = int(os.environ.get('RECOMMENDATION_LIMIT', '5'))

    PASSWORD_RESET_HOURS = int(os.environ.get('PASSWORD_RESET_HOURS', '1'))
    PASSWORD_RESET_URL = os.environ.get('PASSWORD_RESET_URL', '/reset-password?token={token}')
    # Callable (email, reset_url); without one the link is only logged in debug or testing
    PASSWORD_RESET_SENDER = None
