import os


class Config:
    # Secret key for session management and security
    SECRET_KEY: str = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Database configuration
    DATABASE_PATH: str = os.environ.get('CIRCULATION_DATABASE') or os.path.join(
        os.path.dirname(os.path.dirname(__file__)), 'data', 'circulation.db'
    )
    LOCK_TIMEOUT_SECONDS: float = 5.0  # Max wait for the write lock

    # Logging
    LOG_LEVEL: str = os.environ.get('LOG_LEVEL', 'INFO')

    # Background sweeps
    SCHEDULER_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 300

    # Circulation business rules (defaults, overridable via SystemConfig)
    DAILY_FINE_RATE: float = 50.0  # Fine per whole day late
    LOAN_PERIOD_DAYS: int = 14
    MAX_RENEWALS: int = 2
    RENEWAL_EXTENSION_DAYS: int = 7
    RESERVATION_EXPIRY_DAYS: int = 30  # Pending reservations lapse after this
    RESERVATION_HOLD_HOURS: int = 48  # Hours a freed copy is held for a reserver
    BLOCK_THRESHOLD_UNPAID_FINES: float = 100.0  # Checkout denied at or above
    MAX_ACTIVE_LOANS: int = 5
    MAX_LOAN_PERIOD_DAYS: int = 365  # Longest loan period a checkout may ask for

    # Accepted payment methods
    PAYMENT_METHODS = ('cash', 'card', 'transfer', 'payroll')
