"""Circulation error taxonomy.

Every failure the engine reports derives from ``CirculationError`` and falls
into one of four families:

    ValidationError  - malformed input or unknown entity, rejected before
                       any write happens.
    StateConflict    - a precondition on current state was violated
                       (copy already on loan, loan already finalized, ...).
                       Never retried automatically.
    PolicyDenied     - a business rule refused the request (blocked patron,
                       limits, renewals).
    TransientInfra   - storage trouble such as a lock timeout. The caller may
                       retry with backoff.

Each class carries a stable ``code`` and the HTTP status used by the API.
"""


class CirculationError(Exception):
    """Base class for all circulation errors."""

    code = 'circulation_error'
    status_code = 400

    def __init__(self, message: str = '') -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {'success': False, 'error': self.code, 'message': self.message}


# ==================== VALIDATION ====================

class ValidationError(CirculationError):
    code = 'validation_error'
    status_code = 400


class NotFoundError(ValidationError):
    code = 'not_found'
    status_code = 404


class PatronNotFound(NotFoundError):
    code = 'patron_not_found'


class TitleNotFound(NotFoundError):
    code = 'title_not_found'


class CopyNotFound(NotFoundError):
    code = 'copy_not_found'


class LoanNotFound(NotFoundError):
    code = 'loan_not_found'


class FineNotFound(NotFoundError):
    code = 'fine_not_found'


class ReservationNotFound(NotFoundError):
    code = 'reservation_not_found'


# ==================== STATE CONFLICTS ====================

class StateConflict(CirculationError):
    code = 'state_conflict'
    status_code = 409


class CopyUnavailable(StateConflict):
    code = 'copy_unavailable'


class InvalidState(StateConflict):
    code = 'invalid_state'


class AlreadyFinalized(StateConflict):
    code = 'already_finalized'


class OverPayment(StateConflict):
    code = 'over_payment'


class DuplicateReservation(StateConflict):
    code = 'duplicate_reservation'


class ReservationNotActive(StateConflict):
    code = 'reservation_not_active'


# ==================== POLICY ====================

class PolicyDenied(CirculationError):
    code = 'policy_denied'
    status_code = 403


class PatronBlocked(PolicyDenied):
    code = 'patron_blocked'


class PatronInactive(PolicyDenied):
    code = 'patron_inactive'


class LimitExceeded(PolicyDenied):
    code = 'limit_exceeded'


class RenewalDenied(PolicyDenied):
    code = 'renewal_denied'


class TitleAvailable(PolicyDenied):
    code = 'title_available'


# ==================== INFRASTRUCTURE ====================

class TransientInfra(CirculationError):
    code = 'transient_infra'
    status_code = 503


class StorageTimeout(TransientInfra):
    code = 'storage_timeout'
