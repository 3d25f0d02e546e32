"""Patron directory.

Person and role management is owned by another system; circulation only
stores what it needs to decide a checkout: whether the patron is active and
the attribute sets of the roles they hold. A patron is not a subclass per
role. Each role ('student', 'professor', 'staff', ...) is a capability
looked up by patron identity, and its attribute set may carry circulation
overrides such as ``loan_period_days`` or ``max_active_loans``.
"""
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from models.audit_log import AuditLog
from models.database import get_db, to_db_time, transaction
from models.errors import PatronNotFound, ValidationError

# Role attributes that must be positive whole numbers.
NUMERIC_CAPABILITIES = ('loan_period_days', 'max_active_loans')


def _positive_int(attribute: str, value: Any) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f'{attribute} must be a positive whole number, got {value!r}')
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f'{attribute} must be a positive whole number, got {value!r}')
    if number <= 0:
        raise ValidationError(f'{attribute} must be a positive whole number, got {value!r}')
    return number


def _clean_attributes(role: str, attributes: Any) -> Dict[str, Any]:
    if attributes is None:
        return {}
    if not isinstance(attributes, dict):
        raise ValidationError(f'Attributes of role {role} must be an object')
    cleaned = dict(attributes)
    for attribute in NUMERIC_CAPABILITIES:
        if attribute in cleaned:
            cleaned[attribute] = _positive_int(attribute, cleaned[attribute])
    return cleaned


class Patron:
    """Represents a library patron.

    Attributes:
        id (str): Unique patron identifier.
        name (str): Full name.
        email (str): Contact email.
        status (str): 'active' or 'inactive'.
        registered_at (str): Registration timestamp.
    """

    def __init__(self, id: str, name: str, email: str, status: str,
                 registered_at: str) -> None:
        self.id = id
        self.name = name
        self.email = email
        self.status = status
        self.registered_at = registered_at
        self._roles: Optional[Dict[str, Dict[str, Any]]] = None

    @property
    def is_active(self) -> bool:
        return self.status == 'active'

    @staticmethod
    def get_by_id(patron_id: str) -> Optional['Patron']:
        """Retrieve a patron by ID. None if not found."""
        db = get_db()
        row = db.execute('SELECT * FROM patrons WHERE id = ?', (patron_id,)).fetchone()
        if row:
            return Patron(**dict(row))
        return None

    @staticmethod
    def get_by_email(email: str) -> Optional['Patron']:
        db = get_db()
        row = db.execute('SELECT * FROM patrons WHERE email = ?', (email,)).fetchone()
        if row:
            return Patron(**dict(row))
        return None

    @staticmethod
    def require(patron_id: str) -> 'Patron':
        patron = Patron.get_by_id(patron_id)
        if not patron:
            raise PatronNotFound(f'Patron {patron_id} not found')
        return patron

    @staticmethod
    def get_status(patron_id: str) -> Dict[str, bool]:
        """Person/role lookup used by checkout: ``{'active': bool}``."""
        return {'active': Patron.require(patron_id).is_active}

    @staticmethod
    def create(name: str, email: str,
               roles: Optional[Dict[str, Dict[str, Any]]] = None,
               actor_id: Optional[str] = None,
               now: Optional[datetime] = None) -> 'Patron':
        """Register a patron with optional role attribute sets.

        Args:
            name: Full name.
            email: Email address (must be unique).
            roles: Mapping of role name to its attribute set.

        Returns:
            The new Patron.
        """
        if not name or not email:
            raise ValidationError('Name and email are required')
        if Patron.get_by_email(email):
            raise ValidationError(f'Email {email} is already registered')

        roles = {role: _clean_attributes(role, attributes)
                 for role, attributes in (roles or {}).items()}

        patron_id = str(uuid.uuid4())
        with transaction() as db:
            db.execute('''
                INSERT INTO patrons (id, name, email, status, registered_at)
                VALUES (?, ?, ?, 'active', ?)
            ''', (patron_id, name, email, to_db_time(now or datetime.now())))
            for role, attributes in roles.items():
                db.execute('''
                    INSERT INTO patron_roles (patron_id, role, attributes)
                    VALUES (?, ?, ?)
                ''', (patron_id, role, json.dumps(attributes)))

            patron = Patron.get_by_id(patron_id)
            AuditLog.record('patron', patron_id, 'Create', patron.to_dict(),
                            actor_id=actor_id, timestamp=now)
        return patron

    def set_active(self, active: bool, actor_id: Optional[str] = None,
                   now: Optional[datetime] = None) -> None:
        """Activate or deactivate the patron."""
        new_status = 'active' if active else 'inactive'
        if new_status == self.status:
            return
        with transaction() as db:
            before = self.to_dict()
            db.execute('UPDATE patrons SET status = ? WHERE id = ?', (new_status, self.id))
            self.status = new_status
            AuditLog.record('patron', self.id, 'Update', self.to_dict(),
                            before_state=before, actor_id=actor_id, timestamp=now)

    def get_roles(self) -> Dict[str, Dict[str, Any]]:
        """Role name -> attribute set, loaded once per instance."""
        if self._roles is None:
            db = get_db()
            rows = db.execute(
                'SELECT role, attributes FROM patron_roles WHERE patron_id = ? ORDER BY role',
                (self.id,)
            ).fetchall()
            self._roles = {row['role']: json.loads(row['attributes']) for row in rows}
        return self._roles

    def has_role(self, role: str) -> bool:
        return role in self.get_roles()

    def capability(self, attribute: str, default: Any = None) -> Any:
        """Largest value of ``attribute`` across the patron's roles.

        A patron holding several roles gets the most generous setting.
        Numeric capabilities are checked on read as well, so a malformed
        stored value raises ``ValidationError``.
        """
        values = [attrs[attribute] for attrs in self.get_roles().values()
                  if attribute in attrs]
        if not values:
            return default
        if attribute in NUMERIC_CAPABILITIES:
            values = [_positive_int(attribute, value) for value in values]
        return max(values)

    def get_loans(self, state: Optional[str] = None) -> List:
        from models.loan import Loan
        return Loan.get_patron_loans(self.id, state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'status': self.status,
            'registered_at': self.registered_at,
            'roles': self.get_roles(),
        }
