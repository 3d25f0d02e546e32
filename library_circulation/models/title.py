import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from models.audit_log import AuditLog
from models.database import get_db, to_db_time, transaction
from models.errors import TitleNotFound, ValidationError


class Title:
    """Represents a catalog title and its copy counters.

    The descriptive catalog lives elsewhere; this record only carries what
    circulation needs. ``available_copies`` is owned by the copy ledger and
    is always recomputed from copy states, never adjusted on its own.

    Attributes:
        id (str): Unique identifier for the title.
        title (str): Display title.
        isbn (str): ISBN number (optional).
        total_copies (int): Number of copies owned.
        available_copies (int): Number of copies in state 'available'.
        created_at (str): When the title was registered.
    """

    def __init__(self, id: str, title: str, isbn: Optional[str],
                 total_copies: int, available_copies: int,
                 created_at: str) -> None:
        """Initialize a Title instance."""
        self.id = id
        self.title = title
        self.isbn = isbn
        self.total_copies = int(total_copies)
        self.available_copies = int(available_copies)
        self.created_at = created_at

    @staticmethod
    def get_by_id(title_id: str) -> Optional['Title']:
        """Retrieve a title by its ID."""
        db = get_db()
        row = db.execute('SELECT * FROM titles WHERE id = ?', (title_id,)).fetchone()
        if row:
            return Title(**dict(row))
        return None

    @staticmethod
    def get_by_isbn(isbn: str) -> Optional['Title']:
        """Retrieve a title by its ISBN number."""
        db = get_db()
        row = db.execute('SELECT * FROM titles WHERE isbn = ?', (isbn,)).fetchone()
        if row:
            return Title(**dict(row))
        return None

    @staticmethod
    def get_all(limit: Optional[int] = None) -> List['Title']:
        """Retrieve all titles ordered by name."""
        db = get_db()
        if limit:
            rows = db.execute('SELECT * FROM titles ORDER BY title LIMIT ?', (limit,)).fetchall()
        else:
            rows = db.execute('SELECT * FROM titles ORDER BY title').fetchall()
        return [Title(**dict(row)) for row in rows]

    @staticmethod
    def get_title(title_id: str) -> Dict[str, Any]:
        """Catalog lookup used by circulation: ``{'total_copies': n}``.

        Raises:
            TitleNotFound: If the title does not exist.
        """
        title = Title.get_by_id(title_id)
        if not title:
            raise TitleNotFound(f'Title {title_id} not found')
        return {'total_copies': title.total_copies}

    @staticmethod
    def create(title: str, isbn: Optional[str] = None,
               actor_id: Optional[str] = None,
               now: Optional[datetime] = None) -> 'Title':
        """Register a new title with no copies."""
        if not title or not title.strip():
            raise ValidationError('Title cannot be empty')
        if isbn and Title.get_by_isbn(isbn):
            raise ValidationError(f'A title with ISBN {isbn} already exists')

        title_id = str(uuid.uuid4())
        created_at = to_db_time(now or datetime.now())

        with transaction() as db:
            db.execute('''
                INSERT INTO titles (id, title, isbn, total_copies, available_copies, created_at)
                VALUES (?, ?, ?, 0, 0, ?)
            ''', (title_id, title.strip(), isbn, created_at))
            created = Title.get_by_id(title_id)
            AuditLog.record('title', title_id, 'Create', created.to_dict(),
                            actor_id=actor_id, timestamp=now)

        return created

    @staticmethod
    def recompute_available(title_id: str) -> int:
        """Set ``available_copies`` from the copy states of the title.

        Must run inside the transaction that changed a copy state.
        """
        db = get_db()
        db.execute('''
            UPDATE titles
            SET available_copies = (
                SELECT COUNT(*) FROM copies
                WHERE title_id = ? AND state = 'available'
            )
            WHERE id = ?
        ''', (title_id, title_id))
        row = db.execute(
            'SELECT available_copies FROM titles WHERE id = ?', (title_id,)
        ).fetchone()
        return row['available_copies'] if row else 0

    def get_copies(self) -> list:
        from models.copy import Copy
        return Copy.get_for_title(self.id)

    def to_dict(self) -> dict:
        """Convert title to dictionary."""
        return {
            'id': self.id,
            'title': self.title,
            'isbn': self.isbn,
            'total_copies': self.total_copies,
            'available_copies': self.available_copies,
            'created_at': self.created_at,
        }
