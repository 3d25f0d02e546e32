import itertools
from datetime import datetime, timedelta

import pytest

from app import create_app
from models.copy import Copy
from models.database import close_db, get_db, init_db
from models.loan import Loan
from models.patron import Patron
from models.title import Title

NOW = datetime(2024, 3, 1, 12, 0, 0)
LOAN_PERIOD = timedelta(days=14)


def assert_ledger_consistent(db):
    """available_copies matches copy states and no copy has two open loans."""
    rows = db.execute('''
        SELECT t.id, t.total_copies, t.available_copies,
               (SELECT COUNT(*) FROM copies c WHERE c.title_id = t.id) AS copies,
               (SELECT COUNT(*) FROM copies c
                WHERE c.title_id = t.id AND c.state = 'available') AS on_shelf
        FROM titles t
    ''').fetchall()
    for row in rows:
        assert row['available_copies'] == row['on_shelf'], row['id']
        assert row['total_copies'] == row['copies'], row['id']

    doubled = db.execute('''
        SELECT copy_id FROM loans WHERE state IN ('active', 'overdue')
        GROUP BY copy_id HAVING COUNT(*) > 1
    ''').fetchall()
    assert doubled == []


@pytest.fixture
def db(tmp_path):
    init_db(str(tmp_path / 'circulation.db'))
    yield get_db()
    close_db()


@pytest.fixture
def make_title(db):
    counter = itertools.count(1)

    def _make(name='Dune', copies=1, isbn=None):
        n = next(counter)
        title = Title.create(name, isbn, now=NOW)
        for i in range(copies):
            Copy.acquire(title.id, f'T{n}-C{i + 1}', now=NOW)
        return Title.get_by_id(title.id)

    return _make


@pytest.fixture
def make_patron(db):
    counter = itertools.count(1)

    def _make(name=None, roles=None):
        n = next(counter)
        return Patron.create(name or f'Patron {n}', f'patron{n}@uni.example',
                             roles, now=NOW)

    return _make


@pytest.fixture
def title(make_title):
    return make_title('The Left Hand of Darkness', copies=1)


@pytest.fixture
def copy(title):
    return Copy.get_for_title(title.id)[0]


@pytest.fixture
def patron(make_patron):
    return make_patron('Ada Student', roles={'student': {'program': 'CS'}})


@pytest.fixture
def late_fine(copy, patron):
    """A 150.00 pending fine: due NOW+14d, returned three days late."""
    loan = Loan.checkout(patron.id, copy.id, LOAN_PERIOD, now=NOW)
    Loan.return_copy(loan.id, NOW + LOAN_PERIOD + timedelta(days=3))
    return Loan.get_by_id(loan.id).get_fine()


@pytest.fixture
def audit_events():
    return []


@pytest.fixture
def app(tmp_path, audit_events):
    app = create_app({
        'TESTING': True,
        'DATABASE_PATH': str(tmp_path / 'api.db'),
        'SCHEDULER_ENABLED': False,
        'AUDIT_SINK': audit_events.append,
    })
    yield app
    close_db()


@pytest.fixture
def client(app):
    return app.test_client()
