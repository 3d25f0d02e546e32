from datetime import timedelta

import pytest

from conftest import LOAN_PERIOD, NOW
from models.errors import ValidationError
from models.fine import Fine
from models.loan import Loan
from models.system_config import SystemConfig


def test_defaults_come_from_config(db):
    config = SystemConfig.get()
    assert config['daily_fine_rate'] == 50.0
    assert config['loan_period_default'] == 14
    assert config['max_renewals'] == 2
    assert config['reservation_expiry'] == 30
    assert config['block_threshold_unpaid_fines'] == 100.0


def test_update_merges_and_casts(db):
    SystemConfig.update({'max_renewals': '3'})
    SystemConfig.update({'daily_fine_rate': 12.5})

    assert SystemConfig.get_int('max_renewals') == 3
    assert SystemConfig.get_float('daily_fine_rate') == 12.5
    assert SystemConfig.get_days('renewal_extension') == timedelta(days=7)


@pytest.mark.parametrize('changes', [
    {'unknown_key': 1},
    {'max_renewals': 'many'},
    {'daily_fine_rate': -1},
    {'daily_fine_rate': 'nan'},
    {'daily_fine_rate': float('inf')},
    {'block_threshold_unpaid_fines': float('nan')},
    {'block_threshold_unpaid_fines': '-inf'},
    {'max_active_loans': float('inf')},
    {'max_renewals': True},
])
def test_update_rejects_bad_values(db, changes):
    with pytest.raises(ValidationError):
        SystemConfig.update(changes)
    assert SystemConfig.get() == SystemConfig.DEFAULT_CONFIG


def test_fine_rate_change_applies_to_returns(copy, patron):
    SystemConfig.update({'daily_fine_rate': 20})
    loan = Loan.checkout(patron.id, copy.id, LOAN_PERIOD, now=NOW)
    Loan.return_copy(loan.id, NOW + LOAN_PERIOD + timedelta(days=2))

    assert Fine.get_by_loan(loan.id).amount == 40.0
