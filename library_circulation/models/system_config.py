import json
import math
from datetime import timedelta
from typing import Any, Dict

from models.database import get_db, transaction
from config.config import Config
from models.errors import ValidationError


class SystemConfig:
    """Circulation rule settings manager.

    Manages dynamic configuration stored in the database.
    Falls back to Config constants if DB values are missing.
    """

    DEFAULT_CONFIG: Dict[str, Any] = {
        'daily_fine_rate': Config.DAILY_FINE_RATE,
        'loan_period_default': Config.LOAN_PERIOD_DAYS,  # Days
        'max_renewals': Config.MAX_RENEWALS,
        'renewal_extension': Config.RENEWAL_EXTENSION_DAYS,  # Days
        'reservation_expiry': Config.RESERVATION_EXPIRY_DAYS,  # Days
        'reservation_hold_hours': Config.RESERVATION_HOLD_HOURS,
        'block_threshold_unpaid_fines': Config.BLOCK_THRESHOLD_UNPAID_FINES,
        'max_active_loans': Config.MAX_ACTIVE_LOANS,
        'max_loan_period_days': Config.MAX_LOAN_PERIOD_DAYS,
    }

    NUMERIC_KEYS = {
        'daily_fine_rate': float,
        'loan_period_default': int,
        'max_renewals': int,
        'renewal_extension': int,
        'reservation_expiry': int,
        'reservation_hold_hours': int,
        'block_threshold_unpaid_fines': float,
        'max_active_loans': int,
        'max_loan_period_days': int,
    }

    @staticmethod
    def get() -> Dict[str, Any]:
        """Get current configuration from DB merged over the defaults."""
        db = get_db()
        result = db.execute('SELECT config_data FROM system_config WHERE id = 1').fetchone()

        current = SystemConfig.DEFAULT_CONFIG.copy()
        if result:
            try:
                current.update(json.loads(result['config_data']))
            except json.JSONDecodeError:
                pass
        return current

    @staticmethod
    def get_value(key: str, default: Any = None, type_cast: type = str) -> Any:
        """Helper: Get specific config value from DB, fallback to provided default."""
        current_config = SystemConfig.get()

        if key in current_config:
            val = current_config[key]
            try:
                return type_cast(val)
            except (ValueError, TypeError):
                return default

        return default

    @staticmethod
    def get_int(key: str, default: int = 0) -> int:
        """Get integer config value."""
        return SystemConfig.get_value(key, default, int)

    @staticmethod
    def get_float(key: str, default: float = 0.0) -> float:
        """Get float config value."""
        return SystemConfig.get_value(key, default, float)

    @staticmethod
    def get_days(key: str) -> timedelta:
        return timedelta(days=SystemConfig.get_int(key, SystemConfig.DEFAULT_CONFIG[key]))

    @staticmethod
    def update(config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and persist configuration overrides.

        Unknown keys, non-finite and negative values raise
        ``ValidationError``; nothing is written in that case.
        """
        cleaned: Dict[str, Any] = {}
        for key, value in config_data.items():
            cast = SystemConfig.NUMERIC_KEYS.get(key)
            if cast is None:
                raise ValidationError(f'Unknown configuration key: {key}')
            if isinstance(value, bool):
                raise ValidationError(f'Invalid value for {key}: {value!r}')
            try:
                cleaned[key] = cast(value)
            except (ValueError, TypeError, OverflowError):
                raise ValidationError(f'Invalid value for {key}: {value!r}')
            if not math.isfinite(cleaned[key]):
                raise ValidationError(f'{key} must be a finite number')
            if cleaned[key] < 0:
                raise ValidationError(f'{key} cannot be negative')

        with transaction() as db:
            current_config = SystemConfig.get()
            current_config.update(cleaned)
            config_json = json.dumps(current_config)

            db.execute('''
                INSERT INTO system_config (id, config_data) VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET config_data = excluded.config_data
            ''', (config_json,))

        return current_config
