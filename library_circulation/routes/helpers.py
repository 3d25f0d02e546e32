"""Request parsing shared by the blueprints."""
from datetime import datetime
from typing import Any, Dict, Optional

from flask import request

from models.errors import ValidationError


def get_payload() -> Dict[str, Any]:
    """JSON body of the request, or an empty dict."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def require_fields(data: Dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, '')]
    if missing:
        raise ValidationError(f'Missing required field(s): {", ".join(missing)}')


def current_actor() -> Optional[str]:
    """Acting user id, as forwarded by the front end."""
    return request.headers.get('X-Actor-Id')


def parse_time(value: Any, field: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp field; None stays None.

    Times are stored as naive server-local time, so an offset is converted
    to local time before it is dropped.
    """
    if value in (None, ''):
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone().replace(tzinfo=None)
    except (ValueError, OverflowError):
        raise ValidationError(f'{field} must be an ISO-8601 timestamp')
    return parsed.replace(microsecond=0)


def parse_int(value: Any, field: str, default: Optional[int] = None) -> Optional[int]:
    if value in (None, ''):
        return default
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer')
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f'{field} must be an integer')
