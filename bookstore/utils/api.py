# --- bookstore/utils/api.py ---
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


def _now_human():
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def api_ok(message, data=None):
    return {
        "status": True,
        "message": message,
        "data": {
            **(data or {}),
            "API_TIME_HUMAN": _now_human(),
        },
    }


def api_error(message, data=None):
    return {
        "status": False,
        "message": message,
        "data": {
            **(data or {}),
            "API_TIME_HUMAN": _now_human(),
        },
    }


def to_json(value):
    """Make service results (Decimal, Enum, datetime, dataclass dicts) JSON safe."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    return value


# ---- standard API response format ------------------------------------------
def ok(msg, data=None, status=200):
    from flask import jsonify
    r = jsonify(api_ok(msg, to_json(data))); r.status_code = status; return r


def json_body() -> dict:
    from flask import request
    return request.get_json(silent=True) or {}


def page_args(default_limit=20):
    """``page``/``limit`` query parameters as ints."""
    from flask import request
    from ..errors import InvalidInput
    try:
        return int(request.args.get("page", 1)), int(request.args.get("limit", default_limit))
    except ValueError:
        raise InvalidInput("page and limit must be integers")
