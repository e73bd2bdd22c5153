import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from flask import request

from .errors import ValidationError

MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

# Largest value an INTEGER column holds (signed 64-bit)
MAX_DB_INT = 2 ** 63 - 1


def client_ip():
    try:
        return (request.headers.get("X-Forwarded-For") or request.remote_addr or "127.0.0.1").split(",")[0].strip()
    except RuntimeError:
        return None


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def is_blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def require_fields(data, *names, message="Missing required fields"):
    missing = [n for n in names if is_blank(data.get(n))]
    if missing:
        raise ValidationError(f"{message}: {', '.join(missing)}")


def parse_amount(value, field="amount", allow_zero=False):
    """Parse a whole-unit currency amount; rejects fractions and non-positive values."""
    if isinstance(value, bool) or is_blank(value):
        raise ValidationError(f"{field} is required")
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not dec.is_finite():
        raise ValidationError(f"{field} must be a number")
    if dec.copy_abs() > MAX_DB_INT:
        raise ValidationError(f"{field} is too large")
    if dec != dec.to_integral_value():
        raise ValidationError(f"{field} must be a whole amount")
    amount = int(dec)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field} must be greater than 0")
    return amount


def parse_int(value, field):
    if isinstance(value, bool) or is_blank(value):
        raise ValidationError(f"{field} is required")
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an integer")
    if abs(number) > MAX_DB_INT:
        raise ValidationError(f"{field} is out of range")
    return number


def parse_optional_int(value):
    if is_blank(value):
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if abs(number) <= MAX_DB_INT else None


def parse_date(value, field):
    """Accept date objects, YYYY-MM-DD strings and ISO datetimes."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if is_blank(value):
        raise ValidationError(f"{field} is required")
    raw = str(value).strip()
    try:
        if len(raw) == 10:
            return datetime.strptime(raw, "%Y-%m-%d").date()
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD)")


def parse_month(value, field="month"):
    raw = (str(value).strip() if value is not None else "")
    if not MONTH_RE.match(raw):
        raise ValidationError(f"{field} must be in YYYY-MM format")
    return raw


def parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def month_bounds(month):
    """Return (first_day, last_day) for a YYYY-MM string."""
    year, m = (int(p) for p in parse_month(month).split("-"))
    start = date(year, m, 1)
    end = date(year + 1, 1, 1) if m == 12 else date(year, m + 1, 1)
    return start, date.fromordinal(end.toordinal() - 1)


def jsonable(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value
