from datetime import date, datetime, time

WEEKDAY_CODES = ["MO", "TU", "WE", "TH", "FR", "SA", "SU"]


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ["1", "true", "yes", "on"]


def parse_int(value, default=None):
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def normalize_tag_names(raw):
    if not raw:
        return []
    if isinstance(raw, list):
        names = [str(t).strip() for t in raw if str(t).strip()]
    else:
        names = [t.strip() for t in str(raw).split(",") if t.strip()]
    merged = []
    seen = set()
    for name in names:
        key = " ".join(name.split()).lower()
        if key and key not in seen:
            seen.add(key)
            merged.append(name)
    return merged


def parse_days_of_week(raw):
    """Accept 0-6 integers (Monday=0) or RRULE codes ("MO,WE"); return a sorted unique list."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        values = list(raw)
    else:
        values = str(raw).split(",")
    days = []
    for val in values:
        code = str(val).strip().upper()
        if code in WEEKDAY_CODES:
            days.append(WEEKDAY_CODES.index(code))
            continue
        day = parse_int(code)
        if day is not None and 0 <= day <= 6:
            days.append(day)
    return sorted(set(days))


def parse_day_value(raw):
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return datetime.strptime(str(raw), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return None


def parse_datetime_value(raw):
    """ISO datetimes ("2024-01-01T09:00"), or a bare date meaning midnight."""
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, date):
        return datetime.combine(raw, time.min)
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(str(raw).strip())
    except (TypeError, ValueError):
        return None
    # Wall-clock values only; offsets would need a time-zone conversion first.
    if value.tzinfo is not None:
        return None
    return value
