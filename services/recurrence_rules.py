"""
Recurrence rule model and evaluator.

Rules are stored as RRULE text ("FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=10").
The parts the calendar UI produces are parsed into a RecurrenceRule and
evaluated day by day with plain calendar arithmetic. Anything else in the
text (BYHOUR, BYWEEKNO, BYYEARDAY, ...) marks the rule as raw and it is
expanded with dateutil instead.

Everything here works on calendar dates only and never looks at the clock.
"""

import calendar
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from typing import Iterator, Optional

from dateutil.rrule import rrulestr

from models import RECURRENCE_TYPES
from services.errors import BadRequest
from services.validation_service import WEEKDAY_CODES, parse_days_of_week, parse_int

TYPE_FREQUENCIES = {
    'daily': {'DAILY'},
    'weekly': {'WEEKLY'},
    'monthly': {'MONTHLY'},
    'yearly': {'YEARLY'},
    'weekdays': {'WEEKLY', 'DAILY'},
}

STRUCTURED_PARTS = {'FREQ', 'INTERVAL', 'COUNT', 'UNTIL', 'BYDAY', 'BYMONTHDAY', 'BYMONTH', 'BYSETPOS'}

WORKING_DAYS = [0, 1, 2, 3, 4]

# Upper bound when looking for the first occurrence of an open-ended rule.
FIRST_OCCURRENCE_HORIZON = timedelta(days=366 * 8)


@dataclass
class RecurrenceRule:
    type: str = 'none'
    interval: int = 1
    count: Optional[int] = None
    until: Optional[date] = None
    days_of_week: list = field(default_factory=list)
    day_of_month: Optional[int] = None
    month_of_year: Optional[int] = None
    week_of_month: Optional[int] = None  # 1-5, or -1 for the last one
    weekday_of_month: Optional[int] = None
    extra: dict = field(default_factory=dict)

    @property
    def is_recurring(self):
        return self.type != 'none'

    @property
    def is_raw(self):
        return bool(self.extra)

    def frequency(self):
        if self.type == 'weekdays':
            return 'WEEKLY'
        return self.type.upper()

    def to_rrule(self):
        """Serialize back to RRULE text. Non-recurring rules have no text."""
        if not self.is_recurring:
            return None
        parts = [('FREQ', self.frequency())]
        if self.interval > 1:
            parts.append(('INTERVAL', str(self.interval)))
        days = self.days_of_week
        if self.type == 'weekdays':
            days = [d for d in (days or WORKING_DAYS) if d in WORKING_DAYS]
        if self.week_of_month is not None and self.weekday_of_month is not None:
            parts.append(('BYDAY', f"{self.week_of_month}{WEEKDAY_CODES[self.weekday_of_month]}"))
        elif days:
            parts.append(('BYDAY', ",".join(WEEKDAY_CODES[d] for d in days)))
        if self.day_of_month is not None:
            parts.append(('BYMONTHDAY', str(self.day_of_month)))
        if self.month_of_year is not None:
            parts.append(('BYMONTH', str(self.month_of_year)))
        if self.count is not None:
            parts.append(('COUNT', str(self.count)))
        if self.until is not None:
            parts.append(('UNTIL', self.until.strftime('%Y%m%d')))
        parts.extend(self.extra.items())
        return ";".join(f"{key}={value}" for key, value in parts)

    def with_anchor_defaults(self, anchor):
        """
        Copy of the rule with every value that is implied by the anchor date
        written out, so moving the anchor cannot change which dates match.
        """
        if not self.is_recurring:
            return replace(self)
        if any(key.startswith('BY') for key in self.extra):
            return replace(self, days_of_week=list(self.days_of_week), extra=dict(self.extra))
        frozen = replace(self, days_of_week=list(self.days_of_week), extra=dict(self.extra))
        if self.type == 'weekly' and not frozen.days_of_week:
            frozen.days_of_week = [anchor.weekday()]
        elif self.type == 'monthly':
            if frozen.week_of_month is not None or frozen.weekday_of_month is not None:
                frozen.week_of_month, frozen.weekday_of_month = _resolve_nth_weekday(frozen, anchor)
            elif frozen.day_of_month is None:
                frozen.day_of_month = anchor.day
        elif self.type == 'yearly':
            if frozen.month_of_year is None:
                frozen.month_of_year = anchor.month
            if frozen.day_of_month is None:
                frozen.day_of_month = anchor.day
        return frozen


def _parse_until(raw):
    value = str(raw).strip().upper().rstrip('Z')
    for fmt in ('%Y%m%dT%H%M%S', '%Y%m%d', '%Y-%m-%d'):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise BadRequest(f"Invalid UNTIL value: {raw}")


def _parse_rrule_text(text):
    body = str(text).strip()
    if body.upper().startswith('RRULE:'):
        body = body[len('RRULE:'):]
    parts = {}
    for chunk in body.split(';'):
        chunk = chunk.strip()
        if not chunk:
            continue
        if '=' not in chunk:
            raise BadRequest(f"Invalid recurrence rule part: {chunk}")
        key, value = chunk.split('=', 1)
        parts[key.strip().upper()] = value.strip().upper()
    return parts


def _apply_byday(rule, raw_byday, setpos):
    codes = [c.strip() for c in raw_byday.split(',') if c.strip()]
    if rule.type == 'monthly' and len(codes) == 1:
        code = codes[0]
        weekday = code[-2:]
        prefix = code[:-2]
        if weekday not in WEEKDAY_CODES:
            raise BadRequest(f"Invalid BYDAY value: {raw_byday}")
        nth = parse_int(prefix) if prefix else setpos
        if nth not in (-1, 1, 2, 3, 4, 5):
            # Every such weekday, or a position only dateutil understands.
            return False
        rule.week_of_month = nth
        rule.weekday_of_month = WEEKDAY_CODES.index(weekday)
        return True
    if rule.type in ('weekly', 'weekdays') and all(c in WEEKDAY_CODES for c in codes):
        rule.days_of_week = parse_days_of_week(codes)
        return True
    if rule.type == 'daily' and all(c in WEEKDAY_CODES for c in codes):
        return False
    if any(c[-2:] not in WEEKDAY_CODES for c in codes):
        raise BadRequest(f"Invalid BYDAY value: {raw_byday}")
    return False


def _rule_from_text(recurrence_type, text):
    parts = _parse_rrule_text(text)
    freq = parts.get('FREQ')
    if freq and freq not in TYPE_FREQUENCIES[recurrence_type]:
        raise BadRequest(f"Rule frequency {freq} does not match recurrence type {recurrence_type}")

    rule = RecurrenceRule(type=recurrence_type)
    rule.interval = parse_int(parts.get('INTERVAL'), 1)
    if 'COUNT' in parts:
        rule.count = parse_int(parts['COUNT'])
        if rule.count is None:
            raise BadRequest("COUNT must be an integer")
    if 'UNTIL' in parts:
        rule.until = _parse_until(parts['UNTIL'])
    if 'BYMONTHDAY' in parts:
        day_of_month = parse_int(parts['BYMONTHDAY'])
        if day_of_month is not None and 1 <= day_of_month <= 31:
            rule.day_of_month = day_of_month
        else:
            rule.extra['BYMONTHDAY'] = parts['BYMONTHDAY']
    if 'BYMONTH' in parts:
        rule.month_of_year = parse_int(parts['BYMONTH'])
        if rule.month_of_year is None:
            rule.extra['BYMONTH'] = parts['BYMONTH']

    setpos = parse_int(parts.get('BYSETPOS'))
    setpos_used = False
    if 'BYDAY' in parts:
        handled = _apply_byday(rule, parts['BYDAY'], setpos)
        if handled:
            setpos_used = rule.week_of_month is not None
        else:
            rule.extra['BYDAY'] = parts['BYDAY']
    if 'BYSETPOS' in parts and not setpos_used:
        rule.extra['BYSETPOS'] = parts['BYSETPOS']

    for key, value in parts.items():
        if key not in STRUCTURED_PARTS:
            rule.extra[key] = value
    return rule


def _rule_from_dict(recurrence_type, data):
    rule = RecurrenceRule(type=recurrence_type)
    rule.interval = parse_int(data.get('interval'), 1)
    rule.count = parse_int(data.get('count'))
    if data.get('count') not in (None, '') and rule.count is None:
        raise BadRequest("count must be an integer")
    if data.get('until'):
        rule.until = _parse_until(data['until'])
    rule.days_of_week = parse_days_of_week(data.get('days_of_week'))
    for name in ('day_of_month', 'month_of_year', 'week_of_month', 'weekday_of_month'):
        raw = data.get(name)
        value = parse_int(raw)
        if raw not in (None, '') and value is None:
            raise BadRequest(f"Invalid {name.replace('_', ' ')}")
        setattr(rule, name, value)
    return rule


def _validate(rule):
    rule.interval = max(int(rule.interval or 1), 1)
    if rule.count is not None and rule.count < 1:
        raise BadRequest("count must be at least 1")
    if rule.day_of_month is not None and not (1 <= rule.day_of_month <= 31):
        raise BadRequest("Invalid day of month")
    if rule.month_of_year is not None and not (1 <= rule.month_of_year <= 12):
        raise BadRequest("Invalid month of year")
    if rule.week_of_month is not None and rule.week_of_month not in (-1, 1, 2, 3, 4, 5):
        raise BadRequest("Invalid week of month")
    if rule.weekday_of_month is not None and not (0 <= rule.weekday_of_month <= 6):
        raise BadRequest("Invalid weekday of month")
    if rule.type == 'weekdays' and rule.days_of_week:
        rule.days_of_week = [d for d in rule.days_of_week if d in WORKING_DAYS]
        if not rule.days_of_week:
            raise BadRequest("A weekdays rule needs at least one working day")
    if rule.is_raw:
        try:
            rrulestr(rule.to_rrule(), dtstart=datetime(2000, 1, 1))
        except (ValueError, TypeError) as exc:
            raise BadRequest(f"Invalid recurrence rule: {exc}") from exc
    return rule


def parse_rule(recurrence_type, rule_input=None):
    """
    Build a RecurrenceRule from RRULE text or a structured dict.
    Raises BadRequest for an unknown type or malformed rule.
    """
    recurrence_type = (recurrence_type or 'none').lower()
    if recurrence_type not in RECURRENCE_TYPES:
        raise BadRequest(f"Invalid recurrence type: {recurrence_type}")
    if recurrence_type == 'none':
        return RecurrenceRule(type='none')
    if isinstance(rule_input, RecurrenceRule):
        return _validate(replace(rule_input, type=recurrence_type))
    if isinstance(rule_input, dict):
        return _validate(_rule_from_dict(recurrence_type, rule_input))
    if rule_input in (None, ''):
        return _validate(RecurrenceRule(type=recurrence_type))
    return _validate(_rule_from_text(recurrence_type, rule_input))


def rule_for_series(series):
    return parse_rule(series.recurrence_type, series.recurrence_rule)


# --- structured evaluation -------------------------------------------------

def _week_start(day_value):
    return day_value - timedelta(days=day_value.weekday())


def _weekday_occurrence_in_month(day_value):
    return (day_value.day - 1) // 7 + 1


def _nth_weekday_of_month(year, month, weekday, nth):
    month_cal = calendar.monthcalendar(year, month)
    days = [week[weekday] for week in month_cal if week[weekday]]
    if not days:
        return None
    if nth == -1 or nth > len(days):
        return date(year, month, days[-1])
    return date(year, month, days[max(nth, 1) - 1])


def _resolve_nth_weekday(rule, anchor):
    weekday = rule.weekday_of_month
    if weekday is None:
        weekday = anchor.weekday()
    nth = rule.week_of_month
    if nth is None:
        nth = _weekday_occurrence_in_month(anchor)
    return nth, weekday


def _clamped_day(year, month, day_of_month):
    _, last_dom = calendar.monthrange(year, month)
    return date(year, month, min(day_of_month, last_dom))


def _occurs_on(rule, anchor, day_value):
    if day_value < anchor:
        return False
    interval = rule.interval

    if rule.type == 'daily':
        return (day_value - anchor).days % interval == 0

    if rule.type in ('weekly', 'weekdays'):
        weeks_since = (_week_start(day_value) - _week_start(anchor)).days // 7
        if weeks_since % interval != 0:
            return False
        days = rule.days_of_week or ([anchor.weekday()] if rule.type == 'weekly' else WORKING_DAYS)
        if rule.type == 'weekdays' and day_value.weekday() not in WORKING_DAYS:
            return False
        return day_value.weekday() in days

    if rule.type == 'monthly':
        months_since = (day_value.year - anchor.year) * 12 + (day_value.month - anchor.month)
        if months_since % interval != 0:
            return False
        if rule.week_of_month is not None or rule.weekday_of_month is not None:
            nth, weekday = _resolve_nth_weekday(rule, anchor)
            return day_value == _nth_weekday_of_month(day_value.year, day_value.month, weekday, nth)
        target_dom = rule.day_of_month or anchor.day
        return day_value == _clamped_day(day_value.year, day_value.month, target_dom)

    if rule.type == 'yearly':
        years_since = day_value.year - anchor.year
        if years_since % interval != 0:
            return False
        target_month = rule.month_of_year or anchor.month
        if day_value.month != target_month:
            return False
        target_dom = rule.day_of_month or anchor.day
        return day_value == _clamped_day(day_value.year, target_month, target_dom)

    return False


def _expand_structured(rule, anchor, window_start, last_day):
    # COUNT is measured from the anchor, so counted rules walk from the start.
    current = anchor if rule.count else max(anchor, window_start)
    emitted = 0
    while current <= last_day:
        if _occurs_on(rule, anchor, current):
            emitted += 1
            if rule.count and emitted > rule.count:
                return
            if current >= window_start:
                yield current
        current += timedelta(days=1)


def _expand_raw(rule, anchor, window_start, last_day):
    parsed = rrulestr(rule.to_rrule(), dtstart=datetime.combine(anchor, time.min))
    start_from = datetime.combine(max(anchor, window_start), time.min)
    for occurrence in parsed.xafter(start_from, inc=True):
        day_value = occurrence.date()
        if day_value > last_day:
            return
        if rule.type == 'weekdays' and day_value.weekday() not in WORKING_DAYS:
            continue
        yield day_value


def expand(rule, anchor, window_start, window_end, end_date=None) -> Iterator[date]:
    """
    Lazily yield the occurrence dates of `rule` inside [window_start, window_end].

    `anchor` is the series' anchor date. The sequence is further bounded by
    `end_date`, the rule's own UNTIL and COUNT. A non-recurring rule yields
    the anchor date alone when it is inside the window.
    """
    if window_start is None or window_end is None or window_start > window_end:
        return
    if not rule.is_recurring:
        if window_start <= anchor <= window_end:
            yield anchor
        return

    last_day = window_end
    for bound in (end_date, rule.until):
        if bound is not None and bound < last_day:
            last_day = bound
    if last_day < window_start or last_day < anchor:
        return

    if rule.is_raw:
        yield from _expand_raw(rule, anchor, window_start, last_day)
    else:
        yield from _expand_structured(rule, anchor, window_start, last_day)


def occurs_on(rule, anchor, day_value, end_date=None) -> bool:
    return next(expand(rule, anchor, day_value, day_value, end_date), None) is not None


def first_occurrence(rule, anchor, end_date=None) -> Optional[date]:
    horizon = end_date or (anchor + FIRST_OCCURRENCE_HORIZON)
    return next(expand(rule, anchor, anchor, horizon, end_date), None)


def count_before(rule, anchor, day_value, end_date=None) -> int:
    """Number of occurrences strictly before `day_value`."""
    if day_value <= anchor:
        return 0
    return sum(1 for _ in expand(rule, anchor, anchor, day_value - timedelta(days=1), end_date))
