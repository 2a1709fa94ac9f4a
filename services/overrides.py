"""Partial-update payloads that keep "not supplied" apart from an explicit null."""

from services.errors import BadRequest
from services.validation_service import parse_datetime_value, parse_int

TEXT_FIELDS = ('title', 'description')
DATETIME_FIELDS = ('instance_start', 'instance_end')
OCCURRENCE_FIELDS = TEXT_FIELDS + DATETIME_FIELDS


class Overrides:
    """
    Only the keys a caller actually supplied are stored. `provided('description')`
    is True for `Overrides(description=None)` and False for `Overrides()`, so a
    supplied None clears a field while a missing key leaves it alone.
    """

    def __init__(self, **values):
        self._values = dict(values)

    def provided(self, name):
        return name in self._values

    def get(self, name, default=None):
        return self._values.get(name, default)

    def value_or(self, name, fallback):
        """Supplied, non-null value or `fallback` (the `??` case)."""
        value = self._values.get(name)
        return fallback if value is None else value

    @property
    def fields_set(self):
        return frozenset(self._values)

    def only(self, *names):
        return Overrides(**{k: v for k, v in self._values.items() if k in names})

    def __bool__(self):
        return bool(self._values)

    def __repr__(self):
        return f"Overrides({self._values!r})"

    @classmethod
    def from_payload(cls, data, allowed=OCCURRENCE_FIELDS):
        """Build from a JSON body, parsing datetimes and trimming text."""
        data = data or {}
        values = {}
        for name in allowed:
            if name not in data:
                continue
            raw = data.get(name)
            if name in TEXT_FIELDS:
                values[name] = (str(raw).strip() or None) if raw is not None else None
            elif name in DATETIME_FIELDS or name in ('anchor_start', 'anchor_end'):
                if raw in (None, ''):
                    values[name] = None
                    continue
                parsed = parse_datetime_value(raw)
                if parsed is None:
                    raise BadRequest(f"Invalid {name.replace('_', ' ')}")
                values[name] = parsed
            elif name == 'reminder_minutes':
                parsed = parse_int(raw)
                if raw not in (None, '') and parsed is None:
                    raise BadRequest("Invalid reminder minutes")
                values[name] = parsed
            else:
                values[name] = raw
        return cls(**values)
