"""Time-of-day helpers for therapist working hours and bookable slots."""

from datetime import date, datetime, time, timedelta

MIN_APPOINTMENT_DURATION_MINUTES = 15
MAX_APPOINTMENT_DURATION_MINUTES = 120
DEFAULT_APPOINTMENT_DURATION_MINUTES = 30
WEEKDAY_NAMES = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')


def parse_time_of_day(value: str) -> time:
    """Parse a zero-padded 24-hour ``HH:MM`` string.

    Raises ``ValueError`` for anything else, including ``9:00`` and ``24:00``.
    """
    normalized = (value or '').strip()
    if len(normalized) != 5 or normalized[2] != ':':
        raise ValueError(f'Invalid time format: {value}')
    return datetime.strptime(normalized, '%H:%M').time()


def format_time_of_day(value: time) -> str:
    return value.strftime('%H:%M')


def is_valid_appointment_duration(duration_minutes: int) -> bool:
    return MIN_APPOINTMENT_DURATION_MINUTES <= duration_minutes <= MAX_APPOINTMENT_DURATION_MINUTES


def generate_time_slots(start: time, end: time, duration_minutes: int) -> list[str]:
    """Return ``start, start+d, start+2d, ...`` as ``HH:MM`` strings.

    Only appointments that finish by ``end`` are produced, so every value is
    strictly before ``end`` and a window of ``w`` minutes yields ``w // d``
    slots. The window is a single calendar day; ``start >= end`` yields nothing.
    """
    if duration_minutes <= 0:
        raise ValueError('Appointment duration must be a positive number of minutes.')

    anchor = date(2000, 1, 1)
    current = datetime.combine(anchor, start).replace(second=0, microsecond=0)
    window_end = datetime.combine(anchor, end)
    step = timedelta(minutes=duration_minutes)

    slots: list[str] = []
    while current + step <= window_end:
        slots.append(format_time_of_day(current.time()))
        current += step

    return slots


def weekday_name(value: date) -> str:
    return WEEKDAY_NAMES[value.weekday()]


def normalize_weekday_names(values: list[str]) -> list[str]:
    """Title-case weekday names, drop duplicates and keep calendar order."""
    requested = {value.strip().title() for value in values if value and value.strip()}
    unknown = requested - set(WEEKDAY_NAMES)
    if unknown:
        raise ValueError(f'Invalid working days: {", ".join(sorted(unknown))}')
    return [name for name in WEEKDAY_NAMES if name in requested]
