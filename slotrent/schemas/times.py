from slotrent.core.exceptions import ValidationError
from slotrent.utils.timeslots import parse_time


def parse_time_field(value):
    """Pydantic validator helper: accept '9:00', '14:30', '2:30 PM' or a minute-of-day int."""
    if value is None:
        return value
    try:
        return parse_time(value)
    except ValidationError as exc:
        raise ValueError(exc.message) from exc
