from datetime import datetime

from croniter import croniter

from backup_scheduler.domain.job import ensure_utc
from backup_scheduler.errors import ScheduleError


def next_occurrence(cron_expression: str, after: datetime) -> datetime:
    """
    Return the first time strictly after `after` matched by a standard 5-field cron
    expression (minute hour day-of-month month day-of-week), in UTC.

    Raises:
        ScheduleError: If the expression is empty, has the wrong number of fields or
            does not parse.
    """
    expression = (cron_expression or "").strip()
    if not expression:
        raise ScheduleError(cron_expression, "empty expression")
    fields = expression.split()
    if len(fields) != 5:
        raise ScheduleError(cron_expression, f"expected 5 fields, got {len(fields)}")

    start = ensure_utc(after)
    try:
        cron = croniter(expression, start)
        candidate = cron.get_next(datetime)
        while candidate <= start:
            candidate = cron.get_next(datetime)
    except (ValueError, KeyError) as e:
        raise ScheduleError(cron_expression, str(e)) from e
    return ensure_utc(candidate)
