from datetime import datetime, timedelta, timezone

import pytest

from backup_scheduler.errors import ScheduleError
from backup_scheduler.schedule import next_occurrence


def test_next_occurrence_daily():
    start = datetime(2024, 1, 1, 10, 15, tzinfo=timezone.utc)
    assert next_occurrence("0 0 * * *", start) == datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)


def test_next_occurrence_is_strictly_after_start():
    start = datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)
    result = next_occurrence("0 0 * * *", start)
    assert result > start
    assert result == datetime(2024, 1, 3, 0, 0, tzinfo=timezone.utc)


def test_next_occurrence_is_deterministic():
    start = datetime(2024, 3, 10, 8, 7, 30, tzinfo=timezone.utc)
    assert next_occurrence("*/15 * * * *", start) == next_occurrence("*/15 * * * *", start)
    assert next_occurrence("*/15 * * * *", start) == datetime(2024, 3, 10, 8, 15, tzinfo=timezone.utc)


def test_naive_start_is_treated_as_utc():
    result = next_occurrence("30 2 * * *", datetime(2024, 5, 1, 1, 0))
    assert result == datetime(2024, 5, 1, 2, 30, tzinfo=timezone.utc)
    assert result.tzinfo is not None


def test_aware_start_is_converted_to_utc():
    plus_two = timezone(timedelta(hours=2))
    start = datetime(2024, 5, 1, 23, 30, tzinfo=plus_two)  # 21:30 UTC
    assert next_occurrence("0 22 * * *", start) == datetime(2024, 5, 1, 22, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("expression", ["", "   ", "bad cron", "* * * *", "0 0 * * * *", "61 * * * *", "0 0 32 * *"])
def test_invalid_expressions_raise_schedule_error(expression):
    with pytest.raises(ScheduleError) as excinfo:
        next_occurrence(expression, datetime(2024, 1, 1, tzinfo=timezone.utc))
    assert excinfo.value.expression == expression
