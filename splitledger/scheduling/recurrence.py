"""
Recurrence Calculation

Pure date arithmetic for scheduled actions. No I/O, no clock reads.

DESIGN DECISION: Every occurrence is computed from the start date and an
occurrence index, never by stepping from the previous occurrence. Monthly
schedules clamp to the last day of short months, and because each month is
computed from the original day the clamp never sticks:

    start 2024-01-31 -> 2024-02-29 -> 2024-03-31 -> 2024-04-30
"""

import calendar
from datetime import date, timedelta

from splitledger.models.scheduled import Frequency


def add_months(start: date, months: int) -> date:
    """
    Add a number of months to a date, clamping the day to the month's end.

    >>> add_months(date(2024, 1, 31), 1)
    datetime.date(2024, 2, 29)
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start.day, last_day))


def occurrence_date(start: date, frequency: Frequency, index: int) -> date:
    """
    Date of the `index`-th occurrence of a schedule (0 is the start date).

    Raises:
        ValueError: If index is negative
    """
    if index < 0:
        raise ValueError(f"Occurrence index cannot be negative: {index}")

    if frequency == Frequency.DAILY:
        return start + timedelta(days=index)
    if frequency == Frequency.WEEKLY:
        return start + timedelta(weeks=index)
    if frequency == Frequency.MONTHLY:
        return add_months(start, index)
    raise ValueError(f"Unknown frequency: {frequency}")


def next_execution_date(start: date, frequency: Frequency, executions: int) -> date:
    """
    Next date a schedule runs after `executions` occurrences were consumed.

    Always lies on or after `start` and is monotonically increasing in
    `executions`.
    """
    return occurrence_date(start, frequency, executions)


def first_occurrence_on_or_after(start: date, frequency: Frequency, day: date) -> int:
    """Index of the earliest occurrence that falls on or after `day`."""
    if day <= start:
        return 0

    days = (day - start).days
    if frequency == Frequency.DAILY:
        return days
    if frequency == Frequency.WEEKLY:
        return -(-days // 7)
    if frequency == Frequency.MONTHLY:
        index = (day.year - start.year) * 12 + (day.month - start.month)
        if add_months(start, index) < day:
            index += 1
        return index
    raise ValueError(f"Unknown frequency: {frequency}")
