"""Five-field cron validation and next-trigger computation.

Validation is narrower than what croniter accepts: only numeric
minute, hour, day-of-month, month and weekday fields (weekday 0-6, Sunday is
0) built from ``*``, ``base/step``, ``a-b``, comma lists and single integers.
Calendar evaluation of an accepted expression is delegated to croniter, which
implements standard cron matching (day-of-month and weekday are OR-ed when
both are restricted).
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Tuple

from croniter import CroniterBadDateError, CroniterError, croniter  # type: ignore[import-untyped]

from agentflow.core.clock import as_utc
from agentflow.core.errors import SchedulingError, ValidationError

DEFAULT_LOOKAHEAD_YEARS = 4

# (name, lowest, highest) in expression order.
FIELD_BOUNDS: Tuple[Tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 6),
)

_INTEGER = re.compile(r"^\d+$")


def _in_bounds(token: str, low: int, high: int) -> bool:
    return bool(_INTEGER.match(token)) and low <= int(token) <= high


def _field_is_valid(token: str, low: int, high: int) -> bool:
    if token == "*":
        return True
    if "/" in token:
        base, _, step = token.partition("/")
        if not _INTEGER.match(step) or not 1 <= int(step) <= high:
            return False
        return base == "*" or _in_bounds(base, low, high)
    if "," in token:
        return all(_in_bounds(part, low, high) for part in token.split(","))
    if "-" in token:
        start, _, end = token.partition("-")
        return _in_bounds(start, low, high) and _in_bounds(end, low, high) and int(start) <= int(end)
    return _in_bounds(token, low, high)


def validate(expression: object) -> bool:
    """Return True if *expression* is a valid five-field cron expression."""
    if not isinstance(expression, str):
        return False
    fields = expression.split()
    if len(fields) != len(FIELD_BOUNDS):
        return False
    return all(
        _field_is_valid(token, low, high)
        for token, (_, low, high) in zip(fields, FIELD_BOUNDS)
    )


def next_run(
    expression: str,
    after: datetime,
    *,
    lookahead_years: int = DEFAULT_LOOKAHEAD_YEARS,
) -> datetime:
    """Return the first trigger instant strictly after *after* (aware, UTC).

    Raises ValidationError for an invalid expression and SchedulingError when
    nothing matches within *lookahead_years*.
    """
    if not validate(expression):
        raise ValidationError(f"Invalid cron expression: {expression!r}")
    base = as_utc(after)
    try:
        iterator = croniter(expression, base, max_years_between_matches=lookahead_years)
        candidate = as_utc(iterator.get_next(datetime))
        while candidate <= base:
            candidate = as_utc(iterator.get_next(datetime))
    except CroniterBadDateError as exc:
        raise SchedulingError(
            f"No trigger for {expression!r} within {lookahead_years} years of {base.isoformat()}"
        ) from exc
    except CroniterError as exc:
        raise SchedulingError(f"Cannot evaluate {expression!r}: {exc}") from exc
    return candidate
