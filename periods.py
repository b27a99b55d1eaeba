"""Budget period boundaries.

A person's budget periods normally run from one occurrence of their anchor
day-of-month to the day before the next one. An exception moves exactly one
of those boundaries: the anchor period containing the exception date is cut
short on that date, and the remainder of it becomes a period of its own.
From the following anchor occurrence on, the usual cadence applies again.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional, Protocol

from recurrence import anchor_on_or_before, anchor_period_end

ONE_DAY = timedelta(days=1)


class InvalidExceptionWindow(ValueError):
    pass


class ExceptionAlreadyOpen(ValueError):
    pass


class ExceptionLike(Protocol):
    exception_date: date
    reason: Optional[str]


@dataclass(frozen=True)
class Period:
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class ResolvedPeriod:
    start: date
    end: date
    can_add_exception: bool
    exception: Optional[ExceptionLike] = None
    is_shifted: bool = False

    @property
    def period(self) -> Period:
        return Period(self.start, self.end)


@dataclass(frozen=True)
class ExceptionPreview:
    exception_date: date
    current: Period
    following: Optional[Period]
    is_weekend: bool
    reason: Optional[str] = None


def anchor_period(day: date, anchor_day: int) -> Period:
    """The unshifted anchor period containing ``day``."""
    start = anchor_on_or_before(day, anchor_day)
    return Period(start, anchor_period_end(start, anchor_day))


def split_period(base: Period, exception_date: date) -> list[Period]:
    if not base.contains(exception_date):
        return [base]
    pieces = [Period(base.start, exception_date)]
    if exception_date < base.end:
        pieces.append(Period(exception_date + ONE_DAY, base.end))
    return pieces


def exception_closes_on(exception_date: date, anchor_day: int) -> date:
    """Last day on which an exception still shapes the current period."""
    return anchor_period(exception_date, anchor_day).end


def is_exception_open(exception: ExceptionLike, anchor_day: int, today: date) -> bool:
    return today <= exception_closes_on(exception.exception_date, anchor_day)


def resolve(
    anchor_day: int, today: date, last_exception: Optional[ExceptionLike] = None
) -> ResolvedPeriod:
    base = anchor_period(today, anchor_day)
    if last_exception is None or not is_exception_open(
        last_exception, anchor_day, today
    ):
        return ResolvedPeriod(base.start, base.end, can_add_exception=True)

    exception_date = last_exception.exception_date
    shifted_base = anchor_period(exception_date, anchor_day)
    for piece in split_period(shifted_base, exception_date):
        if piece.contains(today):
            return ResolvedPeriod(
                piece.start,
                piece.end,
                can_add_exception=False,
                exception=last_exception,
                is_shifted=True,
            )
    # The anchor day moved after the exception was recorded, leaving it in a
    # later period than today. The unshifted period applies, but the guard
    # stays closed until that exception's period ends.
    return ResolvedPeriod(
        base.start, base.end, can_add_exception=False, exception=last_exception
    )


def preview_exception_period(
    anchor_day: int, today: date, candidate: date, reason: Optional[str] = None
) -> ExceptionPreview:
    current = anchor_period(today, anchor_day)
    next_anchor = current.end + ONE_DAY
    if not current.start < candidate < next_anchor:
        raise InvalidExceptionWindow(
            f"Exception date must fall after {current.start.isoformat()} "
            f"and before {next_anchor.isoformat()}"
        )
    pieces = split_period(current, candidate)
    return ExceptionPreview(
        exception_date=candidate,
        current=pieces[0],
        following=pieces[1] if len(pieces) > 1 else None,
        is_weekend=candidate.weekday() >= 5,
        reason=reason,
    )


def validate_new_exception(
    anchor_day: int,
    today: date,
    candidate: date,
    last_exception: Optional[ExceptionLike] = None,
) -> ExceptionPreview:
    if not resolve(anchor_day, today, last_exception).can_add_exception:
        raise ExceptionAlreadyOpen(
            "An exception is already in effect for the current budget period"
        )
    return preview_exception_period(anchor_day, today, candidate)


def period_history(
    anchor_day: int,
    today: date,
    exceptions: Iterable[ExceptionLike] = (),
    count: int = 6,
) -> list[Period]:
    """The current period and those before it, newest first."""
    exception_dates = sorted({e.exception_date for e in exceptions})
    periods: list[Period] = []
    base = anchor_period(today, anchor_day)
    while len(periods) < count:
        pieces = [base]
        for exception_date in exception_dates:
            if base.contains(exception_date):
                pieces = split_period(base, exception_date)
                break
        for piece in reversed(pieces):
            if piece.start > today or len(periods) >= count:
                continue
            periods.append(piece)
        base = anchor_period(base.start - ONE_DAY, anchor_day)
    return periods
