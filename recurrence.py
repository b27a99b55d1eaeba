import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, InvalidRequestError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from models import (
    RecurringSeries,
    SeriesFrequency,
    SeriesStatus,
    Transaction,
    TransactionType,
)


logger = logging.getLogger(__name__)


class NotDue(Exception):
    """The series has nothing to execute for the given day."""


class SeriesPaused(NotDue):
    pass


class SeriesExpired(NotDue):
    pass


class ConcurrentModification(RuntimeError):
    """Another writer updated the series first and retries ran out."""


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


# Calendar arithmetic


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Shift ``base`` by ``months``, clamping to the last day of short months."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def next_due_date(current: date, frequency: SeriesFrequency) -> date:
    if frequency == SeriesFrequency.weekly:
        return current + timedelta(days=7)
    if frequency == SeriesFrequency.biweekly:
        return current + timedelta(days=14)
    if frequency == SeriesFrequency.monthly:
        return add_months(current, 1)
    if frequency == SeriesFrequency.yearly:
        return add_months(current, 12)
    raise ValueError(f"Unsupported frequency: {frequency}")


def anchor_in_month(year: int, month: int, anchor_day: int) -> date:
    return date(year, month, min(anchor_day, days_in_month(year, month)))


def anchor_on_or_before(day: date, anchor_day: int) -> date:
    candidate = anchor_in_month(day.year, day.month, anchor_day)
    if candidate <= day:
        return candidate
    previous = add_months(day.replace(day=1), -1)
    return anchor_in_month(previous.year, previous.month, anchor_day)


def next_anchor_after(day: date, anchor_day: int) -> date:
    candidate = anchor_in_month(day.year, day.month, anchor_day)
    if candidate > day:
        return candidate
    following = add_months(day.replace(day=1), 1)
    return anchor_in_month(following.year, following.month, anchor_day)


def anchor_period_end(start: date, anchor_day: int) -> date:
    return next_anchor_after(start, anchor_day) - timedelta(days=1)


# Series lifecycle


def series_status(series: RecurringSeries) -> SeriesStatus:
    if series.end_date is not None and series.due_date > series.end_date:
        return SeriesStatus.expired
    if not series.is_active:
        return SeriesStatus.paused
    return SeriesStatus.active


@dataclass(frozen=True)
class ExecutionRequest:
    series_id: Optional[int]
    date: date
    description: str
    amount_cents: int
    type: TransactionType
    category_id: int
    account_id: int
    person_id: int
    user_id: int


@dataclass(frozen=True)
class ExecutionResult:
    request: ExecutionRequest
    next_due_date: date
    expires: bool


def evaluate(series: RecurringSeries, today: date) -> ExecutionResult:
    """Work out what executing the due occurrence of ``series`` would do.

    Nothing is mutated. Raises :class:`SeriesExpired`, :class:`SeriesPaused`
    or :class:`NotDue` when there is nothing to execute on ``today``.
    """
    status = series_status(series)
    if status == SeriesStatus.expired:
        raise SeriesExpired(f"Series {series.id} expired on {series.end_date}")
    if status == SeriesStatus.paused:
        raise SeriesPaused(f"Series {series.id} is paused")
    if series.due_date > today:
        raise NotDue(f"Series {series.id} is next due on {series.due_date}")

    candidate = next_due_date(series.due_date, series.frequency)
    request = ExecutionRequest(
        series_id=series.id,
        date=series.due_date,
        description=series.description,
        amount_cents=series.amount_cents,
        type=series.type,
        category_id=series.category_id,
        account_id=series.account_id,
        person_id=series.person_id,
        user_id=series.user_id,
    )
    expires = series.end_date is not None and candidate > series.end_date
    return ExecutionResult(request=request, next_due_date=candidate, expires=expires)


def apply_execution(
    series: RecurringSeries, result: ExecutionResult, transaction_id: int
) -> None:
    # Reassign rather than append so the JSON column is flagged as changed.
    series.transaction_ids = list(series.transaction_ids or []) + [transaction_id]
    series.total_executions = (series.total_executions or 0) + 1
    series.due_date = result.next_due_date


def pause(series: RecurringSeries) -> None:
    if series_status(series) == SeriesStatus.expired:
        raise SeriesExpired(f"Series {series.id} has expired and cannot be paused")
    series.is_active = False


def resume(series: RecurringSeries) -> None:
    # due_date is left untouched: a long pause leads to a catch-up burst.
    if series_status(series) == SeriesStatus.expired:
        raise SeriesExpired(f"Series {series.id} has expired and cannot be resumed")
    series.is_active = True


def pending_occurrences(
    series: RecurringSeries, today: date, *, limit: Optional[int] = None
) -> list[date]:
    """Due dates a catch-up run on ``today`` would materialize, oldest first."""
    if series_status(series) != SeriesStatus.active:
        return []
    limit = limit or get_settings().max_catch_up
    dates: list[date] = []
    current = series.due_date
    while current <= today and len(dates) < limit:
        dates.append(current)
        current = next_due_date(current, series.frequency)
        if series.end_date is not None and current > series.end_date:
            break
    return dates


def upcoming_occurrences(series: RecurringSeries, count: int = 5) -> list[date]:
    if series_status(series) == SeriesStatus.expired:
        return []
    dates: list[date] = []
    current = series.due_date
    while len(dates) < count:
        if series.end_date is not None and current > series.end_date:
            break
        dates.append(current)
        current = next_due_date(current, series.frequency)
    return dates


@dataclass
class ExecutionFailure:
    series_id: int
    description: str
    error: str


@dataclass
class ExecutionSummary:
    executed: list[Transaction] = field(default_factory=list)
    failed: list[ExecutionFailure] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    total_processed: int = 0
    successful_executions: int = 0
    total_amount_cents: int = 0

    @property
    def failed_executions(self) -> int:
        return len(self.failed)


class RecurringEngine:
    def __init__(self, session: Session, *, max_retries: Optional[int] = None) -> None:
        self.session = session
        settings = get_settings()
        self.max_retries = (
            max_retries if max_retries is not None else settings.max_execution_retries
        )
        self.max_iterations = settings.max_catch_up

    def execute(self, series: RecurringSeries, today: date) -> Optional[Transaction]:
        """Materialize the occurrence due on ``series.due_date``.

        Returns ``None`` when the series turns out not to be due, including
        after losing a race to another writer that already executed it, or
        when the series was deleted underneath us.
        """
        series_id = series.id
        attempt = 0
        while True:
            try:
                result = evaluate(series, today)
            except NotDue:
                return None
            try:
                txn = self._post_occurrence(series, result)
                self.session.commit()
            except (StaleDataError, IntegrityError) as exc:
                self.session.rollback()
                attempt += 1
                logger.warning(
                    f"series_conflict: series_id={series_id} attempt={attempt} "
                    f"error={exc.__class__.__name__}"
                )
                if attempt > self.max_retries:
                    raise ConcurrentModification(
                        f"Series {series_id} kept changing underneath us"
                    ) from exc
                try:
                    self.session.refresh(series)
                except InvalidRequestError:
                    logger.info(f"series_gone: series_id={series_id}")
                    return None
                continue
            logger.info(
                f"series_executed: series_id={series.id} date={txn.date} "
                f"transaction_id={txn.id} next_due={series.due_date} "
                f"expired={result.expires}"
            )
            return txn

    def catch_up(self, series: RecurringSeries, today: date) -> list[Transaction]:
        created: list[Transaction] = []
        iterations = 0
        while iterations < self.max_iterations:
            txn = self.execute(series, today)
            if txn is None:
                break
            created.append(txn)
            iterations += 1
        return created

    def due_series(self, user_id: int, today: date) -> list[RecurringSeries]:
        stmt = (
            select(RecurringSeries)
            .where(
                RecurringSeries.user_id == user_id,
                RecurringSeries.is_active.is_(True),
                RecurringSeries.due_date <= today,
            )
            .order_by(RecurringSeries.due_date, RecurringSeries.id)
        )
        return [
            s
            for s in self.session.scalars(stmt).all()
            if series_status(s) == SeriesStatus.active
        ]

    def run_due(
        self,
        user_id: int,
        today: date,
        *,
        dry_run: bool = False,
        max_days_overdue: Optional[int] = None,
    ) -> ExecutionSummary:
        summary = ExecutionSummary()
        for series in self.due_series(user_id, today):
            if (
                max_days_overdue is not None
                and (today - series.due_date).days > max_days_overdue
            ):
                summary.skipped.append(series.id)
                continue
            summary.total_processed += 1
            if dry_run:
                pending = pending_occurrences(series, today)
                logger.info(
                    f"series_dry_run: series_id={series.id} occurrences={len(pending)}"
                )
                summary.successful_executions += len(pending)
                summary.total_amount_cents += series.amount_cents * len(pending)
                continue
            series_id = series.id
            description = series.description
            try:
                created = self.catch_up(series, today)
            except Exception as exc:
                self.session.rollback()
                logger.exception(f"series_failed: series_id={series_id}")
                summary.failed.append(
                    ExecutionFailure(
                        series_id=series_id, description=description, error=str(exc)
                    )
                )
                continue
            summary.executed.extend(created)
            summary.successful_executions += len(created)
            summary.total_amount_cents += sum(t.amount_cents for t in created)
        return summary

    def _post_occurrence(
        self, series: RecurringSeries, result: ExecutionResult
    ) -> Transaction:
        request = result.request
        txn = Transaction(
            user_id=request.user_id,
            person_id=request.person_id,
            account_id=request.account_id,
            category_id=request.category_id,
            series_id=request.series_id,
            date=request.date,
            type=request.type,
            amount_cents=request.amount_cents,
            description=request.description,
        )
        self.session.add(txn)
        self.session.flush()
        apply_execution(series, result, txn.id)
        self.session.flush()
        return txn
