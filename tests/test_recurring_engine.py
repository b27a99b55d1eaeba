from datetime import date
from typing import Optional

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from conftest import make_household
from database import Base, build_engine
from models import RecurringSeries, SeriesFrequency, SeriesStatus, Transaction, TransactionType
from recurrence import ConcurrentModification, RecurringEngine, series_status
from schemas import RecurringSeriesIn
from services import RecurringSeriesService


def _create_series(
    session: Session,
    household,
    *,
    frequency: SeriesFrequency = SeriesFrequency.monthly,
    start: date = date(2024, 1, 31),
    end: Optional[date] = None,
    amount_cents: int = 95_000,
) -> RecurringSeries:
    return RecurringSeriesService(session).create(
        RecurringSeriesIn(
            person_id=household.person_id,
            account_id=household.account_id,
            category_id=household.rent_id,
            description="Rent",
            amount_cents=amount_cents,
            type=TransactionType.expense,
            frequency=frequency,
            start_date=start,
            end_date=end,
        )
    )


def _txn_count(session: Session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_catch_up_materializes_each_missed_occurrence(session, household):
    series = _create_series(
        session, household, frequency=SeriesFrequency.weekly, start=date(2024, 1, 1)
    )
    created = RecurringEngine(session).catch_up(series, date(2024, 1, 29))

    assert [t.date for t in created] == [
        date(2024, 1, 1),
        date(2024, 1, 8),
        date(2024, 1, 15),
        date(2024, 1, 22),
        date(2024, 1, 29),
    ]
    session.refresh(series)
    assert series.due_date == date(2024, 2, 5)
    assert series.total_executions == 5
    assert series.transaction_ids == [t.id for t in created]
    assert all(t.series_id == series.id for t in created)
    assert all(t.amount_cents == 95_000 for t in created)


def test_execute_is_a_no_op_once_caught_up(session, household):
    series = _create_series(session, household)
    engine = RecurringEngine(session)
    assert engine.execute(series, date(2024, 2, 1)) is not None
    assert engine.execute(series, date(2024, 2, 1)) is None
    assert engine.catch_up(series, date(2024, 2, 1)) == []
    assert _txn_count(session) == 1


def test_series_expires_through_engine(session, household):
    series = _create_series(session, household, end=date(2024, 3, 15))
    created = RecurringEngine(session).catch_up(series, date(2024, 12, 31))

    assert [t.date for t in created] == [date(2024, 1, 31), date(2024, 2, 29)]
    session.refresh(series)
    assert series.due_date == date(2024, 3, 29)
    assert series_status(series) == SeriesStatus.expired
    assert RecurringEngine(session).execute(series, date(2025, 1, 1)) is None
    assert _txn_count(session) == 2


def test_run_due_skips_paused_and_reports_summary(session, household):
    rent = _create_series(session, household, start=date(2024, 1, 1))
    gym = _create_series(
        session,
        household,
        frequency=SeriesFrequency.monthly,
        start=date(2024, 1, 5),
        amount_cents=3_000,
    )
    RecurringSeriesService(session).pause(gym.id)

    summary = RecurringSeriesService(session).run_due(date(2024, 3, 2))

    assert summary.total_processed == 1
    assert summary.successful_executions == 3
    assert summary.failed_executions == 0
    assert summary.total_amount_cents == 3 * 95_000
    assert {t.series_id for t in summary.executed} == {rent.id}


def test_run_due_dry_run_persists_nothing(session, household):
    series = _create_series(
        session, household, frequency=SeriesFrequency.weekly, start=date(2024, 1, 1)
    )
    summary = RecurringSeriesService(session).run_due(date(2024, 1, 15), dry_run=True)

    assert summary.successful_executions == 3
    assert summary.total_amount_cents == 3 * 95_000
    assert summary.executed == []
    assert _txn_count(session) == 0
    session.refresh(series)
    assert series.due_date == date(2024, 1, 1)


def test_run_due_can_skip_long_overdue_series(session, household):
    stale = _create_series(session, household, start=date(2023, 1, 1))
    fresh = _create_series(session, household, start=date(2024, 3, 1))

    summary = RecurringSeriesService(session).run_due(
        date(2024, 3, 3), max_days_overdue=7
    )

    assert summary.skipped == [stale.id]
    assert [t.series_id for t in summary.executed] == [fresh.id]


def test_losing_writer_retries_and_does_not_double_execute(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(eng)
    with Session(eng) as setup:
        household = make_household(setup)
        series_id = _create_series(setup, household).id

    first = Session(eng)
    second = Session(eng)
    try:
        stale = second.get(RecurringSeries, series_id)
        assert stale.due_date == date(2024, 1, 31)

        winner = first.get(RecurringSeries, series_id)
        assert RecurringEngine(first).execute(winner, date(2024, 2, 10)) is not None

        assert RecurringEngine(second).execute(stale, date(2024, 2, 10)) is None
        assert stale.due_date == date(2024, 2, 29)
        assert stale.total_executions == 1
        assert _txn_count(second) == 1
    finally:
        first.close()
        second.close()
        eng.dispose()


def test_execution_is_retried_against_a_paused_series(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'pause.db'}")
    Base.metadata.create_all(eng)
    with Session(eng) as setup:
        household = make_household(setup)
        series_id = _create_series(setup, household).id

    executor = Session(eng)
    other = Session(eng)
    try:
        stale = executor.get(RecurringSeries, series_id)
        assert stale.is_active is True

        RecurringSeriesService(other).pause(series_id)

        assert RecurringEngine(executor).execute(stale, date(2024, 2, 10)) is None
        assert stale.is_active is False
        assert stale.total_executions == 0
        assert _txn_count(executor) == 0
    finally:
        executor.close()
        other.close()
        eng.dispose()


def test_conflicts_beyond_retry_budget_raise(session, household, monkeypatch):
    series = _create_series(session, household)
    calls = []

    def always_stale(self, series, result):
        calls.append(result.request.date)
        raise StaleDataError("version mismatch")

    monkeypatch.setattr(RecurringEngine, "_post_occurrence", always_stale)

    with pytest.raises(ConcurrentModification):
        RecurringEngine(session, max_retries=2).execute(series, date(2024, 2, 1))
    assert len(calls) == 3


def test_series_deleted_mid_execution_is_treated_as_not_due(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'gone.db'}")
    Base.metadata.create_all(eng)
    with Session(eng) as setup:
        household = make_household(setup)
        series_id = _create_series(setup, household).id

    executor = Session(eng)
    other = Session(eng)
    try:
        stale = executor.get(RecurringSeries, series_id)
        assert stale.due_date == date(2024, 1, 31)

        RecurringSeriesService(other).delete(series_id)

        assert RecurringEngine(executor).execute(stale, date(2024, 2, 10)) is None
        assert _txn_count(executor) == 0
        with pytest.raises(ValueError, match="not found"):
            RecurringSeriesService(executor).get(series_id)
    finally:
        executor.close()
        other.close()
        eng.dispose()
