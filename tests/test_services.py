from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

import services
from conftest import make_household
from database import Base, build_engine
from models import BudgetException, SeriesFrequency, SeriesStatus, TransactionType
from periods import ExceptionAlreadyOpen, InvalidExceptionWindow
from recurrence import ConcurrentModification, SeriesExpired
from schemas import (
    BudgetExceptionIn,
    BudgetIn,
    CategoryIn,
    PersonIn,
    RecurringSeriesIn,
    TransactionIn,
)
from services import (
    BudgetExceptionService,
    BudgetService,
    CategoryService,
    PersonService,
    RecurringSeriesService,
    TransactionService,
)


def _spend(session, household, day, cents, category_id=None):
    return TransactionService(session).create(
        TransactionIn(
            person_id=household.person_id,
            account_id=household.account_id,
            category_id=category_id or household.groceries_id,
            date=day,
            type=TransactionType.expense,
            amount_cents=cents,
        )
    )


def _series_in(household, **overrides):
    data = dict(
        person_id=household.person_id,
        account_id=household.account_id,
        category_id=household.rent_id,
        description="Rent",
        amount_cents=95_000,
        type=TransactionType.expense,
        frequency=SeriesFrequency.monthly,
        start_date=date(2024, 1, 1),
    )
    data.update(overrides)
    return RecurringSeriesIn(**data)


def test_person_defaults_and_anchor_validation(session):
    people = PersonService(session)
    person = people.create(PersonIn(name="  Marco "))
    assert person.name == "Marco"
    assert person.anchor_day == 1

    with pytest.raises(ValueError, match="already exists"):
        people.create(PersonIn(name="Marco"))
    with pytest.raises(ValueError, match="between 1 and 31"):
        people.set_anchor_day(person.id, 32)

    assert people.set_anchor_day(person.id, 27).anchor_day == 27


def test_category_key_must_be_a_slug():
    with pytest.raises(ValidationError):
        CategoryIn(key="Bad Key", name="Bad", type=TransactionType.expense)


def test_duplicate_category_key_rejected(session, household):
    with pytest.raises(ValueError, match="already exists"):
        CategoryService(session).create(
            CategoryIn(key="rent", name="Rent again", type=TransactionType.expense)
        )


def test_transaction_category_type_must_match(session, household):
    with pytest.raises(ValueError, match="type mismatch"):
        _spend(session, household, date(2024, 3, 1), 100, household.salary_id)


def test_series_dates_are_validated(household):
    with pytest.raises(ValidationError):
        _series_in(household, due_date=date(2023, 12, 1))
    with pytest.raises(ValidationError):
        _series_in(household, end_date=date(2023, 12, 31))
    with pytest.raises(ValidationError):
        _series_in(household, amount_cents=0)


def test_series_pause_resume_and_listing(session, household):
    service = RecurringSeriesService(session)
    rent = service.create(_series_in(household))
    gym = service.create(_series_in(household, description="Gym", amount_cents=3_000))

    assert service.pause(gym.id).is_active is False
    assert [s.id for s in service.list(status=SeriesStatus.paused)] == [gym.id]
    assert [s.id for s in service.list(status=SeriesStatus.active)] == [rent.id]

    resumed = service.resume(gym.id)
    assert resumed.is_active is True
    assert resumed.due_date == date(2024, 1, 1)


def test_expired_series_cannot_be_paused(session, household):
    service = RecurringSeriesService(session)
    series = service.create(_series_in(household, end_date=date(2024, 1, 15)))
    service.execute(series.id, date(2024, 3, 1))

    assert service.list(status=SeriesStatus.expired)[0].id == series.id
    with pytest.raises(SeriesExpired):
        service.pause(series.id)


def test_upcoming_dates(session, household):
    service = RecurringSeriesService(session)
    series = service.create(_series_in(household, start_date=date(2024, 1, 31)))
    assert service.upcoming(series.id, 3) == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 29),
    ]


def test_reconciliation_reports_deleted_occurrences(session, household):
    service = RecurringSeriesService(session)
    series = service.create(_series_in(household))
    created = service.execute(series.id, date(2024, 3, 15))
    assert len(created) == 3

    TransactionService(session).soft_delete(created[1].id)

    rec = service.reconciliation(series.id)
    assert rec.expected_executions == 3
    assert rec.actual_executions == 2
    assert rec.missed_payments == 1
    assert rec.total_paid_cents == 190_000
    assert rec.difference_cents == -95_000
    assert rec.success_rate == pytest.approx(66.666, rel=1e-3)

    assert [(s.id, gap) for s, gap in service.find_missed_executions()] == [
        (series.id, 1)
    ]


def test_deleting_series_keeps_its_transactions(session, household):
    service = RecurringSeriesService(session)
    series = service.create(_series_in(household))
    created = service.execute(series.id, date(2024, 1, 1))

    service.delete(series.id)

    txn = TransactionService(session).get(created[0].id)
    session.refresh(txn)
    assert txn.series_id is None
    with pytest.raises(ValueError, match="not found"):
        service.get(series.id)


def test_exception_lifecycle(session, household):
    service = BudgetExceptionService(session)
    person_id = household.person_id
    today = date(2024, 3, 15)

    assert service.current_period(person_id, today).can_add_exception is True

    exception = service.create(
        person_id, BudgetExceptionIn(exception_date=date(2024, 3, 10), reason=" early "), today
    )
    assert exception.reason == "early"

    resolved = service.current_period(person_id, today)
    assert (resolved.start, resolved.end) == (date(2024, 3, 11), date(2024, 3, 26))
    assert resolved.can_add_exception is False

    with pytest.raises(ExceptionAlreadyOpen):
        service.create(
            person_id, BudgetExceptionIn(exception_date=date(2024, 3, 20)), date(2024, 3, 20)
        )

    service.delete(person_id, exception.id)
    assert service.current_period(person_id, today).can_add_exception is True
    assert service.list(person_id) == []


def test_exception_outside_window_rejected(session, household):
    with pytest.raises(InvalidExceptionWindow):
        BudgetExceptionService(session).create(
            household.person_id,
            BudgetExceptionIn(exception_date=date(2024, 4, 2)),
            date(2024, 3, 15),
        )


def test_exception_history_and_next_period(session, household):
    service = BudgetExceptionService(session)
    service.create(
        household.person_id,
        BudgetExceptionIn(exception_date=date(2024, 3, 10)),
        date(2024, 3, 1),
    )

    resolved = service.current_period(household.person_id, date(2024, 3, 28))
    assert (resolved.start, resolved.end) == (date(2024, 3, 27), date(2024, 4, 26))
    assert resolved.can_add_exception is True

    history = service.history(household.person_id, date(2024, 3, 28), count=3)
    assert [(p.start, p.end) for p in history] == [
        (date(2024, 3, 27), date(2024, 4, 26)),
        (date(2024, 3, 11), date(2024, 3, 26)),
        (date(2024, 2, 27), date(2024, 3, 10)),
    ]


def test_budget_only_tracks_expense_categories(session, household):
    with pytest.raises(ValueError, match="expense categories"):
        BudgetService(session).create(
            BudgetIn(
                person_id=household.person_id,
                description="Pay",
                amount_cents=1_000,
                category_ids=[household.salary_id],
            )
        )


def test_budget_progress_follows_shifted_period(session, household):
    budgets = BudgetService(session)
    budget = budgets.create(
        BudgetIn(
            person_id=household.person_id,
            description="Food",
            amount_cents=40_000,
            category_ids=[household.groceries_id],
        )
    )
    _spend(session, household, date(2024, 3, 1), 10_000)
    _spend(session, household, date(2024, 3, 12), 5_000)
    _spend(session, household, date(2024, 3, 12), 95_000, household.rent_id)

    [(found, period)] = budgets.progress_for_person(household.person_id, date(2024, 3, 15))
    assert found.id == budget.id
    assert period.start_date == date(2024, 2, 27)
    assert period.total_spent == 15_000
    assert period.total_saved == 25_000

    BudgetExceptionService(session).create(
        household.person_id,
        BudgetExceptionIn(exception_date=date(2024, 3, 10)),
        date(2024, 3, 15),
    )

    [(_, shifted)] = budgets.progress_for_person(household.person_id, date(2024, 3, 15))
    assert shifted.start_date == date(2024, 3, 11)
    assert shifted.end_date is None
    assert shifted.total_spent == 5_000
    assert shifted.category_spending == {"groceries": 5_000}


def test_preview_carries_reason(session, household):
    preview = BudgetExceptionService(session).preview(
        household.person_id,
        BudgetExceptionIn(exception_date=date(2024, 3, 10), reason=" bonus "),
        date(2024, 3, 15),
    )
    assert preview.reason == "bonus"
    assert preview.following.start == date(2024, 3, 11)


def test_anchor_change_with_open_exception(session, household):
    exceptions = BudgetExceptionService(session)
    exceptions.create(
        household.person_id,
        BudgetExceptionIn(exception_date=date(2024, 3, 25)),
        date(2024, 3, 15),
    )
    PersonService(session).set_anchor_day(household.person_id, 20)

    resolved = exceptions.current_period(household.person_id, date(2024, 3, 15))
    assert (resolved.start, resolved.end) == (date(2024, 2, 20), date(2024, 3, 19))
    assert resolved.can_add_exception is False
    assert resolved.is_shifted is False


def test_racing_exception_creators_only_one_wins(tmp_path, monkeypatch):
    eng = build_engine(f"sqlite:///{tmp_path / 'exceptions.db'}")
    Base.metadata.create_all(eng)
    with Session(eng) as setup:
        person_id = make_household(setup).person_id

    winner = Session(eng)
    loser = Session(eng)
    today = date(2024, 3, 15)
    real_validate = services.validate_new_exception

    def validate_then_lose_race(*args, **kwargs):
        preview = real_validate(*args, **kwargs)
        monkeypatch.setattr(services, "validate_new_exception", real_validate)
        BudgetExceptionService(winner).create(
            person_id, BudgetExceptionIn(exception_date=date(2024, 3, 10)), today
        )
        return preview

    try:
        monkeypatch.setattr(services, "validate_new_exception", validate_then_lose_race)
        with pytest.raises(ConcurrentModification):
            BudgetExceptionService(loser).create(
                person_id, BudgetExceptionIn(exception_date=date(2024, 3, 12)), today
            )

        rows = loser.scalars(select(BudgetException)).all()
        assert [e.exception_date for e in rows] == [date(2024, 3, 10)]
        resolved = BudgetExceptionService(loser).current_period(person_id, today)
        assert resolved.can_add_exception is False
    finally:
        winner.close()
        loser.close()
        eng.dispose()


def test_deleting_exception_after_a_concurrent_change_conflicts(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'delete.db'}")
    Base.metadata.create_all(eng)
    with Session(eng) as setup:
        person_id = make_household(setup).person_id
        exception_id = BudgetExceptionService(setup).create(
            person_id, BudgetExceptionIn(exception_date=date(2024, 3, 10)), date(2024, 3, 15)
        ).id

    first = Session(eng)
    second = Session(eng)
    try:
        PersonService(second).get(person_id)
        PersonService(first).set_anchor_day(person_id, 1)

        with pytest.raises(ConcurrentModification):
            BudgetExceptionService(second).delete(person_id, exception_id)
        assert second.get(BudgetException, exception_id) is not None
    finally:
        first.close()
        second.close()
        eng.dispose()
