from datetime import date

import database
import scheduler
from conftest import make_household
from database import Base, session_scope
from models import SeriesFrequency, TransactionType
from scheduler import SchedulerManager
from schemas import RecurringSeriesIn
from services import RecurringSeriesService


def test_run_once_posts_due_occurrences(monkeypatch):
    Base.metadata.create_all(database.engine)
    try:
        with session_scope() as session:
            household = make_household(session)
            RecurringSeriesService(session).create(
                RecurringSeriesIn(
                    person_id=household.person_id,
                    account_id=household.account_id,
                    category_id=household.groceries_id,
                    description="Veg box",
                    amount_cents=2_500,
                    type=TransactionType.expense,
                    frequency=SeriesFrequency.weekly,
                    start_date=date(2024, 1, 1),
                )
            )
        monkeypatch.setattr(scheduler, "local_today", lambda: date(2024, 1, 15))

        manager = SchedulerManager()
        assert manager.run_once("test") == 3
        assert manager.last_summary.failed == []
        assert manager.run_once("test") == 0
    finally:
        Base.metadata.drop_all(database.engine)


def test_disabled_scheduler_does_not_start():
    manager = SchedulerManager()
    assert manager.enabled is False
    manager.start()
    assert manager.scheduler.running is False
    manager.stop()
