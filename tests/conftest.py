import os

os.environ.setdefault("FINANCE_DATABASE_URL", "sqlite://")
os.environ.setdefault("FINANCE_SCHEDULER_ENABLED", "0")

from dataclasses import dataclass  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

import models  # noqa: E402,F401
from database import Base, build_engine  # noqa: E402
from models import TransactionType  # noqa: E402
from schemas import AccountIn, CategoryIn, PersonIn  # noqa: E402
from services import AccountService, CategoryService, PersonService  # noqa: E402


@dataclass
class Household:
    person_id: int
    account_id: int
    groceries_id: int
    rent_id: int
    salary_id: int


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


def make_household(session: Session, anchor_day: int = 27) -> Household:
    person = PersonService(session).create(PersonIn(name="Giulia", anchor_day=anchor_day))
    account = AccountService(session).create(
        AccountIn(person_id=person.id, name="Checking")
    )
    categories = CategoryService(session)
    groceries = categories.create(
        CategoryIn(key="groceries", name="Groceries", type=TransactionType.expense)
    )
    rent = categories.create(
        CategoryIn(key="rent", name="Rent", type=TransactionType.expense)
    )
    salary = categories.create(
        CategoryIn(key="salary", name="Salary", type=TransactionType.income)
    )
    return Household(
        person_id=person.id,
        account_id=account.id,
        groceries_id=groceries.id,
        rent_id=rent.id,
        salary_id=salary.id,
    )


@pytest.fixture
def household(session) -> Household:
    return make_household(session)
