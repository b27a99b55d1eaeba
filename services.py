from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload
from sqlalchemy.orm.exc import StaleDataError

from aggregation import BudgetPeriod, LedgerEntry, aggregate
from config import get_settings
from models import (
    Account,
    Budget,
    BudgetException,
    Category,
    Person,
    RecurringSeries,
    SeriesStatus,
    Transaction,
    TransactionType,
)
from periods import (
    ExceptionPreview,
    Period,
    ResolvedPeriod,
    period_history,
    preview_exception_period,
    resolve,
    validate_new_exception,
)
from recurrence import (
    ConcurrentModification,
    ExecutionSummary,
    RecurringEngine,
    pause,
    resume,
    series_status,
    upcoming_occurrences,
)
from schemas import (
    AccountIn,
    BudgetExceptionIn,
    BudgetIn,
    CategoryIn,
    PersonIn,
    RecurringSeriesIn,
    TransactionIn,
)


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


class PersonService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Person]:
        stmt = select(Person).where(Person.user_id == self.user_id).order_by(Person.name)
        return self.session.scalars(stmt).all()

    def get(self, person_id: int) -> Person:
        person = self.session.get(Person, person_id)
        if not person or person.user_id != self.user_id:
            raise ValueError("Person not found")
        return person

    def create(self, data: PersonIn) -> Person:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Person name cannot be empty")
        existing = self.session.scalar(
            select(Person).where(Person.user_id == self.user_id, Person.name == clean_name)
        )
        if existing:
            raise ValueError("Person with this name already exists")
        anchor_day = data.anchor_day or get_settings().default_anchor_day
        person = Person(user_id=self.user_id, name=clean_name, anchor_day=anchor_day)
        self.session.add(person)
        self.session.commit()
        self.session.refresh(person)
        return person

    def set_anchor_day(self, person_id: int, anchor_day: int) -> Person:
        if not 1 <= anchor_day <= 31:
            raise ValueError("Anchor day must be between 1 and 31")
        person = self.get(person_id)
        person.anchor_day = anchor_day
        try:
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            raise ConcurrentModification("Person was modified concurrently") from exc
        self.session.refresh(person)
        return person


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def list_for_person(self, person_id: int) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.person_id == person_id)
            .order_by(Account.name)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: AccountIn) -> Account:
        PersonService(self.session, self.user_id).get(data.person_id)
        clean_name = data.name.strip()
        existing = self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id, Account.name == clean_name
            )
        )
        if existing:
            raise ValueError("Account with this name already exists")
        account = Account(user_id=self.user_id, person_id=data.person_id, name=clean_name)
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.key == data.key
            )
        )
        if existing:
            raise ValueError("Category with this key already exists")
        category = Category(
            user_id=self.user_id,
            key=data.key,
            name=data.name.strip(),
            type=data.type,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _check_refs(
        self, person_id: int, account_id: int, category_id: int, txn_type: TransactionType
    ) -> None:
        PersonService(self.session, self.user_id).get(person_id)
        account = AccountService(self.session, self.user_id).get(account_id)
        if account.person_id != person_id:
            raise ValueError("Account does not belong to this person")
        category = CategoryService(self.session, self.user_id).get(category_id)
        if category.type != txn_type:
            raise ValueError("Category type mismatch")

    def create(self, data: TransactionIn) -> Transaction:
        self._check_refs(data.person_id, data.account_id, data.category_id, data.type)
        txn = Transaction(
            user_id=self.user_id,
            person_id=data.person_id,
            account_id=data.account_id,
            category_id=data.category_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id or txn.deleted_at is not None:
            raise ValueError("Transaction not found")
        return txn

    def list_for_person(
        self,
        person_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.person_id == person_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if start is not None:
            stmt = stmt.where(Transaction.date >= start)
        if end is not None:
            stmt = stmt.where(Transaction.date <= end)
        return self.session.scalars(stmt).all()

    def ledger_entries(self, person_id: int, start: date, end: date) -> list[LedgerEntry]:
        return [
            LedgerEntry(
                date=txn.date,
                type=txn.type,
                amount_cents=txn.amount_cents,
                category=txn.category.key,
            )
            for txn in self.list_for_person(person_id, start, end)
        ]

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        txn.deleted_at = datetime.utcnow()
        self.session.commit()


@dataclass(frozen=True)
class SeriesReconciliation:
    series: RecurringSeries
    transactions: list[Transaction]
    expected_executions: int
    actual_executions: int
    missed_payments: int
    total_paid_cents: int
    expected_total_cents: int
    difference_cents: int
    success_rate: float


class RecurringSeriesService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, series_id: int) -> RecurringSeries:
        series = self.session.get(RecurringSeries, series_id)
        if not series or series.user_id != self.user_id:
            raise ValueError("Series not found")
        return series

    def list(
        self,
        *,
        person_id: Optional[int] = None,
        status: Optional[SeriesStatus] = None,
    ) -> list[RecurringSeries]:
        stmt = (
            select(RecurringSeries)
            .options(joinedload(RecurringSeries.category))
            .where(RecurringSeries.user_id == self.user_id)
            .order_by(RecurringSeries.due_date, RecurringSeries.id)
        )
        if person_id is not None:
            stmt = stmt.where(RecurringSeries.person_id == person_id)
        rows = self.session.scalars(stmt).all()
        if status is None:
            return rows
        return [s for s in rows if series_status(s) == status]

    def create(self, data: RecurringSeriesIn) -> RecurringSeries:
        TransactionService(self.session, self.user_id)._check_refs(
            data.person_id, data.account_id, data.category_id, data.type
        )
        series = RecurringSeries(
            user_id=self.user_id,
            person_id=data.person_id,
            account_id=data.account_id,
            category_id=data.category_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            type=data.type,
            frequency=data.frequency,
            start_date=data.start_date,
            end_date=data.end_date,
            due_date=data.due_date or data.start_date,
            is_active=True,
            total_executions=0,
            transaction_ids=[],
        )
        self.session.add(series)
        self.session.commit()
        self.session.refresh(series)
        logger.info(
            f"series_created: series_id={series.id} frequency={series.frequency.value} "
            f"due={series.due_date}"
        )
        return series

    def _update_with_retry(
        self, series_id: int, mutate: Callable[[RecurringSeries], None]
    ) -> RecurringSeries:
        attempts = get_settings().max_execution_retries
        for attempt in range(attempts + 1):
            series = self.get(series_id)
            mutate(series)
            try:
                self.session.commit()
            except StaleDataError:
                self.session.rollback()
                logger.warning(
                    f"series_conflict: series_id={series_id} attempt={attempt + 1}"
                )
                continue
            self.session.refresh(series)
            return series
        raise ConcurrentModification(f"Series {series_id} was modified concurrently")

    def pause(self, series_id: int) -> RecurringSeries:
        return self._update_with_retry(series_id, pause)

    def resume(self, series_id: int) -> RecurringSeries:
        return self._update_with_retry(series_id, resume)

    def delete(self, series_id: int) -> None:
        series = self.get(series_id)
        self.session.delete(series)
        self.session.commit()

    def execute(self, series_id: int, today: date) -> list[Transaction]:
        series = self.get(series_id)
        return RecurringEngine(self.session).catch_up(series, today)

    def run_due(
        self,
        today: date,
        *,
        dry_run: bool = False,
        max_days_overdue: Optional[int] = None,
    ) -> ExecutionSummary:
        summary = RecurringEngine(self.session).run_due(
            self.user_id, today, dry_run=dry_run, max_days_overdue=max_days_overdue
        )
        logger.info(
            f"series_run: user_id={self.user_id} processed={summary.total_processed} "
            f"executed={summary.successful_executions} "
            f"failed={summary.failed_executions} dry_run={dry_run}"
        )
        return summary

    def upcoming(self, series_id: int, count: int = 5) -> list[date]:
        return upcoming_occurrences(self.get(series_id), count)

    def transactions_for(self, series_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.series_id == series_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.date)
        )
        return self.session.scalars(stmt).all()

    def reconciliation(self, series_id: int) -> SeriesReconciliation:
        series = self.get(series_id)
        transactions = self.transactions_for(series_id)
        expected = series.total_executions
        actual = len(transactions)
        total_paid = sum(t.amount_cents for t in transactions)
        expected_total = series.amount_cents * expected
        return SeriesReconciliation(
            series=series,
            transactions=transactions,
            expected_executions=expected,
            actual_executions=actual,
            missed_payments=expected - actual,
            total_paid_cents=total_paid,
            expected_total_cents=expected_total,
            difference_cents=total_paid - expected_total,
            success_rate=(actual / expected * 100) if expected > 0 else 0.0,
        )

    def find_missed_executions(self) -> list[tuple[RecurringSeries, int]]:
        counts = dict(
            self.session.execute(
                select(Transaction.series_id, func.count(Transaction.id))
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.series_id.is_not(None),
                    Transaction.deleted_at.is_(None),
                )
                .group_by(Transaction.series_id)
            ).all()
        )
        missed: list[tuple[RecurringSeries, int]] = []
        for series in self.list(status=SeriesStatus.active):
            gap = series.total_executions - counts.get(series.id, 0)
            if gap > 0:
                missed.append((series, gap))
        return missed


def _clean_reason(reason: Optional[str]) -> Optional[str]:
    return (reason or "").strip() or None


class BudgetExceptionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.people = PersonService(session, self.user_id)

    def list(self, person_id: int) -> list[BudgetException]:
        self.people.get(person_id)
        stmt = (
            select(BudgetException)
            .where(
                BudgetException.user_id == self.user_id,
                BudgetException.person_id == person_id,
            )
            .order_by(BudgetException.exception_date.desc(), BudgetException.id.desc())
        )
        return self.session.scalars(stmt).all()

    def latest(self, person_id: int) -> Optional[BudgetException]:
        exceptions = self.list(person_id)
        return exceptions[0] if exceptions else None

    def current_period(self, person_id: int, today: date) -> ResolvedPeriod:
        person = self.people.get(person_id)
        return resolve(person.anchor_day, today, self.latest(person_id))

    def history(self, person_id: int, today: date, count: int = 6) -> list[Period]:
        person = self.people.get(person_id)
        return period_history(person.anchor_day, today, self.list(person_id), count)

    def preview(
        self, person_id: int, data: BudgetExceptionIn, today: date
    ) -> ExceptionPreview:
        person = self.people.get(person_id)
        return preview_exception_period(
            person.anchor_day, today, data.exception_date, _clean_reason(data.reason)
        )

    def _claim_person(self, person_id: int, seen_version: int) -> None:
        """Bump the person's version, failing if it moved since ``seen_version``.

        Every writer of a person's exceptions goes through here, so two
        callers that both passed the open-exception guard cannot both commit.
        """
        claimed = self.session.execute(
            update(Person)
            .where(Person.id == person_id, Person.version == seen_version)
            .values(version=seen_version + 1, updated_at=datetime.utcnow())
        )
        if claimed.rowcount == 0:
            self.session.rollback()
            logger.warning(f"budget_exception_conflict: person_id={person_id}")
            raise ConcurrentModification("Budget exceptions were modified concurrently")

    def create(
        self, person_id: int, data: BudgetExceptionIn, today: date
    ) -> BudgetException:
        person = self.people.get(person_id)
        seen_version = person.version
        validate_new_exception(
            person.anchor_day, today, data.exception_date, self.latest(person_id)
        )
        self._claim_person(person_id, seen_version)
        exception = BudgetException(
            user_id=self.user_id,
            person_id=person_id,
            exception_date=data.exception_date,
            reason=_clean_reason(data.reason),
        )
        self.session.add(exception)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConcurrentModification(
                "Budget exceptions were modified concurrently"
            ) from exc
        self.session.refresh(exception)
        logger.info(
            f"budget_exception_created: person_id={person_id} "
            f"date={exception.exception_date}"
        )
        return exception

    def delete(self, person_id: int, exception_id: int) -> None:
        exception = self.session.get(BudgetException, exception_id)
        if (
            not exception
            or exception.user_id != self.user_id
            or exception.person_id != person_id
        ):
            raise ValueError("Exception not found")
        person = self.people.get(person_id)
        self._claim_person(person_id, person.version)
        self.session.delete(exception)
        self.session.commit()


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def list_for_person(self, person_id: int) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.user_id == self.user_id, Budget.person_id == person_id)
            .order_by(Budget.description, Budget.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: BudgetIn) -> Budget:
        PersonService(self.session, self.user_id).get(data.person_id)
        categories = []
        for category_id in dict.fromkeys(data.category_ids):
            category = CategoryService(self.session, self.user_id).get(category_id)
            if category.type != TransactionType.expense:
                raise ValueError("Budgets can only track expense categories")
            categories.append(category)
        if not categories:
            raise ValueError("A budget must track at least one category")
        budget = Budget(
            user_id=self.user_id,
            person_id=data.person_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            categories=categories,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def progress_for_person(
        self, person_id: int, today: date
    ) -> list[tuple[Budget, BudgetPeriod]]:
        resolved = BudgetExceptionService(self.session, self.user_id).current_period(
            person_id, today
        )
        return self.progress_for_period(person_id, resolved.period, today)

    def progress_for_period(
        self, person_id: int, period: Period, today: date
    ) -> list[tuple[Budget, BudgetPeriod]]:
        entries = TransactionService(self.session, self.user_id).ledger_entries(
            person_id, period.start, period.end
        )
        return [
            (
                budget,
                aggregate(
                    period,
                    entries,
                    [c.key for c in budget.categories],
                    budget.amount_cents,
                    today,
                ),
            )
            for budget in self.list_for_person(person_id)
        ]
