from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class SeriesFrequency(str, Enum):
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    yearly = "yearly"


class SeriesStatus(str, Enum):
    active = "active"
    paused = "paused"
    expired = "expired"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Person(Base, TimestampMixin):
    __tablename__ = "people"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    anchor_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Bumped whenever the person's exceptions change so two concurrent
    # writers cannot both pass the open-exception guard.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    exceptions: Mapped[list["BudgetException"]] = relationship(
        "BudgetException", back_populates="person", cascade="all, delete-orphan"
    )
    budgets: Mapped[list["Budget"]] = relationship(
        "Budget", back_populates="person", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_person_user_name"),
        CheckConstraint(
            "anchor_day >= 1 AND anchor_day <= 31", name="ck_person_anchor_day"
        ),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    person: Mapped["Person"] = relationship("Person")

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_account_user_name"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    key: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_category_user_key"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    series_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_series.id", ondelete="SET NULL")
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    series: Mapped[Optional["RecurringSeries"]] = relationship(
        "RecurringSeries", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint("series_id", "date", name="uq_txn_series_occurrence"),
        Index("ix_transactions_person_date", "person_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class RecurringSeries(Base, TimestampMixin):
    __tablename__ = "recurring_series"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    frequency: Mapped[SeriesFrequency] = mapped_column(
        SAEnum(SeriesFrequency), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    total_executions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    transaction_ids: Mapped[list[int]] = mapped_column(
        JSON, default=list, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    category: Mapped["Category"] = relationship("Category")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="series", passive_deletes=True
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_series_amount_positive"),
        CheckConstraint("due_date >= start_date", name="ck_series_due_after_start"),
        CheckConstraint("total_executions >= 0", name="ck_series_executions"),
        Index("ix_series_user_due", "user_id", "is_active", "due_date"),
    )


budget_categories = Table(
    "budget_categories",
    Base.metadata,
    Column(
        "budget_id",
        Integer,
        ForeignKey("budgets.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("category_id", Integer, ForeignKey("categories.id"), primary_key=True),
)


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id"), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    person: Mapped["Person"] = relationship("Person", back_populates="budgets")
    categories: Mapped[list["Category"]] = relationship(
        "Category", secondary=budget_categories
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
        Index("ix_budget_user_person", "user_id", "person_id"),
    )


class BudgetException(Base, TimestampMixin):
    __tablename__ = "budget_exceptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id"), nullable=False)
    exception_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(200))

    person: Mapped["Person"] = relationship("Person", back_populates="exceptions")

    __table_args__ = (
        Index("ix_budget_exception_person_date", "person_id", "exception_date"),
    )
