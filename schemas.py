from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import SeriesFrequency, SeriesStatus, TransactionType


CATEGORY_KEY_PATTERN = r"^[a-z0-9][a-z0-9_-]*$"


class PersonIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    anchor_day: Optional[int] = Field(default=None, ge=1, le=31)


class AnchorDayIn(BaseModel):
    anchor_day: int = Field(..., ge=1, le=31)


class AccountIn(BaseModel):
    person_id: int
    name: str = Field(..., min_length=1, max_length=100)


class CategoryIn(BaseModel):
    key: str = Field(..., min_length=1, max_length=50, pattern=CATEGORY_KEY_PATTERN)
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class TransactionIn(BaseModel):
    person_id: int
    account_id: int
    category_id: int
    date: date
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    description: Optional[str] = Field(default=None, max_length=200)


class RecurringSeriesIn(BaseModel):
    person_id: int
    account_id: int
    category_id: int
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0)
    type: TransactionType
    frequency: SeriesFrequency
    start_date: date
    due_date: Optional[date] = None
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def _check_dates(self) -> "RecurringSeriesIn":
        first_due = self.due_date or self.start_date
        if first_due < self.start_date:
            raise ValueError("First due date cannot be before the start date")
        if self.end_date is not None and first_due > self.end_date:
            raise ValueError("First due date cannot be after the end date")
        return self


class BudgetIn(BaseModel):
    person_id: int
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0)
    category_ids: list[int] = Field(..., min_length=1)


class BudgetExceptionIn(BaseModel):
    exception_date: date
    reason: Optional[str] = Field(default=None, max_length=200)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    person_id: int
    account_id: int
    category_id: int
    series_id: Optional[int]
    date: date
    type: TransactionType
    amount_cents: int
    description: Optional[str]


class RecurringSeriesOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    person_id: int
    account_id: int
    category_id: int
    description: str
    amount_cents: int
    type: TransactionType
    frequency: SeriesFrequency
    start_date: date
    end_date: Optional[date]
    due_date: date
    is_active: bool
    status: SeriesStatus
    total_executions: int
    transaction_ids: list[int]


class PeriodOut(BaseModel):
    start: date
    end: date


class ResolvedPeriodOut(BaseModel):
    start: date
    end: date
    can_add_exception: bool
    is_shifted: bool
    exception_date: Optional[date] = None
    exception_reason: Optional[str] = None


class ExceptionPreviewOut(BaseModel):
    exception_date: date
    current: PeriodOut
    following: Optional[PeriodOut]
    is_weekend: bool
    reason: Optional[str] = None


class BudgetPeriodOut(BaseModel):
    budget_id: int
    description: str
    start_date: date
    end_date: Optional[date]
    is_active: bool
    allowance_cents: int
    total_spent: int
    total_saved: int
    percentage: float
    transaction_count: int
    category_spending: dict[str, int]
