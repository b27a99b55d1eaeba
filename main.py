from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from sqlalchemy.orm import Session

from aggregation import summarize
from database import SessionLocal
from models import RecurringSeries, SeriesStatus
from periods import ExceptionAlreadyOpen, InvalidExceptionWindow
from recurrence import ConcurrentModification, NotDue, local_today, series_status
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AnchorDayIn,
    BudgetExceptionIn,
    BudgetIn,
    BudgetPeriodOut,
    CategoryIn,
    ExceptionPreviewOut,
    PeriodOut,
    PersonIn,
    RecurringSeriesIn,
    RecurringSeriesOut,
    ResolvedPeriodOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    AccountService,
    BudgetExceptionService,
    BudgetService,
    CategoryService,
    PersonService,
    RecurringSeriesService,
    TransactionService,
)

app = FastAPI(title="Household Finance")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _today(value: Optional[date]) -> date:
    return value or local_today()


def _bad_request(exc: Exception) -> HTTPException:
    if isinstance(exc, (ExceptionAlreadyOpen, ConcurrentModification, NotDue)):
        return HTTPException(status_code=409, detail=str(exc))
    if str(exc).endswith("not found"):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def series_out(series: RecurringSeries) -> RecurringSeriesOut:
    return RecurringSeriesOut(
        id=series.id,
        person_id=series.person_id,
        account_id=series.account_id,
        category_id=series.category_id,
        description=series.description,
        amount_cents=series.amount_cents,
        type=series.type,
        frequency=series.frequency,
        start_date=series.start_date,
        end_date=series.end_date,
        due_date=series.due_date,
        is_active=series.is_active,
        status=series_status(series),
        total_executions=series.total_executions,
        transaction_ids=list(series.transaction_ids or []),
    )


# People, accounts, categories


@app.get("/api/people")
def list_people(db: Session = Depends(get_db)):
    return [
        {"id": p.id, "name": p.name, "anchor_day": p.anchor_day}
        for p in PersonService(db).list_all()
    ]


@app.post("/api/people", status_code=201)
def create_person(data: PersonIn, db: Session = Depends(get_db)):
    try:
        person = PersonService(db).create(data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"id": person.id, "name": person.name, "anchor_day": person.anchor_day}


@app.patch("/api/people/{person_id}/anchor-day")
def update_anchor_day(person_id: int, data: AnchorDayIn, db: Session = Depends(get_db)):
    try:
        person = PersonService(db).set_anchor_day(person_id, data.anchor_day)
    except (ValueError, ConcurrentModification) as exc:
        raise _bad_request(exc) from exc
    return {"id": person.id, "name": person.name, "anchor_day": person.anchor_day}


@app.post("/api/accounts", status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).create(data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"id": account.id, "person_id": account.person_id, "name": account.name}


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [
        {"id": c.id, "key": c.key, "name": c.name, "type": c.type.value}
        for c in CategoryService(db).list_all()
    ]


@app.post("/api/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {
        "id": category.id,
        "key": category.key,
        "name": category.name,
        "type": category.type.value,
    }


# Transactions


@app.post("/api/transactions", status_code=201, response_model=TransactionOut)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create(data)
    except ValueError as exc:
        raise _bad_request(exc) from exc


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    person_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="Start date must be before end date")
    return TransactionService(db).list_for_person(person_id, start, end)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).soft_delete(transaction_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return Response(status_code=204)


# Recurring series


@app.get("/api/series", response_model=list[RecurringSeriesOut])
def list_series(
    person_id: Optional[int] = None,
    status: Optional[SeriesStatus] = None,
    db: Session = Depends(get_db),
):
    service = RecurringSeriesService(db)
    return [series_out(s) for s in service.list(person_id=person_id, status=status)]


@app.post("/api/series", status_code=201, response_model=RecurringSeriesOut)
def create_series(data: RecurringSeriesIn, db: Session = Depends(get_db)):
    try:
        return series_out(RecurringSeriesService(db).create(data))
    except ValueError as exc:
        raise _bad_request(exc) from exc


@app.post("/api/series/run-due")
def run_due_series(
    today: Optional[date] = None,
    dry_run: bool = False,
    max_days_overdue: Optional[int] = None,
    db: Session = Depends(get_db),
):
    summary = RecurringSeriesService(db).run_due(
        _today(today), dry_run=dry_run, max_days_overdue=max_days_overdue
    )
    return {
        "executed": [TransactionOut.model_validate(t) for t in summary.executed],
        "failed": [
            {"series_id": f.series_id, "description": f.description, "error": f.error}
            for f in summary.failed
        ],
        "skipped": summary.skipped,
        "summary": {
            "total_processed": summary.total_processed,
            "successful_executions": summary.successful_executions,
            "failed_executions": summary.failed_executions,
            "total_amount_cents": summary.total_amount_cents,
        },
    }


@app.get("/api/series/missed")
def missed_series(db: Session = Depends(get_db)):
    return [
        {"series": series_out(series), "missed_payments": missed}
        for series, missed in RecurringSeriesService(db).find_missed_executions()
    ]


@app.get("/api/series/{series_id}", response_model=RecurringSeriesOut)
def get_series(series_id: int, db: Session = Depends(get_db)):
    try:
        return series_out(RecurringSeriesService(db).get(series_id))
    except ValueError as exc:
        raise _bad_request(exc) from exc


@app.post("/api/series/{series_id}/pause", response_model=RecurringSeriesOut)
def pause_series(series_id: int, db: Session = Depends(get_db)):
    try:
        return series_out(RecurringSeriesService(db).pause(series_id))
    except (ValueError, NotDue, ConcurrentModification) as exc:
        raise _bad_request(exc) from exc


@app.post("/api/series/{series_id}/resume", response_model=RecurringSeriesOut)
def resume_series(series_id: int, db: Session = Depends(get_db)):
    try:
        return series_out(RecurringSeriesService(db).resume(series_id))
    except (ValueError, NotDue, ConcurrentModification) as exc:
        raise _bad_request(exc) from exc


@app.post("/api/series/{series_id}/execute")
def execute_series(
    series_id: int, today: Optional[date] = None, db: Session = Depends(get_db)
):
    service = RecurringSeriesService(db)
    try:
        created = service.execute(series_id, _today(today))
        series = service.get(series_id)
    except (ValueError, ConcurrentModification) as exc:
        raise _bad_request(exc) from exc
    return {
        "executed": [TransactionOut.model_validate(t) for t in created],
        "series": series_out(series),
    }


@app.get("/api/series/{series_id}/upcoming")
def upcoming_series_dates(
    series_id: int, count: int = 5, db: Session = Depends(get_db)
):
    try:
        dates = RecurringSeriesService(db).upcoming(series_id, min(max(count, 1), 60))
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"series_id": series_id, "dates": [d.isoformat() for d in dates]}


@app.get("/api/series/{series_id}/reconciliation")
def series_reconciliation(series_id: int, db: Session = Depends(get_db)):
    try:
        rec = RecurringSeriesService(db).reconciliation(series_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {
        "series": series_out(rec.series),
        "transactions": [TransactionOut.model_validate(t) for t in rec.transactions],
        "summary": {
            "expected_executions": rec.expected_executions,
            "actual_executions": rec.actual_executions,
            "missed_payments": rec.missed_payments,
            "total_paid_cents": rec.total_paid_cents,
            "expected_total_cents": rec.expected_total_cents,
            "difference_cents": rec.difference_cents,
            "success_rate": rec.success_rate,
        },
    }


@app.delete("/api/series/{series_id}", status_code=204)
def delete_series(series_id: int, db: Session = Depends(get_db)):
    try:
        RecurringSeriesService(db).delete(series_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return Response(status_code=204)


# Budget periods and exceptions


@app.get("/api/people/{person_id}/period", response_model=ResolvedPeriodOut)
def current_period(
    person_id: int, today: Optional[date] = None, db: Session = Depends(get_db)
):
    try:
        resolved = BudgetExceptionService(db).current_period(person_id, _today(today))
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return ResolvedPeriodOut(
        start=resolved.start,
        end=resolved.end,
        can_add_exception=resolved.can_add_exception,
        is_shifted=resolved.is_shifted,
        exception_date=resolved.exception.exception_date if resolved.exception else None,
        exception_reason=resolved.exception.reason if resolved.exception else None,
    )


@app.get("/api/people/{person_id}/periods", response_model=list[PeriodOut])
def period_list(
    person_id: int,
    count: int = 6,
    today: Optional[date] = None,
    db: Session = Depends(get_db),
):
    try:
        periods = BudgetExceptionService(db).history(
            person_id, _today(today), min(max(count, 1), 36)
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return [PeriodOut(start=p.start, end=p.end) for p in periods]


@app.get("/api/people/{person_id}/exceptions")
def list_exceptions(person_id: int, db: Session = Depends(get_db)):
    try:
        exceptions = BudgetExceptionService(db).list(person_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return [
        {"id": e.id, "exception_date": e.exception_date.isoformat(), "reason": e.reason}
        for e in exceptions
    ]


@app.post(
    "/api/people/{person_id}/exceptions/preview", response_model=ExceptionPreviewOut
)
def preview_exception(
    person_id: int,
    data: BudgetExceptionIn,
    today: Optional[date] = None,
    db: Session = Depends(get_db),
):
    try:
        preview = BudgetExceptionService(db).preview(person_id, data, _today(today))
    except (ValueError, InvalidExceptionWindow) as exc:
        raise _bad_request(exc) from exc
    following = preview.following
    return ExceptionPreviewOut(
        exception_date=preview.exception_date,
        current=PeriodOut(start=preview.current.start, end=preview.current.end),
        following=PeriodOut(start=following.start, end=following.end)
        if following
        else None,
        is_weekend=preview.is_weekend,
        reason=preview.reason,
    )


@app.post("/api/people/{person_id}/exceptions", status_code=201)
def create_exception(
    person_id: int,
    data: BudgetExceptionIn,
    today: Optional[date] = None,
    db: Session = Depends(get_db),
):
    try:
        exception = BudgetExceptionService(db).create(person_id, data, _today(today))
    except (ValueError, ConcurrentModification) as exc:
        raise _bad_request(exc) from exc
    return {
        "id": exception.id,
        "exception_date": exception.exception_date.isoformat(),
        "reason": exception.reason,
    }


@app.delete("/api/people/{person_id}/exceptions/{exception_id}", status_code=204)
def delete_exception(person_id: int, exception_id: int, db: Session = Depends(get_db)):
    try:
        BudgetExceptionService(db).delete(person_id, exception_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return Response(status_code=204)


# Budgets


@app.post("/api/budgets", status_code=201)
def create_budget(data: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).create(data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {
        "id": budget.id,
        "person_id": budget.person_id,
        "description": budget.description,
        "amount_cents": budget.amount_cents,
        "categories": [c.key for c in budget.categories],
    }


@app.get("/api/people/{person_id}/budgets")
def budget_progress(
    person_id: int, today: Optional[date] = None, db: Session = Depends(get_db)
):
    service = BudgetService(db)
    day = _today(today)
    try:
        progress = service.progress_for_person(person_id, day)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    budgets = [
        BudgetPeriodOut(
            budget_id=budget.id,
            description=budget.description,
            start_date=period.start_date,
            end_date=period.end_date,
            is_active=period.is_active,
            allowance_cents=period.allowance_cents,
            total_spent=period.total_spent,
            total_saved=period.total_saved,
            percentage=period.percentage,
            transaction_count=period.transaction_count,
            category_spending=period.category_spending,
        )
        for budget, period in progress
    ]
    return {
        "budgets": budgets,
        "summary": summarize(period for _, period in progress),
    }


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
