import logging
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session, sessionmaker

from automation import MonthEndAutomation
from config import get_settings
from database import SessionLocal
from models import AccountTag
from recurrence import RecurringEngine
from scheduler import SchedulerManager
from schemas import BudgetCopyIn, BudgetPeriodOut, MonthEndReport
from services import AccountService, BudgetService, OwnerNotFound, require_user

app = FastAPI(title="Wallet Automation")


def get_session_factory() -> sessionmaker[Session]:
    return SessionLocal


def get_db(factory: sessionmaker[Session] = Depends(get_session_factory)):
    db = factory()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _month_end_payload(report: MonthEndReport) -> dict:
    return {"success": report.success, **asdict(report)}


def _owner_or_404(db: Session, user_id: int) -> None:
    try:
        require_user(db, user_id)
    except OwnerNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/automation/month-end/{user_id}")
def month_end_for_user(
    user_id: int, factory: sessionmaker[Session] = Depends(get_session_factory)
):
    try:
        report = MonthEndAutomation(factory).perform_month_end_automation(user_id)
    except OwnerNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return _month_end_payload(report)


@app.post("/automation/month-end")
def month_end_for_all_users(
    factory: sessionmaker[Session] = Depends(get_session_factory),
):
    reports = MonthEndAutomation(factory).perform_month_end_automation_for_all_users()
    return [_month_end_payload(report) for report in reports]


@app.post("/automation/recurring")
def process_recurring(user_id: Optional[int] = None, db: Session = Depends(get_db)):
    if user_id is not None:
        _owner_or_404(db, user_id)
    report = RecurringEngine(db).process_due_obligations(user_id=user_id)
    logging.info(
        f"recurring_manual_run: user_id={user_id} posted={report.posted_count}"
    )
    return {"processed": report.posted_count, **report.to_dict()}


@app.get("/budgets/current/{user_id}")
def current_budgets(user_id: int, db: Session = Depends(get_db)):
    _owner_or_404(db, user_id)
    budgets = BudgetService(db, user_id).get_current_month_budgets()
    return [BudgetPeriodOut.model_validate(b) for b in budgets]


@app.post("/budgets/copy")
def copy_budgets(data: BudgetCopyIn, db: Session = Depends(get_db)):
    _owner_or_404(db, data.user_id)
    budgets = BudgetService(db, data.user_id).copy_budgets_to_new_month(
        data.month, data.year
    )
    return {
        "success": True,
        "count": len(budgets),
        "budgets": [BudgetPeriodOut.model_validate(b) for b in budgets],
    }


@app.get("/accounts/{user_id}")
def account_balances(user_id: int, db: Session = Depends(get_db)):
    _owner_or_404(db, user_id)
    balances = AccountService(db, user_id).balances()
    db.commit()
    return balances


@app.post("/accounts/{user_id}/{tag}/sync")
def sync_account(user_id: int, tag: AccountTag, db: Session = Depends(get_db)):
    _owner_or_404(db, user_id)
    balance = AccountService(db, user_id).sync_account_balance(tag)
    return {"user_id": user_id, "tag": tag.value, "balance_cents": balance}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
