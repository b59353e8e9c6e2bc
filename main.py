import logging

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session

from database import SessionLocal
from scheduler import SchedulerManager
from schemas import BudgetIn, BudgetProgressOut, GoalAmountIn, GoalOut, SweepResultOut
from services import BudgetService, BudgetSnapshot, GoalService

app = FastAPI(title="Finance Scheduler")


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


def _progress_out(snapshot: BudgetSnapshot) -> BudgetProgressOut:
    return BudgetProgressOut(
        budget_id=snapshot.id,
        category_id=snapshot.category_id,
        category_name=snapshot.category_name,
        amount_cents=snapshot.amount_cents,
        start_date=snapshot.start_date,
        end_date=snapshot.end_date,
        alert_threshold=snapshot.alert_threshold,
        spent_cents=snapshot.spend.spent_cents,
        remaining_cents=snapshot.spend.remaining_cents,
        percentage_used=round(snapshot.spend.percentage_used, 2),
        is_over_budget=snapshot.spend.is_over_budget,
        should_alert=snapshot.spend.should_alert,
    )


@app.get("/api/budgets/progress", response_model=list[BudgetProgressOut])
def budget_progress(user_id: int, db: Session = Depends(get_db)):
    service = BudgetService(db, user_id)
    return [_progress_out(snapshot) for snapshot in service.progress()]


@app.post("/api/budgets", response_model=BudgetProgressOut, status_code=201)
def create_budget(user_id: int, data: BudgetIn, db: Session = Depends(get_db)):
    service = BudgetService(db, user_id)
    try:
        budget = service.create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _progress_out(BudgetSnapshot.from_budget(budget, service.spend_for(budget)))


@app.put("/api/goals/{goal_id}/amount", response_model=GoalOut)
def update_goal_amount(
    goal_id: int, user_id: int, data: GoalAmountIn, db: Session = Depends(get_db)
):
    try:
        goal = GoalService(db, user_id).set_current_amount(
            goal_id, data.current_amount_cents
        )
    except ValueError as exc:
        status = 404 if "not found" in str(exc) else 400
        raise HTTPException(status_code=status, detail=str(exc)) from exc
    return GoalOut.model_validate(goal)


@app.post("/api/jobs/{job}", response_model=SweepResultOut)
def run_job(job: str):
    try:
        results = scheduler_manager.run_now(job)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    counts: dict[str, int] = {}
    errors: list[str] = []
    for name, result in results.items():
        if result is None:
            errors.append(f"{name}: sweep failed")
            continue
        for attr in ("created", "alerted", "completed"):
            if hasattr(result, attr):
                counts[attr] = getattr(result, attr)
        errors.extend(
            f"{err.entity}#{err.entity_id}: {err.message}" for err in result.errors
        )
    logging.info(f"manual_job: job={job} counts={counts} errors={len(errors)}")
    return SweepResultOut(job=job, counts=counts, errors=errors)
