from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import BudgetPeriod


class BudgetIn(BaseModel):
    category_id: int
    amount_cents: int = Field(..., ge=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: date
    end_date: Optional[date] = None
    alert_threshold: int = Field(default=80, ge=0, le=100)
    is_active: bool = True

    @model_validator(mode="after")
    def _check_window(self) -> "BudgetIn":
        if self.end_date is not None and self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self


class GoalAmountIn(BaseModel):
    current_amount_cents: int = Field(..., ge=0, le=99_999_999_900)


class BudgetProgressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    budget_id: int
    category_id: int
    category_name: str
    amount_cents: int
    start_date: date
    end_date: date
    alert_threshold: int
    spent_cents: int
    remaining_cents: int
    percentage_used: float
    is_over_budget: bool
    should_alert: bool


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    target_amount_cents: int
    current_amount_cents: int
    is_completed: bool
    progress_percentage: float


class SweepResultOut(BaseModel):
    job: str
    counts: dict[str, int]
    errors: list[str] = Field(default_factory=list)
