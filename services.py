from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import Budget, BudgetPeriod, Category, Goal, TransactionType
from notifications import NotificationResult, Notifier
from periods import budget_window
from recurrence import SweepError, local_now
from schemas import BudgetIn
from store import Store


logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLD = 80


@dataclass(frozen=True)
class SpendSummary:
    spent_cents: int
    remaining_cents: int
    percentage_used: float
    is_over_budget: bool
    should_alert: bool


def compute_spend(budget: Budget, spent_cents: int) -> SpendSummary:
    amount = budget.amount_cents
    threshold = (
        budget.alert_threshold
        if budget.alert_threshold is not None
        else DEFAULT_ALERT_THRESHOLD
    )
    percentage_used = spent_cents * 100 / amount if amount > 0 else 0.0
    return SpendSummary(
        spent_cents=spent_cents,
        remaining_cents=amount - spent_cents,
        percentage_used=percentage_used,
        is_over_budget=spent_cents > amount,
        should_alert=percentage_used >= threshold,
    )


@dataclass(frozen=True)
class BudgetSnapshot:
    """Budget fields plus the spend computed in the same pass."""

    id: int
    user_id: int
    category_id: int
    category_name: str
    amount_cents: int
    period: BudgetPeriod
    start_date: date
    end_date: date
    alert_threshold: int
    is_active: bool
    spend: SpendSummary

    @classmethod
    def from_budget(cls, budget: Budget, spend: SpendSummary) -> "BudgetSnapshot":
        category_name = (
            budget.category.name if budget.category else f"#{budget.category_id}"
        )
        return cls(
            id=budget.id,
            user_id=budget.user_id,
            category_id=budget.category_id,
            category_name=category_name,
            amount_cents=budget.amount_cents,
            period=budget.period,
            start_date=budget.start_date,
            end_date=budget.end_date,
            alert_threshold=budget.alert_threshold,
            is_active=budget.is_active,
            spend=spend,
        )


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.store = Store(session)

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def list_active(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id, Budget.is_active.is_(True))
            .order_by(Budget.start_date, Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        start, end = self._window(data)
        if data.is_active:
            self._ensure_no_overlap(data.category_id, start, end)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=start,
            end_date=end,
            alert_threshold=data.alert_threshold,
            is_active=data.is_active,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        if data.category_id != budget.category_id:
            self._check_category(data.category_id)
        start, end = self._window(data)
        if data.is_active:
            self._ensure_no_overlap(
                data.category_id, start, end, exclude_budget_id=budget.id
            )
        budget.category_id = data.category_id
        budget.amount_cents = data.amount_cents
        budget.period = data.period
        budget.start_date = start
        budget.end_date = end
        budget.alert_threshold = data.alert_threshold
        budget.is_active = data.is_active
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def spend_for(self, budget: Budget) -> SpendSummary:
        spent = self.store.aggregate_expense_sum(
            budget.user_id, budget.category_id, budget.start_date, budget.end_date
        )
        return compute_spend(budget, spent)

    def progress(self) -> list[BudgetSnapshot]:
        return [
            BudgetSnapshot.from_budget(budget, self.spend_for(budget))
            for budget in self.list_active()
        ]

    @staticmethod
    def _window(data: BudgetIn) -> tuple[date, date]:
        if data.end_date is not None:
            return data.start_date, data.end_date
        window = budget_window(data.period, data.start_date)
        return window.start, window.end

    def _check_category(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.type != TransactionType.expense:
            raise ValueError("Budgets can only be set for expense categories")

    def _ensure_no_overlap(
        self,
        category_id: int,
        start: date,
        end: date,
        *,
        exclude_budget_id: Optional[int] = None,
    ) -> None:
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id,
            Budget.category_id == category_id,
            Budget.is_active.is_(True),
            Budget.start_date <= end,
            Budget.end_date >= start,
        )
        if exclude_budget_id is not None:
            stmt = stmt.where(Budget.id != exclude_budget_id)
        if self.session.execute(stmt.limit(1)).scalar_one_or_none() is not None:
            raise ValueError(
                "An active budget already exists for this category "
                "in the specified date range"
            )


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise ValueError("Goal not found")
        return goal

    def set_current_amount(self, goal_id: int, current_amount_cents: int) -> Goal:
        if current_amount_cents < 0:
            raise ValueError("Current amount cannot be negative")
        goal = self.get(goal_id)
        goal.current_amount_cents = current_amount_cents
        changed = goal.check_completion()
        self.session.commit()
        self.session.refresh(goal)
        if changed is not None:
            logger.info(f"goal_completion_changed: goal_id={goal.id} completed={changed}")
        return goal


@dataclass
class AlertResult:
    alerted: int = 0
    errors: list[SweepError] = field(default_factory=list)


@dataclass
class CompletionResult:
    completed: int = 0
    errors: list[SweepError] = field(default_factory=list)


class BudgetAlertEvaluator:
    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        *,
        cooldown_hours: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        if cooldown_hours is None:
            cooldown_hours = get_settings().budget_alert_cooldown_hours
        self.cooldown_hours = cooldown_hours
        self.cancel = cancel

    def evaluate(self, as_of: Optional[datetime] = None) -> AlertResult:
        as_of = as_of or local_now()
        budgets = [(budget.id, budget) for budget in self.store.find_active_budgets()]
        logger.info(f"budget_alerts: as_of={as_of.isoformat()} active={len(budgets)}")

        result = AlertResult()
        for budget_id, budget in budgets:
            if self.cancel is not None and self.cancel.is_set():
                logger.warning(f"budget_alerts_cancelled: remaining_from_budget_id={budget_id}")
                break
            try:
                sent = self._evaluate_budget(budget, as_of)
            except Exception as exc:
                logger.exception(f"budget_alert_failed: budget_id={budget_id}")
                self.store.reset()
                result.errors.append(SweepError("budget", budget_id, str(exc)))
                continue
            if sent is None:
                continue
            if not sent.success:
                logger.error(
                    f"budget_alert_not_delivered: budget_id={budget_id} error={sent.error}"
                )
                result.errors.append(
                    SweepError("budget", budget_id, f"Notification failed: {sent.error}")
                )
                continue
            result.alerted += 1
            if self.cooldown_hours and not sent.skipped:
                try:
                    budget.last_alerted_at = as_of.replace(tzinfo=None)
                    self.store.save_budget(budget)
                except Exception as exc:
                    logger.exception(f"budget_alert_mark_failed: budget_id={budget_id}")
                    self.store.reset()
                    result.errors.append(SweepError("budget", budget_id, str(exc)))

        logger.info(
            f"budget_alerts: as_of={as_of.isoformat()} alerted={result.alerted} "
            f"errors={len(result.errors)}"
        )
        return result

    def _evaluate_budget(
        self, budget: Budget, as_of: datetime
    ) -> Optional[NotificationResult]:
        spent = self.store.aggregate_expense_sum(
            budget.user_id, budget.category_id, budget.start_date, budget.end_date
        )
        spend = compute_spend(budget, spent)
        if not (spend.should_alert or spend.is_over_budget):
            return None
        if self._in_cooldown(budget, as_of):
            logger.info(f"budget_alert_suppressed: budget_id={budget.id} reason=cooldown")
            return None

        user = self.store.find_user(budget.user_id)
        if user is None:
            raise ValueError(f"Owner {budget.user_id} not found")
        if not user.has_notification_address:
            logger.info(f"budget_alert_skipped: budget_id={budget.id} reason=no_address")
            return None

        snapshot = BudgetSnapshot.from_budget(budget, spend)
        logger.info(
            f"budget_alert: budget_id={budget.id} user_id={user.id} "
            f"percentage_used={spend.percentage_used:.1f} "
            f"over_budget={spend.is_over_budget}"
        )
        return self.notifier.send_budget_alert(user, snapshot)

    def _in_cooldown(self, budget: Budget, as_of: datetime) -> bool:
        if not self.cooldown_hours or budget.last_alerted_at is None:
            return False
        elapsed = as_of.replace(tzinfo=None) - budget.last_alerted_at
        return elapsed < timedelta(hours=self.cooldown_hours)


class GoalCompletionDetector:
    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.cancel = cancel

    def evaluate(self, as_of: Optional[datetime] = None) -> CompletionResult:
        as_of = as_of or local_now()
        goals = [(goal.id, goal) for goal in self.store.find_incomplete_goals()]
        logger.info(f"goal_completions: as_of={as_of.isoformat()} open={len(goals)}")

        result = CompletionResult()
        for goal_id, goal in goals:
            if self.cancel is not None and self.cancel.is_set():
                logger.warning(f"goal_completions_cancelled: remaining_from_goal_id={goal_id}")
                break
            try:
                # Only incomplete goals are loaded, so this never flips back.
                if goal.check_completion() is not True:
                    continue
                self.store.save_goal(goal)
            except Exception as exc:
                logger.exception(f"goal_completion_failed: goal_id={goal_id}")
                self.store.reset()
                result.errors.append(SweepError("goal", goal_id, str(exc)))
                continue

            result.completed += 1
            logger.info(f"goal_completed: goal_id={goal_id}")
            error = self._notify(goal_id, goal)
            if error is not None:
                result.errors.append(SweepError("goal", goal_id, error))

        logger.info(
            f"goal_completions: as_of={as_of.isoformat()} completed={result.completed} "
            f"errors={len(result.errors)}"
        )
        return result

    def _notify(self, goal_id: int, goal: Goal) -> Optional[str]:
        try:
            user = self.store.find_user(goal.user_id)
            if user is None:
                raise ValueError(f"Owner {goal.user_id} not found")
            if not user.has_notification_address:
                logger.info(f"goal_notification_skipped: goal_id={goal_id} reason=no_address")
                return None
            sent = self.notifier.send_goal_achievement(user, goal)
        except Exception as exc:
            logger.exception(f"goal_notification_failed: goal_id={goal_id}")
            self.store.reset()
            return str(exc)
        if not sent.success:
            logger.error(f"goal_notification_not_delivered: goal_id={goal_id} error={sent.error}")
            return f"Notification failed: {sent.error}"
        return None
