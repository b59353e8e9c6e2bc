from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import (
    Budget,
    Goal,
    RecurringRule,
    Transaction,
    TransactionType,
    User,
)


class Store:
    """Query and write access used by the background sweeps.

    Every write commits on its own so that one entity's failure never undoes
    another entity's already-finished work. A failed write is rolled back and
    re-raised to the caller.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_due_recurring(self, start: date, end: date) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .where(
                RecurringRule.next_due_date >= start,
                RecurringRule.next_due_date < end,
            )
            .order_by(RecurringRule.next_due_date, RecurringRule.id)
        )
        return list(self.session.scalars(stmt).all())

    def occurrence_exists(self, rule: RecurringRule, occurrence_date: date) -> bool:
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.user_id == rule.user_id,
                Transaction.origin_rule_id == rule.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def create_transaction(self, txn: Transaction) -> Transaction:
        self.session.add(txn)
        self._commit()
        return txn

    def save_rule(self, rule: RecurringRule) -> None:
        self.session.add(rule)
        self._commit()

    def find_active_budgets(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.is_active.is_(True))
            .order_by(Budget.user_id, Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def aggregate_expense_sum(
        self, user_id: int, category_id: int, start: date, end: date
    ) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == user_id,
            Transaction.type == TransactionType.expense,
            Transaction.category_id == category_id,
            Transaction.date.between(start, end),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def save_budget(self, budget: Budget) -> None:
        self.session.add(budget)
        self._commit()

    def find_incomplete_goals(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.is_completed.is_(False))
            .order_by(Goal.user_id, Goal.id)
        )
        return list(self.session.scalars(stmt).all())

    def save_goal(self, goal: Goal) -> None:
        self.session.add(goal)
        self._commit()

    def find_user(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def reset(self) -> None:
        """Discard the failed transaction so the next entity starts clean."""
        self.session.rollback()

    def _commit(self) -> None:
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
