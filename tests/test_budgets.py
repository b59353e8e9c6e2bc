from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from models import Budget, BudgetPeriod, Category, Transaction, TransactionType, User
from notifications import NotificationResult
from schemas import BudgetIn
from services import BudgetAlertEvaluator, BudgetService, compute_spend
from store import Store

TZ = ZoneInfo("Europe/Berlin")
AS_OF = datetime(2025, 1, 20, 6, 0, tzinfo=TZ)


class RecordingNotifier:
    def __init__(self, result=None, fail_for=()):
        self.result = result or NotificationResult(success=True)
        self.fail_for = set(fail_for)
        self.budget_alerts = []
        self.goal_achievements = []

    def send_budget_alert(self, user, budget):
        self.budget_alerts.append((user.id, budget))
        if budget.id in self.fail_for:
            return NotificationResult(success=False, error="connection refused")
        return self.result

    def send_goal_achievement(self, user, goal):
        self.goal_achievements.append((user.id, goal.id))
        return self.result


def _setup(engine, email="ana@example.com"):
    with Session(engine) as session:
        user = User(name="Ana", email=email)
        other = User(name="Ben", email="ben@example.com")
        session.add_all([user, other])
        session.flush()
        groceries = Category(
            user_id=user.id, name="Groceries", type=TransactionType.expense
        )
        dining = Category(user_id=user.id, name="Dining", type=TransactionType.expense)
        salary = Category(user_id=user.id, name="Salary", type=TransactionType.income)
        session.add_all([groceries, dining, salary])
        session.commit()
        return {
            "user": user.id,
            "other": other.id,
            "groceries": groceries.id,
            "dining": dining.id,
            "salary": salary.id,
        }


def _budget(ids, category_key="groceries", amount_cents=100_000, **kwargs):
    return Budget(
        user_id=kwargs.pop("user_id", ids["user"]),
        category_id=ids[category_key],
        amount_cents=amount_cents,
        period=BudgetPeriod.monthly,
        start_date=kwargs.pop("start_date", date(2025, 1, 1)),
        end_date=kwargs.pop("end_date", date(2025, 1, 31)),
        alert_threshold=kwargs.pop("alert_threshold", 80),
        is_active=kwargs.pop("is_active", True),
    )


def _expense(ids, on: date, amount_cents: int, category_key="groceries", **kwargs):
    return Transaction(
        user_id=kwargs.get("user_id", ids["user"]),
        title="Purchase",
        date=on,
        occurred_at=datetime.combine(on, datetime.min.time()),
        type=kwargs.get("type", TransactionType.expense),
        amount_cents=amount_cents,
        category_id=ids[category_key],
    )


def test_compute_spend_near_threshold():
    budget = Budget(amount_cents=100_000, alert_threshold=80)
    spend = compute_spend(budget, 85_000)
    assert spend.percentage_used == pytest.approx(85.0)
    assert spend.remaining_cents == 15_000
    assert spend.is_over_budget is False
    assert spend.should_alert is True


@pytest.mark.parametrize("threshold", [0, 50, 100])
def test_compute_spend_over_budget_regardless_of_threshold(threshold):
    budget = Budget(amount_cents=100_000, alert_threshold=threshold)
    spend = compute_spend(budget, 120_000)
    assert spend.is_over_budget is True
    assert spend.remaining_cents == -20_000
    assert spend.percentage_used == pytest.approx(120.0)


def test_compute_spend_zero_amount_budget():
    budget = Budget(amount_cents=0, alert_threshold=80)
    spend = compute_spend(budget, 500)
    assert spend.percentage_used == 0
    assert spend.is_over_budget is True
    assert spend.should_alert is False


def test_compute_spend_below_threshold():
    budget = Budget(amount_cents=100_000, alert_threshold=80)
    spend = compute_spend(budget, 79_999)
    assert spend.should_alert is False
    assert spend.is_over_budget is False


def test_aggregate_counts_only_matching_expenses_in_window():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        session.add_all(
            [
                _expense(ids, date(2025, 1, 1), 1_000),
                _expense(ids, date(2025, 1, 15), 2_000),
                _expense(ids, date(2025, 1, 31), 4_000),
                _expense(ids, date(2024, 12, 31), 8_000),
                _expense(ids, date(2025, 2, 1), 16_000),
                _expense(ids, date(2025, 1, 10), 32_000, category_key="dining"),
                _expense(ids, date(2025, 1, 10), 64_000, user_id=ids["other"]),
                _expense(
                    ids, date(2025, 1, 10), 128_000, type=TransactionType.income
                ),
            ]
        )
        session.commit()

        spent = Store(session).aggregate_expense_sum(
            ids["user"], ids["groceries"], date(2025, 1, 1), date(2025, 1, 31)
        )
        assert spent == 7_000


def test_evaluator_alerts_budgets_near_or_over_threshold():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        near = _budget(ids, "groceries")
        calm = _budget(ids, "dining")
        inactive = _budget(
            ids,
            "groceries",
            start_date=date(2024, 12, 1),
            end_date=date(2025, 1, 31),
            is_active=False,
        )
        session.add_all([near, calm, inactive])
        session.add_all(
            [
                _expense(ids, date(2025, 1, 5), 85_000),
                _expense(ids, date(2025, 1, 6), 10_000, category_key="dining"),
            ]
        )
        session.commit()
        near_id = near.id

    notifier = RecordingNotifier()
    with Session(engine) as session:
        result = BudgetAlertEvaluator(
            Store(session), notifier, cooldown_hours=0
        ).evaluate(AS_OF)

    assert result.alerted == 1
    assert result.errors == []
    assert len(notifier.budget_alerts) == 1
    user_id, snapshot = notifier.budget_alerts[0]
    assert user_id == ids["user"]
    assert snapshot.id == near_id
    assert snapshot.category_name == "Groceries"
    assert snapshot.spend.spent_cents == 85_000
    assert snapshot.spend.remaining_cents == 15_000
    assert snapshot.spend.percentage_used == pytest.approx(85.0)
    assert snapshot.spend.should_alert is True


def test_evaluator_realerts_on_every_run_without_cooldown():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        session.add(_budget(ids))
        session.add(_expense(ids, date(2025, 1, 5), 120_000))
        session.commit()

    notifier = RecordingNotifier()
    with Session(engine) as session:
        evaluator = BudgetAlertEvaluator(Store(session), notifier, cooldown_hours=0)
        assert evaluator.evaluate(AS_OF).alerted == 1
        assert evaluator.evaluate(AS_OF).alerted == 1

    assert len(notifier.budget_alerts) == 2
    assert all(s.spend.is_over_budget for _, s in notifier.budget_alerts)


def test_evaluator_cooldown_suppresses_repeat_alerts():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        budget = _budget(ids)
        session.add(budget)
        session.add(_expense(ids, date(2025, 1, 5), 90_000))
        session.commit()
        budget_id = budget.id

    notifier = RecordingNotifier()
    with Session(engine) as session:
        evaluator = BudgetAlertEvaluator(Store(session), notifier, cooldown_hours=24)
        assert evaluator.evaluate(AS_OF).alerted == 1
        assert evaluator.evaluate(AS_OF + timedelta(hours=6)).alerted == 0
        assert evaluator.evaluate(AS_OF + timedelta(hours=25)).alerted == 1
        last = session.get(Budget, budget_id).last_alerted_at
        assert last == (AS_OF + timedelta(hours=25)).replace(tzinfo=None)

    assert len(notifier.budget_alerts) == 2


def test_skipped_notifications_do_not_start_cooldown():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        budget = _budget(ids)
        session.add(budget)
        session.add(_expense(ids, date(2025, 1, 5), 90_000))
        session.commit()
        budget_id = budget.id

    notifier = RecordingNotifier(result=NotificationResult(success=True, skipped=True))
    with Session(engine) as session:
        evaluator = BudgetAlertEvaluator(Store(session), notifier, cooldown_hours=24)
        assert evaluator.evaluate(AS_OF).alerted == 1
        assert evaluator.evaluate(AS_OF).alerted == 1
        assert session.get(Budget, budget_id).last_alerted_at is None


def test_owner_without_email_is_not_notified():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine, email=None)
    with Session(engine) as session:
        session.add(_budget(ids))
        session.add(_expense(ids, date(2025, 1, 5), 90_000))
        session.commit()

    notifier = RecordingNotifier()
    with Session(engine) as session:
        result = BudgetAlertEvaluator(
            Store(session), notifier, cooldown_hours=0
        ).evaluate(AS_OF)

    assert result.alerted == 0
    assert result.errors == []
    assert notifier.budget_alerts == []


def test_notification_failure_does_not_stop_other_budgets():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        first = _budget(ids, "groceries")
        second = _budget(ids, "dining")
        session.add_all([first, second])
        session.add_all(
            [
                _expense(ids, date(2025, 1, 5), 90_000),
                _expense(ids, date(2025, 1, 5), 95_000, category_key="dining"),
            ]
        )
        session.commit()
        first_id = first.id

    notifier = RecordingNotifier(fail_for={first_id})
    with Session(engine) as session:
        result = BudgetAlertEvaluator(
            Store(session), notifier, cooldown_hours=0
        ).evaluate(AS_OF)

    assert len(notifier.budget_alerts) == 2
    assert result.alerted == 1
    assert [e.entity_id for e in result.errors] == [first_id]


class DroppedConnectionStore(Store):
    def __init__(self, session, drop_on_call):
        super().__init__(session)
        self.drop_on_call = drop_on_call
        self.calls = 0

    def aggregate_expense_sum(self, user_id, category_id, start, end):
        self.calls += 1
        if self.calls == self.drop_on_call:
            self.session.connection().invalidate()
            raise OperationalError(
                "SELECT", {}, Exception("server closed the connection unexpectedly")
            )
        return super().aggregate_expense_sum(user_id, category_id, start, end)


def test_read_error_on_one_budget_does_not_stop_the_others(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'finance.db'}")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        first = _budget(ids, "groceries")
        second = _budget(ids, "dining")
        third = _budget(ids, "dining", user_id=ids["other"])
        session.add_all([first, second, third])
        session.add_all(
            [
                _expense(ids, date(2025, 1, 5), 90_000),
                _expense(ids, date(2025, 1, 5), 90_000, category_key="dining"),
                _expense(
                    ids,
                    date(2025, 1, 5),
                    90_000,
                    category_key="dining",
                    user_id=ids["other"],
                ),
            ]
        )
        session.commit()
        budget_ids = [first.id, second.id, third.id]

    notifier = RecordingNotifier()
    with Session(engine) as session:
        store = DroppedConnectionStore(session, drop_on_call=2)
        result = BudgetAlertEvaluator(store, notifier, cooldown_hours=24).evaluate(AS_OF)

    assert result.alerted == 2
    assert [e.entity_id for e in result.errors] == [budget_ids[1]]
    assert [s.id for _, s in notifier.budget_alerts] == [budget_ids[0], budget_ids[2]]
    assert notifier.budget_alerts[1][0] == ids["other"]
    with Session(engine) as session:
        marked = [session.get(Budget, i).last_alerted_at for i in budget_ids]
    assert marked[1] is None
    assert marked[0] == marked[2] == AS_OF.replace(tzinfo=None)


def test_budget_service_rejects_overlapping_active_budget():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        service = BudgetService(session, ids["user"])
        january = service.create(
            BudgetIn(
                category_id=ids["groceries"],
                amount_cents=50_000,
                start_date=date(2025, 1, 1),
            )
        )
        assert january.end_date == date(2025, 1, 31)
        assert january.alert_threshold == 80

        with pytest.raises(ValueError, match="already exists"):
            service.create(
                BudgetIn(
                    category_id=ids["groceries"],
                    amount_cents=10_000,
                    start_date=date(2025, 1, 31),
                    end_date=date(2025, 2, 15),
                )
            )

        february = service.create(
            BudgetIn(
                category_id=ids["groceries"],
                amount_cents=10_000,
                start_date=date(2025, 2, 1),
            )
        )
        assert february.end_date == date(2025, 2, 28)

        dormant = service.create(
            BudgetIn(
                category_id=ids["groceries"],
                amount_cents=10_000,
                start_date=date(2025, 1, 10),
                is_active=False,
            )
        )
        assert dormant.is_active is False

        updated = service.update(
            january.id,
            BudgetIn(
                category_id=ids["groceries"],
                amount_cents=60_000,
                start_date=date(2025, 1, 1),
                alert_threshold=90,
            ),
        )
        assert updated.amount_cents == 60_000
        assert updated.alert_threshold == 90


def test_budget_service_validates_category_and_window():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        service = BudgetService(session, ids["user"])
        with pytest.raises(ValueError, match="expense categories"):
            service.create(
                BudgetIn(
                    category_id=ids["salary"],
                    amount_cents=1_000,
                    start_date=date(2025, 1, 1),
                )
            )
        yearly = service.create(
            BudgetIn(
                category_id=ids["dining"],
                amount_cents=1_000,
                period=BudgetPeriod.yearly,
                start_date=date(2025, 3, 1),
            )
        )
        assert yearly.end_date == date(2025, 12, 31)

    with pytest.raises(ValueError):
        BudgetIn(
            category_id=1,
            amount_cents=1_000,
            start_date=date(2025, 3, 1),
            end_date=date(2025, 3, 1),
        )
    with pytest.raises(ValueError):
        BudgetIn(
            category_id=1,
            amount_cents=1_000,
            start_date=date(2025, 3, 1),
            alert_threshold=101,
        )


def test_progress_uses_same_spend_computation():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    ids = _setup(engine)
    with Session(engine) as session:
        session.add(_budget(ids))
        session.add(_expense(ids, date(2025, 1, 5), 42_000))
        session.commit()

        progress = BudgetService(session, ids["user"]).progress()
        assert len(progress) == 1
        assert progress[0].spend == compute_spend(
            Budget(amount_cents=100_000, alert_threshold=80), 42_000
        )
