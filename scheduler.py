import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from clock import APSchedulerClock, Clock
from config import get_settings
from database import session_scope
from notifications import EmailNotifier, Notifier
from recurrence import RecurringEngine
from services import BudgetAlertEvaluator, GoalCompletionDetector
from store import Store


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

Sweep = Callable[[datetime], object]


@dataclass
class SweepHandlers:
    materialize: Sweep
    evaluate_budgets: Sweep
    evaluate_goals: Sweep


class SchedulerState(str, Enum):
    stopped = "stopped"
    running = "running"


def session_handlers(
    cancel: threading.Event, notifier: Optional[Notifier] = None
) -> SweepHandlers:
    """Handlers that open a fresh database session for every sweep."""
    notifier = notifier or EmailNotifier()

    def materialize(as_of: datetime) -> object:
        with session_scope() as session:
            return RecurringEngine(Store(session), cancel=cancel).materialize_due(as_of)

    def evaluate_budgets(as_of: datetime) -> object:
        with session_scope() as session:
            evaluator = BudgetAlertEvaluator(Store(session), notifier, cancel=cancel)
            return evaluator.evaluate(as_of)

    def evaluate_goals(as_of: datetime) -> object:
        with session_scope() as session:
            detector = GoalCompletionDetector(Store(session), notifier, cancel=cancel)
            return detector.evaluate(as_of)

    return SweepHandlers(materialize, evaluate_budgets, evaluate_goals)


class SchedulerManager:
    def __init__(
        self,
        clock: Optional[Clock] = None,
        handlers: Optional[SweepHandlers] = None,
    ) -> None:
        self.settings = get_settings()
        self.clock = clock or APSchedulerClock(self.settings.timezone)
        self.cancel = threading.Event()
        self.handlers = handlers or session_handlers(self.cancel)
        self.state = SchedulerState.stopped

    def _run_sweep(self, job: str, name: str, sweep: Sweep, as_of: datetime) -> object:
        try:
            result = sweep(as_of)
        except Exception:
            logger.exception(f"scheduler_sweep_failed: job={job} sweep={name}")
            return None
        errors = getattr(result, "errors", [])
        logger.info(f"scheduler_sweep: job={job} sweep={name} errors={len(errors)}")
        return result

    def run_daily(self) -> dict[str, object]:
        as_of = self.clock.now()
        logger.info(f"scheduler_run: job=daily as_of={as_of.isoformat()}")
        return {
            "materialize": self._run_sweep(
                "daily", "materialize", self.handlers.materialize, as_of
            ),
            "budgets": self._run_sweep(
                "daily", "budgets", self.handlers.evaluate_budgets, as_of
            ),
            "goals": self._run_sweep(
                "daily", "goals", self.handlers.evaluate_goals, as_of
            ),
        }

    def run_alerts(self) -> dict[str, object]:
        as_of = self.clock.now()
        logger.info(f"scheduler_run: job=alerts as_of={as_of.isoformat()}")
        return {
            "budgets": self._run_sweep(
                "alerts", "budgets", self.handlers.evaluate_budgets, as_of
            ),
            "goals": self._run_sweep(
                "alerts", "goals", self.handlers.evaluate_goals, as_of
            ),
        }

    def run_now(self, job: str) -> dict[str, object]:
        if job not in ("daily", "alerts"):
            raise ValueError(f"Unknown job: {job}")
        if self.state == SchedulerState.stopped:
            # A manual run after stop() must not see the stale cancellation.
            self.cancel.clear()
        logger.info(f"scheduler_run_now: job={job} state={self.state.value}")
        if job == "daily":
            return self.run_daily()
        return self.run_alerts()

    def start(self) -> None:
        if self.state == SchedulerState.running:
            logger.info("Scheduler already running")
            return
        self.cancel.clear()
        run_at = self.settings.daily_run_time
        hours = self.settings.alert_interval_hours
        self.clock.add_daily("recurring_daily", self.run_daily, at=run_at)
        self.clock.add_interval("alerts_interval", self.run_alerts, hours=hours)
        self.clock.start()
        self.state = SchedulerState.running
        logger.info(
            f"Scheduler started with daily {run_at.strftime('%H:%M')} "
            f"and alerts every {hours}h"
        )

    def stop(self) -> None:
        if self.state == SchedulerState.stopped:
            return
        self.cancel.set()
        self.clock.stop()
        self.state = SchedulerState.stopped
        logger.info("Scheduler stopped")
