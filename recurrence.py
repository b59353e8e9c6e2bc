import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency, RecurringRule, Transaction
from periods import day_window
from store import Store


logger = logging.getLogger(__name__)


def local_now() -> datetime:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone))


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def coerce_frequency(raw: Optional[str], *, rule_id: Optional[int] = None) -> Frequency:
    """Resolve a stored frequency string, defaulting to monthly."""
    if raw is None or not str(raw).strip():
        return Frequency.monthly
    try:
        return Frequency(str(raw).strip().lower())
    except ValueError:
        logger.warning(
            f"unknown_frequency: rule_id={rule_id} value={raw!r} fallback=monthly"
        )
        return Frequency.monthly


def advance(from_date: date, frequency: Frequency) -> date:
    if frequency == Frequency.daily:
        return from_date + timedelta(days=1)
    if frequency == Frequency.weekly:
        return from_date + timedelta(weeks=1)
    if frequency == Frequency.monthly:
        return _add_months(from_date, 1)
    return _add_months(from_date, 12)


@dataclass(frozen=True)
class SweepError:
    entity: str
    entity_id: Optional[int]
    message: str


@dataclass
class MaterializeResult:
    created: int = 0
    errors: list[SweepError] = field(default_factory=list)


class RecurringEngine:
    def __init__(self, store: Store, cancel: Optional[threading.Event] = None) -> None:
        self.store = store
        self.cancel = cancel

    def materialize_due(self, as_of: Optional[datetime] = None) -> MaterializeResult:
        as_of = as_of or local_now()
        start, end = day_window(as_of.date())
        rules = [(rule.id, rule) for rule in self.store.find_due_recurring(start, end)]
        logger.info(f"materialize: as_of={as_of.date()} due={len(rules)}")

        result = MaterializeResult()
        for rule_id, rule in rules:
            if self.cancel is not None and self.cancel.is_set():
                logger.warning(f"materialize_cancelled: remaining_from_rule_id={rule_id}")
                break
            try:
                if self._post_occurrence(rule, as_of):
                    result.created += 1
                self._advance_rule(rule)
            except Exception as exc:
                logger.exception(f"materialize_failed: rule_id={rule_id}")
                self.store.reset()
                result.errors.append(SweepError("recurring_rule", rule_id, str(exc)))
        logger.info(
            f"materialize: as_of={as_of.date()} created={result.created} "
            f"errors={len(result.errors)}"
        )
        return result

    def _post_occurrence(self, rule: RecurringRule, as_of: datetime) -> bool:
        occurrence_date = rule.next_due_date
        if self.store.occurrence_exists(rule, occurrence_date):
            # Posted by an earlier run that failed before advancing the rule.
            logger.info(
                f"materialize_skip_existing: rule_id={rule.id} "
                f"occurrence_date={occurrence_date}"
            )
            return False

        txn = Transaction(
            user_id=rule.user_id,
            title=rule.title,
            date=as_of.date(),
            occurred_at=as_of.replace(tzinfo=None),
            type=rule.type,
            amount_cents=rule.amount_cents,
            category_id=rule.category_id,
            note=rule.note,
            origin_rule_id=rule.id,
            occurrence_date=occurrence_date,
        )
        self.store.create_transaction(txn)
        logger.info(f"materialize_created: rule_id={rule.id} transaction_id={txn.id}")
        return True

    def _advance_rule(self, rule: RecurringRule) -> None:
        frequency = coerce_frequency(rule.frequency, rule_id=rule.id)
        rule.next_due_date = advance(rule.next_due_date, frequency)
        self.store.save_rule(rule)
