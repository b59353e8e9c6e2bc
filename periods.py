from dataclasses import dataclass
from datetime import date, timedelta

from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, target: date) -> bool:
        return self.start <= target <= self.end

    def overlaps(self, other: "Period") -> bool:
        return self.start <= other.end and other.start <= self.end


def month_end(target: date) -> date:
    first = target.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def budget_window(period: BudgetPeriod, start: date) -> Period:
    if period == BudgetPeriod.yearly:
        return Period("yearly", start, date(start.year, 12, 31))
    return Period("monthly", start, month_end(start))


def day_window(target: date) -> tuple[date, date]:
    """Half-open ``[target, target + 1 day)`` window for due-date lookups."""
    return target, target + timedelta(days=1)
