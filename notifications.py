from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings, get_settings
from models import Goal, User

if TYPE_CHECKING:  # pragma: no cover
    from services import BudgetSnapshot


logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "email"


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    message_id: Optional[str] = None


class Notifier(Protocol):
    def send_budget_alert(
        self, user: User, budget: "BudgetSnapshot"
    ) -> NotificationResult: ...

    def send_goal_achievement(self, user: User, goal: Goal) -> NotificationResult: ...


def format_currency(cents: int, symbol: str = "€") -> str:
    amount = f"{cents / 100:,.2f}".replace(",", " ").replace(".", ",")
    return f"{amount} {symbol}".strip()


def _build_environment(settings: Settings) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(enabled_extensions=("html",)),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["currency"] = lambda cents: format_currency(
        cents, settings.currency_symbol
    )
    return env


class EmailNotifier:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.templates = _build_environment(self.settings)

    def send_budget_alert(
        self, user: User, budget: "BudgetSnapshot"
    ) -> NotificationResult:
        subject = f"Budget Alert: {budget.category_name}"
        context = {"user": user, "budget": budget}
        return self._send(user.email, subject, "budget_alert", context)

    def send_goal_achievement(self, user: User, goal: Goal) -> NotificationResult:
        subject = f"Goal Achieved: {goal.title}"
        context = {"user": user, "goal": goal}
        return self._send(user.email, subject, "goal_achieved", context)

    def render(self, template: str, context: dict[str, object]) -> tuple[str, str]:
        text = self.templates.get_template(f"{template}.txt").render(**context)
        html = self.templates.get_template(f"{template}.html").render(**context)
        return text, html

    def _send(
        self,
        to: Optional[str],
        subject: str,
        template: str,
        context: dict[str, object],
    ) -> NotificationResult:
        if not self.settings.smtp_configured:
            logger.info(f"email_skipped: reason=smtp_not_configured to={to} subject={subject!r}")
            return NotificationResult(success=True, skipped=True)
        if not to:
            return NotificationResult(success=False, error="Recipient has no email address")

        try:
            text, html = self.render(template, context)
            msg = EmailMessage()
            msg["Subject"] = subject
            msg["From"] = self.settings.smtp_from
            msg["To"] = to
            msg["Message-ID"] = make_msgid(domain=self._sender_domain())
            msg.set_content(text)
            msg.add_alternative(html, subtype="html")

            with smtplib.SMTP(
                self.settings.smtp_host,
                self.settings.smtp_port,
                timeout=self.settings.notify_timeout_secs,
            ) as smtp:
                smtp.starttls()
                smtp.login(self.settings.smtp_user, self.settings.smtp_pass)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"email_failed: to={to} subject={subject!r} error={exc}")
            return NotificationResult(success=False, error=str(exc))

        message_id = str(msg["Message-ID"])
        logger.info(f"email_sent: to={to} subject={subject!r} message_id={message_id}")
        return NotificationResult(success=True, message_id=message_id)

    def _sender_domain(self) -> Optional[str]:
        _, address = parseaddr(self.settings.smtp_from or self.settings.smtp_user or "")
        return address.rpartition("@")[2] or None
