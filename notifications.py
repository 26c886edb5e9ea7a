"""Loan reminder emails.

Delivery is a best-effort side channel: once the loan and member are
resolved, a missing mail configuration or a transport failure is logged and
reported in the result, never raised.
"""
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Optional

from config import Config
from exceptions import InvalidStateError, NotFoundError
from lending_engine import compute_fine
from library_stores import TransactionLedger
from loan_records import days_overdue

logger = logging.getLogger(__name__)


class MailTransport(ABC):
    """Anything that can deliver a plain-text message."""

    @abstractmethod
    def send(self, recipient, subject, body):
        pass


class SmtpTransport(MailTransport):

    def __init__(self, host, port=587, user=None, password=None, sender=None, use_tls=True, timeout=10):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, recipient, subject, body):
        message = EmailMessage()
        message['From'] = self.sender
        message['To'] = recipient
        message['Subject'] = subject
        message.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password or '')
            smtp.send_message(message)


def build_transport(config):
    """SMTP transport from config, or None when mail is not configured."""
    if not config.mail_configured:
        return None
    return SmtpTransport(
        host=config.SMTP_HOST,
        port=config.SMTP_PORT,
        user=config.SMTP_USER,
        password=config.SMTP_PASSWORD,
        sender=config.MAIL_FROM,
        use_tls=config.SMTP_USE_TLS,
    )


@dataclass
class ReminderResult:
    loan_id: int
    recipient: str
    subject: str
    body: str
    overdue: bool
    delivered: bool
    simulated: bool
    error: Optional[str] = None

    @property
    def message(self):
        if self.simulated:
            return f"Reminder for transaction {self.loan_id} logged (mail not configured)"
        if self.delivered:
            return f"Reminder for transaction {self.loan_id} sent to {self.recipient}"
        return f"Reminder for transaction {self.loan_id} could not be delivered"


def render_reminder(loan, member_name, now, config):
    """Return (subject, body, overdue) for a loan reminder."""
    due = f"{loan.due_date:%a %b %d %Y}"
    if now > loan.due_date:
        days = days_overdue(loan.due_date, now)
        fine = compute_fine(loan.due_date, now, config.FINE_PER_DAY)
        subject = f"Overdue notice: {loan.book_title}"
        body = (
            f"Dear {member_name},\n\n"
            f"Our records show that '{loan.book_title}' (ISBN {loan.isbn}) was due on {due} "
            f"and is now {days} day(s) overdue.\n"
            f"The fine so far is {config.format_money(fine)} and grows by "
            f"{config.format_money(config.FINE_PER_DAY)} for each further day.\n\n"
            f"Please return the book as soon as possible.\n\n"
            f"{config.LIBRARY_NAME}\n{config.LIBRARY_PHONE}"
        )
        return subject, body, True

    subject = f"Reminder: {loan.book_title} is due on {due}"
    body = (
        f"Dear {member_name},\n\n"
        f"This is a friendly reminder that '{loan.book_title}' (ISBN {loan.isbn}) is due on {due}.\n"
        f"Late returns are fined {config.format_money(config.FINE_PER_DAY)} per day.\n\n"
        f"{config.LIBRARY_NAME}\n{config.LIBRARY_PHONE}"
    )
    return subject, body, False


class NotificationService:

    def __init__(self, session_factory, config=None, transport=None, clock=datetime.now):
        self.session_factory = session_factory
        self.config = config or Config()
        self.transport = transport if transport is not None else build_transport(self.config)
        self.clock = clock

    def send_loan_reminder(self, loan_id):
        session = self.session_factory()
        try:
            loan = TransactionLedger(session).get(loan_id)
            if loan is None:
                raise NotFoundError(f"Transaction {loan_id} not found")
            if not loan.is_active:
                raise InvalidStateError(f"Transaction {loan_id} has already been returned")
            member = loan.member
            if member is None or not member.email:
                raise NotFoundError(f"No member email linked to transaction {loan_id}")
            recipient, member_name = member.email, member.name
        finally:
            session.close()

        subject, body, overdue = render_reminder(loan, member_name, self.clock(), self.config)
        result = ReminderResult(
            loan_id=loan_id,
            recipient=recipient,
            subject=subject,
            body=body,
            overdue=overdue,
            delivered=False,
            simulated=False,
        )

        if self.transport is None:
            logger.warning(f"Mail not configured; simulated reminder to {recipient}: {subject}")
            result.delivered = True
            result.simulated = True
            return result

        try:
            self.transport.send(recipient, subject, body)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send reminder for transaction {loan_id} to {recipient}: {e}", exc_info=True)
            result.error = str(e)
            return result

        logger.info(f"Sent {'overdue notice' if overdue else 'reminder'} for transaction {loan_id} to {recipient}")
        result.delivered = True
        return result
