from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
import smtplib
from email.message import EmailMessage
from sqlalchemy.orm import Session
import uuid
import requests

from app.core.config import settings
from app.models.email_log import EmailLog

logger = logging.getLogger(__name__)


SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def send_email(to_email: str, subject: str, body: str):
    """SendGrid when an API key is configured, plain SMTP otherwise (MailHog works locally)."""
    if settings.SENDGRID_API_KEY:
        _send_via_sendgrid(to_email, subject, body)
    else:
        _send_via_smtp(to_email, subject, body)


def _send_via_smtp(to_email: str, subject: str, body: str):
    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USE_TLS:
            smtp.starttls()
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(msg)


def _send_via_sendgrid(to_email: str, subject: str, body: str):
    r = requests.post(
        SENDGRID_URL,
        json={
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": settings.SENDGRID_FROM_EMAIL or settings.SMTP_FROM},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        },
        headers={"Authorization": f"Bearer {settings.SENDGRID_API_KEY}"},
        timeout=20,
    )
    if r.status_code >= 400:
        raise RuntimeError(f"SendGrid error {r.status_code}: {r.text}")


def _deliver(log: EmailLog) -> bool:
    """Try one send and record the outcome on the row; the caller commits."""
    try:
        send_email(log.to_email, log.subject, log.body or "")
    except Exception as e:
        # Left as failed; process_pending_emails picks it up again
        logger.warning(f"Email {log.id} ({log.kind or 'generic'}) to {log.to_email} failed: {e}")
        log.status = "failed"
        return False
    log.status = "sent"
    log.sent_at = datetime.now(timezone.utc)
    return True


def queue_email(db: Session, to_email: str, subject: str, body: str, related_booking_id: str = "", kind: str = "") -> str:
    """Persist the email, then try to send it right away."""
    log = EmailLog(
        id=str(uuid.uuid4()),
        to_email=to_email,
        subject=subject,
        body=body,
        kind=kind,
        status="queued",
        related_booking_id=related_booking_id,
    )
    db.add(log)
    db.commit()

    _deliver(log)
    db.commit()
    return log.id


def process_pending_emails(db: Session, limit: int = 50) -> dict:
    """Resend up to ``limit`` queued or failed emails, oldest first. Returns counts."""
    pending = (
        db.query(EmailLog)
        .filter(EmailLog.status.in_(["queued", "failed"]), EmailLog.body.isnot(None), EmailLog.body != "")
        .order_by(EmailLog.created_at.asc())
        .limit(limit)
        .all()
    )
    sent = sum(1 for log in pending if _deliver(log))
    if pending:
        db.commit()
    return {"processed": len(pending), "sent": sent, "failed": len(pending) - sent}


@dataclass(frozen=True)
class PaymentNotice:
    recipient: str
    booking_id: str
    amount: Decimal | None
    token: str | None
    tx_hash: str
    chain_id: int
    chain_name: str
    reason: str = ""
    leg: str = "full"


class EmailNotifier:
    """Payment outcome emails. Sending failures stay in email_logs for the retry job."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _queue(self, notice: PaymentNotice, kind: str, subject: str, body: str) -> str:
        db = self._session_factory()
        try:
            return queue_email(db, notice.recipient, subject, body, related_booking_id=notice.booking_id, kind=kind)
        finally:
            db.close()

    def payment_confirmed(self, notice: PaymentNotice) -> str:
        if notice.leg == "reservation":
            subject = f"Reservation received for booking {notice.booking_id}"
            headline = "We received your reservation payment. The remaining balance is still due."
        else:
            subject = f"Booking {notice.booking_id} is confirmed"
            headline = "Your payment was verified on-chain and your booking is confirmed."
        body = (
            f"{headline}\n\n"
            f"Booking: {notice.booking_id}\n"
            f"Amount: {notice.amount} {notice.token}\n"
            f"Network: {notice.chain_name} ({notice.chain_id})\n"
            f"Transaction: {notice.tx_hash}\n"
        )
        return self._queue(notice, "payment_confirmed", subject, body)

    def payment_failed(self, notice: PaymentNotice) -> str:
        subject = f"Payment for booking {notice.booking_id} could not be verified"
        # Unlocked bookings have no amount to quote
        expected = f"Amount expected: {notice.amount} {notice.token}\n" if notice.amount is not None else ""
        body = (
            f"We could not verify your payment for booking {notice.booking_id}.\n\n"
            f"Reason: {notice.reason}\n"
            f"{expected}"
            f"Network: {notice.chain_name} ({notice.chain_id})\n"
            f"Transaction: {notice.tx_hash}\n\n"
            f"You can lock your payment again and retry with a new transaction.\n"
        )
        return self._queue(notice, "payment_failed", subject, body)
