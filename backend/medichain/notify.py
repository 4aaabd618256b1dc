import logging
import os
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)

EMAIL_OUTBOX: list[tuple[str, str, str]] = []

COMPLIANCE_ALERT_EMAILS = [
    addr.strip()
    for addr in os.getenv("COMPLIANCE_ALERT_EMAILS", "compliance@smartmedichain.com").split(",")
    if addr.strip()
]


def send_email(to_email: str, subject: str, message: str):
    if os.getenv("TESTING") == "1":
        EMAIL_OUTBOX.append((to_email, subject, message))
        return
    server = os.getenv("SMTP_SERVER")
    if not server:
        logger.warning("SMTP_SERVER not configured; dropping email to %s: %s", to_email, subject)
        return
    from_addr = os.getenv("EMAIL_FROM", "noreply@smartmedichain.com")
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_email
    msg.set_content(message)
    with smtplib.SMTP(server) as s:
        s.send_message(msg)


def notify_operators(subject: str, message: str, recipients: list[str] | None = None) -> int:
    """Email every compliance operator; returns how many messages were handed off."""

    sent = 0
    for address in recipients if recipients is not None else COMPLIANCE_ALERT_EMAILS:
        try:
            send_email(address, subject, message)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to deliver operator alert to %s", address)
            continue
        sent += 1
    return sent
