from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings


def failure_alert(namespace: str, name: str, before: str | None, after: str | None) -> tuple[str, str]:
    """Subject and body for a cluster whose Failed condition appeared, changed or cleared."""
    where = f"{namespace}/{name}"
    if after is None:
        return (
            f"RECOVERED: cluster {where}",
            f"Cluster: {where}\nStatus: OK\nPrevious failure: {before}",
        )
    body = f"Cluster: {where}\nStatus: FAILED\nDetail: {after}"
    if before is not None:
        body += f"\nPrevious failure: {before}"
    return f"FAILED: cluster {where}", body


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - QCR_ENABLE_EMAIL=true
      - QCR_SMTP_HOST / QCR_SMTP_PORT
      - QCR_SMTP_USER / QCR_SMTP_PASSWORD
      - QCR_EMAIL_FROM / QCR_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    required = [settings.smtp_user, settings.smtp_password, settings.email_from, settings.email_to]
    if not all(required):
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
    except (smtplib.SMTPException, OSError):
        return False
    return True
