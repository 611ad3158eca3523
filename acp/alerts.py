from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .models import TransitionEvent
from .settings import Settings, settings as default_settings


ALERT_STATES = {"RollingBack", "Unreachable", "ServiceUnavailable"}


def send_email(subject: str, body: str, cfg: Settings | None = None) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - ACP_ENABLE_EMAIL=true
      - ACP_SMTP_HOST / ACP_SMTP_PORT
      - ACP_SMTP_USER / ACP_SMTP_PASSWORD
      - ACP_EMAIL_FROM / ACP_EMAIL_TO
    """
    cfg = cfg or default_settings
    if not cfg.enable_email:
        return False
    if not all([cfg.smtp_host, cfg.smtp_port, cfg.smtp_user, cfg.smtp_password, cfg.email_from, cfg.email_to]):
        return False

    msg = MIMEMultipart()
    msg["From"] = cfg.email_from
    msg["To"] = cfg.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        server = smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=10)
        server.starttls()
        server.login(cfg.smtp_user, cfg.smtp_password)
        server.sendmail(cfg.email_from, [cfg.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


def transition_alerter(cfg: Settings | None = None):
    """Build an EventLog subscriber that mails on terminal-looking transitions."""

    def alert(ev: TransitionEvent) -> None:
        if ev.to_state not in ALERT_STATES:
            return
        subject = f"ACP {ev.to_state}: {ev.entity_id}"
        body = (
            f"Entity: {ev.entity_id}\n"
            f"Transition: {ev.from_state} -> {ev.to_state}\n"
            f"Reason: {ev.reason}\n"
            f"At: {ev.timestamp}"
        )
        send_email(subject, body, cfg)

    return alert
