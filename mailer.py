"""Outbound mail over SMTP. Sending never fails the request that asked for it."""
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from config import Settings, settings

logger = logging.getLogger(__name__)


def build_message(to: str, subject: str, text: Optional[str] = None, html: Optional[str] = None,
                  config: Settings = settings) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = f'"{config.email_from_name}" <{config.email_user}>'
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text or subject)
    if html:
        msg.add_alternative(html, subtype="html")
    return msg


def send_email(to: str, subject: str, text: Optional[str] = None, html: Optional[str] = None,
               config: Settings = settings) -> bool:
    if not config.can_send_email:
        logger.info("Mail is not configured, skipping %r to %s", subject, to)
        return False
    msg = build_message(to, subject, text, html, config)
    try:
        if config.email_port == 465:
            server = smtplib.SMTP_SSL(config.email_host, config.email_port, timeout=30)
        else:
            server = smtplib.SMTP(config.email_host, config.email_port, timeout=30)
        with server:
            if config.email_port != 465:
                server.starttls()
            server.login(config.email_user, config.email_pass)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send %r to %s: %s", subject, to, exc)
        return False
    logger.info("Email sent to %s: %s", to, subject)
    return True


def send_password_reset(to: str, reset_token: str, minutes: int = 15) -> bool:
    return send_email(
        to,
        "R.E.S.T Password Reset",
        text=f"Use the following token to reset your password: {reset_token}",
        html=(
            "<p>You requested to reset your R.E.S.T password.</p>"
            "<p>Use the following token to reset your password:</p>"
            f"<pre>{reset_token}</pre>"
            f"<p>This token will expire in {minutes} minutes.</p>"
        ),
    )
