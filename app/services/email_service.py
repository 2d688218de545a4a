"""
Email transport over SMTP.

Contract used by the rest of the app:

    send_email(to, subject, html, text) -> bool

Returns False (and logs) instead of raising when SMTP isn't configured or
the send fails. Callers decide whether that matters; the webhook processor
treats email as best-effort.

Usage:
    from app.services.email_service import send_email

    send_email(
        to="user@example.com",
        subject="Hello",
        html="<p>Hi</p>",
        text="Hi",
    )
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app

logger = logging.getLogger(__name__)


def _send_smtp(app, msg):
    """Deliver a built message. Returns True on success."""
    host = app.config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    port = app.config.get("MAIL_SMTP_PORT", 587)
    username = app.config.get("MAIL_USERNAME")
    password = app.config.get("MAIL_PASSWORD")

    if not username or not password:
        logger.warning("Email not sent — MAIL_USERNAME or MAIL_PASSWORD not configured.")
        return False

    try:
        if port == 465:
            server = smtplib.SMTP_SSL(host, port, timeout=30)
        else:
            server = smtplib.SMTP(host, port, timeout=30)
        with server:
            if port != 465:
                server.ehlo()
                server.starttls()
                server.ehlo()
            server.login(username, password)
            server.send_message(msg)
        logger.info(f"Email sent to {msg['To']} — {msg['Subject']}")
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {msg['To']}: {e}")
        return False


def build_message(app, to, subject, html, text, reply_to=None):
    from_name = app.config.get("MAIL_FROM_NAME", "IdeartCloud")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME") or ""

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to if isinstance(to, str) else ", ".join(to)

    if reply_to:
        msg["Reply-To"] = reply_to

    # Plain part first: clients render the last alternative they support.
    if text:
        msg.attach(MIMEText(text, "plain", "utf-8"))
    msg.attach(MIMEText(html, "html", "utf-8"))
    return msg


def send_email(to, subject, html, text=None, reply_to=None):
    """
    Send an HTML email with a plain-text alternative. Blocks until the SMTP
    server answers.

    Args:
        to:        Recipient email address (str or list).
        subject:   Email subject line.
        html:      Rendered HTML body.
        text:      Rendered plain-text body.
        reply_to:  Optional reply-to address.

    Returns:
        bool: True if the SMTP server accepted the message.
    """
    app = current_app._get_current_object()
    msg = build_message(app, to, subject, html, text, reply_to=reply_to)
    return _send_smtp(app, msg)
