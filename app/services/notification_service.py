"""Access email sent when a purchase first activates a company."""

import logging

from flask import current_app, render_template

from app.services.email_service import send_email

logger = logging.getLogger(__name__)


def send_access_email(email, full_name=None, password=None, company_name=None):
    """Render and send the access email. Returns True if it was sent.

    `password` is only present when the webhook created the login; existing
    users are told to keep their current password.
    """
    app_url = (current_app.config.get("APP_PUBLIC_URL") or "").rstrip("/")
    if not app_url:
        logger.warning("APP_PUBLIC_URL not configured. Skipping access email.")
        return False

    context = {
        "name": full_name or email,
        "email": email,
        "password": password,
        "company_name": company_name,
        "login_url": f"{app_url}/auth",
    }
    html = render_template("emails/access_granted.html", **context)
    text = render_template("emails/access_granted.txt", **context)

    return send_email(
        to=email,
        subject=current_app.config["ACCESS_EMAIL_SUBJECT"],
        html=html,
        text=text,
    )
