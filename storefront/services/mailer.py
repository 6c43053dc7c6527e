import logging

import requests

from storefront.core.config import settings

logger = logging.getLogger("storefront.mailer")

RESEND_URL = "https://api.resend.com/emails"


def send_email(
    to: str,
    subject: str,
    html: str,
    text: str | None = None,
    reply_to: str | None = None,
) -> bool:
    """
    Send through Resend. Without an API key or sender (or with sending
    disabled) the message is only logged and False is returned.
    """
    api_key = (settings.RESEND_API_KEY or "").strip()
    email_from = (settings.EMAIL_FROM or "").strip()

    if not settings.EMAIL_SEND_ENABLED or not api_key or not email_from:
        logger.warning("email sending disabled or not configured, skipped subject=%r", subject)
        return False

    payload = {
        "from": f"{settings.EMAIL_FROM_NAME} <{email_from}>",
        "to": [to],
        "subject": subject,
        "html": html,
    }
    if text:
        payload["text"] = text
    if reply_to:
        payload["reply_to"] = reply_to

    try:
        r = requests.post(
            RESEND_URL,
            headers={"Authorization": f"Bearer {api_key}"},
            json=payload,
            timeout=20,
        )
    except requests.RequestException:
        logger.exception("email provider unreachable subject=%r", subject)
        return False

    if r.status_code >= 400:
        logger.warning("email rejected by provider: %s %s", r.status_code, r.text)
        return False
    return True
