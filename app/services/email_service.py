# file: services/email_service.py

import logging
import smtplib
import ssl
from email.message import EmailMessage

from app.config import SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS, SMTP_USE_TLS, SMTP_FROM, RESET_CODE_EXPIRE_MINUTES

logger = logging.getLogger(__name__)


def send_reset_code_email(to_email: str, code: str) -> None:
    """Emails a password reset code. Runs as a background task, so it logs instead of raising."""
    if not (SMTP_USER and SMTP_PASS):
        logger.warning("SMTP is not configured; reset code for %s was not emailed", to_email)
        return

    msg = EmailMessage()
    msg["Subject"] = "Your password reset code"
    msg["From"] = SMTP_FROM
    msg["To"] = to_email
    msg.set_content(
        f"Hello,\n\nYour password reset code is: {code}\n\n"
        f"It expires in {RESET_CODE_EXPIRE_MINUTES} minutes. If you didn't request this, ignore this email.\n"
    )

    try:
        if SMTP_PORT == 465:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, context=context, timeout=15) as server:
                server.login(SMTP_USER, SMTP_PASS)
                server.send_message(msg)
        else:
            with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=15) as server:
                server.ehlo()
                if SMTP_USE_TLS:
                    server.starttls()
                    server.ehlo()
                server.login(SMTP_USER, SMTP_PASS)
                server.send_message(msg)
        logger.info("Reset code email sent to %s", to_email)
    except (smtplib.SMTPException, OSError) as ex:
        logger.exception("Failed to send reset code email to %s: %s", to_email, ex)
