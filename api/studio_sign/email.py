import logging
import os
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from .config import BRAND_NAME

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("EMAIL_PORT", "587"))
SMTP_USER = os.getenv("EMAIL_USER")
SMTP_PASSWORD = os.getenv("EMAIL_PASSWORD")
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", SMTP_USER or "noreply@example.com")
DEFAULT_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", BRAND_NAME)


def send_email(
    to: str,
    subject: str,
    body: str,
    html_body: str | None = None,
    attachments: list | None = None,
    reply_to: str | None = None,
):
    attachments = attachments or []
    display_name = (DEFAULT_SENDER_NAME or "").strip()
    from_value = formataddr((display_name, DEFAULT_SENDER)) if display_name else DEFAULT_SENDER
    if not (SMTP_USER and SMTP_PASSWORD):
        logger.info(
            "email (stub) from=%s to=%s subject=%r attachments=%d\n%s",
            from_value, to, subject, len(attachments), body,
        )
        return
    msg = EmailMessage()
    msg["From"] = from_value
    if reply_to:
        msg["Reply-To"] = reply_to
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body or "")
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    for attachment in attachments:
        content = attachment.get("content") if attachment else None
        if content is None:
            continue
        msg.add_attachment(
            content,
            maintype=attachment.get("maintype", "application"),
            subtype=attachment.get("subtype", "octet-stream"),
            filename=attachment.get("filename") or "attachment",
        )
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as smtp:
        smtp.starttls()
        smtp.login(SMTP_USER, SMTP_PASSWORD)
        smtp.send_message(msg)
    logger.info("email sent to=%s subject=%r", to, subject)
