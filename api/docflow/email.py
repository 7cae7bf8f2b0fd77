import logging
import os
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

from .errors import TransientIOFailure

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("EMAIL_PORT", "587"))
SMTP_USER = os.getenv("EMAIL_USER")
SMTP_PASSWORD = os.getenv("EMAIL_PASSWORD")
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", SMTP_USER or "noreply@example.com")
DEFAULT_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", "Docflow")


def format_sender_name(company_name: str | None = None) -> str:
    base_label = (DEFAULT_SENDER_NAME or "Docflow").strip() or "Docflow"
    if company_name:
        plain = company_name.strip()
        if plain:
            return f"{plain} via {base_label}"
    return base_label


def send_email(
    to: str,
    subject: str,
    body: str,
    html_body: str | None = None,
    attachments: list | None = None,
    sender_name: str | None = None,
    reply_to: str | None = None,
):
    """
    Deliver one message over SMTP, or log it when no credentials are set.

    Connection and server errors raise TransientIOFailure so the job runner
    retries them.
    """
    attachments = attachments or []
    display_name = (sender_name or DEFAULT_SENDER_NAME).strip()
    from_value = formataddr((display_name, DEFAULT_SENDER)) if display_name else DEFAULT_SENDER
    if not (SMTP_USER and SMTP_PASSWORD):
        logger.info(
            "EMAIL (stub) from=%s reply_to=%s to=%s subject=%s attachments=%d\n%s",
            from_value, reply_to or "(not set)", to, subject, len(attachments), body,
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
        if not attachment or attachment.get("content") is None:
            continue
        msg.add_attachment(
            attachment["content"],
            maintype=attachment.get("maintype", "application"),
            subtype=attachment.get("subtype", "octet-stream"),
            filename=attachment.get("filename") or "attachment",
        )
    try:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=30) as smtp:
            smtp.starttls()
            smtp.login(SMTP_USER, SMTP_PASSWORD)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("smtp delivery to %s failed: %s", to, exc)
        raise TransientIOFailure(f"email to {to} failed") from exc
