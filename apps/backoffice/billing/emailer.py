from __future__ import annotations

import logging
import os
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Optional, Tuple

import dotenv

from ..settings import settings
from .models import InvoiceRecord, TenantBillingProfile

logger = logging.getLogger(__name__)

_APPS_DIR = Path(__file__).resolve().parents[2]


def _invoice_emails_enabled() -> bool:
    # Re-read apps/.env so toggling ENABLE_INVOICE_EMAILS locally needs no restart.
    dotenv.load_dotenv(dotenv_path=_APPS_DIR / ".env", override=True)
    env_flag = os.getenv("ENABLE_INVOICE_EMAILS", "").strip().lower() == "true"
    return bool(settings.ENABLE_INVOICE_EMAILS) or env_flag


def build_invoice_email(*, invoice: InvoiceRecord, profile: TenantBillingProfile) -> Tuple[str, str]:
    company = (profile.company_name or "").strip() or "Your carrier"
    subject = f"Invoice {invoice.invoice_number} from {company}"
    name = (invoice.billing_party or invoice.customer_name or "").strip()
    lines = [
        f"Hello {name}," if name else "Hello,",
        "",
        f"Please find invoice {invoice.invoice_number} below.",
        "",
        f"Invoice date: {invoice.invoice_date or '-'}",
        f"Due date: {invoice.due_date or '-'}",
        f"Terms: {invoice.payment_terms or '-'}",
        f"Amount due: ${float(invoice.balance_due or 0):,.2f} {invoice.currency}",
    ]
    if invoice.notes:
        lines += ["", invoice.notes]
    if profile.accounting_email:
        lines += ["", f"Questions? Reply to {profile.accounting_email}."]
    lines += ["", "Thank you,", company]
    return subject, "\n".join(lines)


def send_invoice_email(*, to_email: str, subject: str, body: str, cc_email: Optional[str] = None) -> None:
    """Send one invoice email over SMTP. Raises ValueError when disabled or misaddressed."""
    if not _invoice_emails_enabled():
        raise ValueError("Invoice emails are disabled (set ENABLE_INVOICE_EMAILS=true)")

    to_email = (to_email or "").strip()
    subject = (subject or "").strip()
    if not to_email:
        raise ValueError("Missing recipient email")
    if not subject:
        raise ValueError("Missing email subject")

    msg = EmailMessage()
    msg["From"] = settings.EMAIL_FROM
    msg["To"] = to_email
    if cc_email:
        msg["Cc"] = cc_email.strip()
    msg["Subject"] = subject
    msg.set_content(body or "")

    username = (settings.SMTP_USERNAME or "").strip()
    password = (settings.SMTP_PASSWORD or "").strip()

    with smtplib.SMTP(settings.SMTP_SERVER, int(settings.SMTP_PORT), timeout=20) as smtp:
        smtp.ehlo()
        # Most providers require STARTTLS on 587; some relays do not offer it.
        try:
            smtp.starttls()
            smtp.ehlo()
        except smtplib.SMTPNotSupportedError:
            logger.info("SMTP server %s does not support STARTTLS", settings.SMTP_SERVER)

        if username and password:
            smtp.login(username, password)

        smtp.send_message(msg)
