from html import escape

from .utils import format_money, long_date

SENT = "sent"
RESENT = "resent"
SIGNED_RECEIPT = "signed_receipt"
DECLINED_NOTICE = "declined_notice"
PAYMENT_RECEIPT = "payment_receipt"

TEMPLATES = (SENT, RESENT, SIGNED_RECEIPT, DECLINED_NOTICE, PAYMENT_RECEIPT)


def _card(heading: str, lines, link: str | None = None, button: str | None = None) -> str:
    paragraphs = "\n".join(
        f'      <p style="font-size: 14px; color: #1e293b; line-height: 1.5;">{escape(line)}</p>' for line in lines
    )
    action = ""
    if link:
        link_html = escape(link)
        action = f"""
      <div style="margin: 24px 0;">
        <a href="{link_html}" style="display: inline-block; background: #2563eb; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">
          {escape(button or "Open")}
        </a>
      </div>
      <p style="font-size: 12px; color: #64748b;">If the button doesn&apos;t work, copy this link into your browser:<br /><a href="{link_html}">{link_html}</a></p>"""
    return f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px; box-shadow: 0 10px 25px rgba(15,23,42,0.08);">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">{escape(heading)}</h2>
{paragraphs}{action}
    </div>
  </body>
</html>
"""


def _label(kind: str, doc) -> str:
    if kind == "invoice":
        return f"Invoice {doc.invoice_number}"
    return f"{doc.title} ({doc.contract_number})"


def build_message(template: str, kind: str, doc, company_name: str, url: str | None = None):
    """Return ``(subject, text_body, html_body)`` for a notification."""
    company = company_name or "Your contact"
    label = _label(kind, doc)
    if template in (SENT, RESENT):
        if kind == "invoice":
            heading = "Invoice ready"
            lines = [f"{company} sent you {label} for {format_money(doc.amount_due_cents, doc.currency)}."]
            if doc.due_date:
                lines.append(f"Payment is due {long_date(doc.due_date)}.")
            button = "View & Pay"
        else:
            heading = "Signature requested"
            lines = [f"{company} sent you a contract to review and sign: {label}."]
            button = "Review & Sign"
        if template == RESENT:
            lines.append("This link replaces any earlier link we sent you.")
        subject = f"{heading}: {label}"
    elif template == SIGNED_RECEIPT:
        heading, button = "Contract signed", None
        lines = [f"{label} was signed by {doc.client_signed_by}.", "A copy is attached for your records."]
        subject = f"Signed: {label}"
    elif template == DECLINED_NOTICE:
        heading, button = "Contract declined", None
        lines = [f"{label} was declined."]
        subject = f"Declined: {label}"
    elif template == PAYMENT_RECEIPT:
        heading, button = "Payment received", None
        lines = [
            f"Thank you. We received your payment for {label}.",
            f"Total paid: {format_money(doc.amount_paid_cents, doc.currency)}. "
            f"Balance due: {format_money(doc.amount_due_cents, doc.currency)}.",
        ]
        subject = f"Payment received: {label}"
    else:
        raise ValueError(f"unknown notification template: {template}")

    text_body = "\n\n".join(lines)
    if url and button:
        text_body += f"\n\nOpen document: {url}\n"
    return subject, text_body, _card(heading, lines, url if button else None, button)
