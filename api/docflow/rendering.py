# PDF rendering with reportlab; the certificate page is appended with pypdf.

import html
import logging
import re
from io import BytesIO

from pypdf import PdfReader, PdfWriter
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.pdfgen import canvas
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .sections import HeadingSection, ParagraphSection, SignatureSection, TableSection
from .utils import format_money, long_date, sha256_bytes, to_cents

logger = logging.getLogger(__name__)

_styles = getSampleStyleSheet()

_TAG = re.compile(r"<(/?)([a-zA-Z0-9]+)[^>]*?(/?)>")
_INLINE = {"b": "b", "strong": "b", "i": "i", "em": "i", "u": "u", "s": "strike", "del": "strike", "strike": "strike", "sub": "sub", "sup": "super"}
_BLOCK_END = re.compile(r"</(p|div|li|h[1-6])\s*>", re.I)


def _inline_tag(match):
    closing, name = match.group(1), match.group(2).lower()
    if name == "br":
        return "<br/>"
    mapped = _INLINE.get(name)
    if mapped is None:
        return ""
    return f"<{closing}{mapped}>"


def _strip_tags(markup: str) -> str:
    return html.unescape(_TAG.sub(" ", markup or "")).strip()


def rich_text_markup(markup: str) -> str:
    """Map editor HTML to the subset of tags reportlab paragraphs understand."""
    text = re.sub(r"<li[^>]*>", "• ", markup or "", flags=re.I)
    text = _BLOCK_END.sub("<br/>", text)
    text = _TAG.sub(_inline_tag, text)
    text = re.sub(r"(<br/>\s*)+$", "", text.strip())
    return text


def _rich_paragraph(markup: str, style):
    try:
        return Paragraph(rich_text_markup(markup), style)
    except ValueError:
        logger.warning("rich text could not be parsed, rendering as plain text")
        return Paragraph(html.escape(_strip_tags(markup)), style)


def _plain(text, style=None):
    return Paragraph(html.escape(text or ""), style or _styles["BodyText"])


def _grid(rows, header=True):
    table = Table(rows, hAlign="LEFT")
    commands = [
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
    ]
    if header:
        commands += [
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f2f2f2")),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ]
    table.setStyle(TableStyle(commands))
    return table


def _section_flowables(section, signer=None):
    if isinstance(section, HeadingSection):
        return [_plain(section.content.text, _styles[f"Heading{section.content.level}"])]
    if isinstance(section, ParagraphSection):
        return [_rich_paragraph(section.content.html, _styles["BodyText"])]
    if isinstance(section, TableSection):
        cells = [[_plain(cell) for cell in row] for row in section.content.cells]
        return [_grid(cells, header=section.content.has_header)]
    if isinstance(section, SignatureSection):
        lines = [_plain(section.content.label or "Signature", _styles["Heading4"])]
        if signer:
            lines.append(_plain(f"Signed electronically by {signer['name']} on {signer['signed_on']}"))
        else:
            lines.append(_plain("_" * 40))
            lines.append(_plain(section.content.name_field))
        return lines
    raise TypeError(f"unknown section {type(section).__name__}")


def _pricing_flowables(contract_type: str, pricing: dict):
    if not pricing:
        return []
    flow = [_plain("Pricing", _styles["Heading2"])]
    currency = pricing.get("currency", "usd")
    if contract_type == "fixed_price":
        flow.append(_plain(f"Total Amount: {format_money(to_cents(pricing.get('amount') or 0), currency)}"))
    elif contract_type == "milestone":
        rows = [["Milestone", "Amount", "Due Date"]]
        for milestone in pricing.get("milestones") or []:
            rows.append([
                milestone.get("name", ""),
                format_money(to_cents(milestone.get("amount") or 0), currency),
                milestone.get("due_date") or "TBD",
            ])
        flow.append(_grid(rows))
    elif contract_type == "subscription":
        amount = format_money(to_cents(pricing.get("amount") or 0), currency)
        flow.append(_plain(f"Subscription Amount: {amount} / {pricing.get('interval') or 'month'}"))
        flow.append(_plain(f"Subscription Period: {pricing.get('period') or 12} months"))
    return flow


def _build(story) -> bytes:
    buf = BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=letter, leftMargin=inch, rightMargin=inch, topMargin=inch, bottomMargin=inch)
    doc.build(story)
    return buf.getvalue()


def render_contract_pdf(contract, sections, company_name: str = "", pricing=None) -> bytes:
    signer = None
    if contract.signed_at and contract.client_signed_by:
        signer = {"name": contract.client_signed_by, "signed_on": f"{long_date(contract.signed_at)} at {contract.signed_at:%H:%M} UTC"}
    story = [
        _plain(contract.title, _styles["Title"]),
        _plain(f"Contract #{contract.contract_number}"),
        Spacer(1, 12),
    ]
    for section in sections:
        story.extend(_section_flowables(section, signer))
        story.append(Spacer(1, 8))
    story.extend(_pricing_flowables(contract.contract_type, pricing or {}))
    if contract.clickwrap_text:
        story += [Spacer(1, 12), _plain(contract.clickwrap_text, _styles["Italic"])]
    if company_name:
        story += [Spacer(1, 24), _plain(company_name, _styles["Italic"])]
    return _build(story)


def render_invoice_pdf(invoice, items, company_name: str = "", bill_to: str = "") -> bytes:
    money = lambda cents: format_money(cents, invoice.currency)  # noqa: E731
    story = [
        _plain(f"Invoice {invoice.invoice_number}", _styles["Title"]),
        _plain(invoice.title),
        _plain(f"Issued: {long_date(invoice.issue_date)}"),
    ]
    if invoice.due_date:
        story.append(_plain(f"Due: {long_date(invoice.due_date)} ({invoice.payment_terms})"))
    if bill_to:
        story.append(_plain(f"Bill to: {bill_to}"))
    story.append(Spacer(1, 12))

    rows = [["Description", "Qty", "Unit Price", "Amount"]]
    for item in items:
        rows.append([_plain(item.description), f"{item.quantity:g}", money(item.unit_price_cents), money(item.amount_cents)])
    story.append(_grid(rows))
    story.append(Spacer(1, 12))

    totals = [["Subtotal", money(invoice.subtotal_cents)]]
    if invoice.tax_cents:
        totals.append([f"Tax ({invoice.tax_rate:g}%)", money(invoice.tax_cents)])
    if invoice.discount_cents:
        totals.append([f"Discount ({invoice.discount_rate:g}%)", "-" + money(invoice.discount_cents)])
    totals.append(["Total", money(invoice.total_cents)])
    if invoice.amount_paid_cents:
        totals.append(["Paid", money(invoice.amount_paid_cents)])
    totals.append(["Amount Due", money(invoice.amount_due_cents)])
    story.append(_grid(totals, header=False))
    if invoice.notes:
        story += [Spacer(1, 12), _plain(invoice.notes)]
    if company_name:
        story += [Spacer(1, 24), _plain(company_name, _styles["Italic"])]
    return _build(story)


def render_certificate(info: dict) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(72, 750, "Certificate of Completion")
    c.setFont("Helvetica", 10)
    y = 720
    for k, v in info.items():
        txt = f"{k}: {v}"
        c.drawString(72, y, txt[:95])
        y -= 14
        if y < 72:
            c.showPage()
            c.setFont("Helvetica", 10)
            y = 750
    c.showPage()
    c.save()
    return buf.getvalue()


def append_certificate(pdf_bytes: bytes, info: dict) -> bytes:
    writer = PdfWriter()
    for page in PdfReader(BytesIO(pdf_bytes)).pages:
        writer.add_page(page)
    info = {**info, "sha256_document": sha256_bytes(pdf_bytes)}
    for page in PdfReader(BytesIO(render_certificate(info))).pages:
        writer.add_page(page)
    out = BytesIO()
    writer.write(out)
    return out.getvalue()
