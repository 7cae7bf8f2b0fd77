"""
Merge Field Resolver

Finds ``{{namespace.field}}`` placeholders in section bodies and substitutes
resolved values at render time.

Key syntax:
    client.full_name        -> context.contact.full_name
    project.start_date      -> context.project.start_date, long date format
    company.name            -> context.tenant.name
    today                   -> context.today, long date format

Substitution is plain text replacement. There are no expressions, loops or
conditionals. Unknown keys resolve to an empty string and are reported as
warnings so a partially filled document still renders.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional

from .utils import format_money, long_date, utcnow

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)\}\}")
LOOSE_PATTERN = re.compile(r"\{\{([^}]*)\}\}")


@dataclass(frozen=True)
class MergeField:
    key: str
    label: str
    category: str
    type: str = "text"


@dataclass
class MergeContext:
    """Typed records a document can pull values from."""

    tenant: Any = None
    contact: Any = None
    project: Any = None
    contract: Any = None
    invoice: Any = None
    today: Optional[date] = None


@dataclass
class Resolution:
    values: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def _first_name(contact):
    return contact.full_name.split(" ", 1)[0]


def _last_name(contact):
    parts = contact.full_name.split(" ", 1)
    return parts[1] if len(parts) > 1 else ""


def _contact(getter):
    return lambda ctx: getter(ctx.contact) if ctx.contact is not None else None


def _project(getter):
    return lambda ctx: getter(ctx.project) if ctx.project is not None else None


def _invoice(getter):
    return lambda ctx: getter(ctx.invoice) if ctx.invoice is not None else None


def _budget(project):
    return format_money(project.budget_cents) if project.budget_cents is not None else ""


def _today(ctx):
    return long_date(ctx.today or utcnow().date())


def _contract_created(ctx):
    created = getattr(ctx.contract, "created_at", None)
    return long_date(created.date() if created else (ctx.today or utcnow().date()))


CATALOG: List[MergeField] = [
    MergeField("client.first_name", "Client First Name", "client"),
    MergeField("client.last_name", "Client Last Name", "client"),
    MergeField("client.full_name", "Client Full Name", "client"),
    MergeField("client.email", "Client Email", "client"),
    MergeField("client.phone", "Client Phone", "client"),
    MergeField("client.organization", "Client Organization", "client"),
    MergeField("project.name", "Project Name", "project"),
    MergeField("project.description", "Project Description", "project"),
    MergeField("project.start_date", "Project Start Date", "project", "date"),
    MergeField("project.due_date", "Project Due Date", "project", "date"),
    MergeField("project.budget", "Project Budget", "project", "currency"),
    MergeField("company.name", "Company Name", "company"),
    MergeField("today", "Today's Date", "system", "date"),
    MergeField("contract.created_date", "Contract Created Date", "contract", "date"),
    MergeField("invoice.number", "Invoice Number", "invoice"),
    MergeField("invoice.due_date", "Invoice Due Date", "invoice", "date"),
    MergeField("invoice.total", "Invoice Total", "invoice", "currency"),
]

_RESOLVERS: Dict[str, Callable[[MergeContext], Optional[str]]] = {
    "client.first_name": _contact(_first_name),
    "client.last_name": _contact(_last_name),
    "client.full_name": _contact(lambda c: c.full_name),
    "client.email": _contact(lambda c: c.email or ""),
    "client.phone": _contact(lambda c: c.phone or ""),
    "client.organization": _contact(lambda c: c.organization or ""),
    "project.name": _project(lambda p: p.name),
    "project.description": _project(lambda p: p.description or ""),
    "project.start_date": _project(lambda p: long_date(p.start_date)),
    "project.due_date": _project(lambda p: long_date(p.due_date)),
    "project.budget": _project(_budget),
    "company.name": lambda ctx: ctx.tenant.name if ctx.tenant is not None else None,
    "today": _today,
    "contract.created_date": _contract_created,
    "invoice.number": _invoice(lambda i: i.invoice_number),
    "invoice.due_date": _invoice(lambda i: long_date(i.due_date)),
    "invoice.total": _invoice(lambda i: format_money(i.total_cents, i.currency)),
}


def available_fields() -> List[MergeField]:
    return list(CATALOG)


def extract_from_text(text: str) -> List[str]:
    return TOKEN_PATTERN.findall(text or "")


def extract(sections: Iterable) -> List[str]:
    """
    Collect merge-field keys from a section list.

    Keys are de-duplicated and returned in first-seen order.
    """
    seen: Dict[str, None] = {}
    for section in sections:
        for fragment in section.text_fragments():
            for key in extract_from_text(fragment):
                seen.setdefault(key, None)
    return list(seen)


def resolve(keys: Iterable[str], context: MergeContext) -> Resolution:
    """
    Resolve keys against the context.

    Never raises for a bad key: the value becomes "" and a warning is added.
    """
    result = Resolution()
    for key in keys:
        resolver = _RESOLVERS.get(key)
        if resolver is None:
            result.values[key] = ""
            result.warnings.append(f"Unknown merge field: {{{{{key}}}}}")
            continue
        try:
            value = resolver(context)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("merge field %s failed to resolve: %s", key, exc)
            value = None
        if value is None:
            result.values[key] = ""
            result.warnings.append(f"No value available for {{{{{key}}}}}")
            continue
        result.values[key] = str(value)
    return result


def substitute(text: str, values: Dict[str, str], markup: bool = False) -> str:
    """Replace each literal ``{{key}}`` found in ``values``; other text is left alone."""
    if not text or "{{" not in text:
        return text

    def _replace(match):
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        return html.escape(value, quote=False) if markup else value

    return TOKEN_PATTERN.sub(_replace, text)


def render(sections: Iterable, values: Dict[str, str]) -> list:
    """Return new sections with merge fields substituted. The input is not modified."""
    return [section.map_text(lambda text, markup: substitute(text, values, markup)) for section in sections]


def resolve_and_render(sections, context: MergeContext):
    sections = list(sections)
    resolution = resolve(extract(sections), context)
    if resolution.warnings:
        logger.info("merge field warnings: %s", "; ".join(resolution.warnings))
    return render(sections, resolution.values), resolution


def validate_syntax(text: str) -> List[str]:
    """Editor helper: report placeholders that are malformed or not in the catalog."""
    errors = []
    known = {f.key for f in CATALOG}
    for raw in LOOSE_PATTERN.findall(text or ""):
        key = raw.strip()
        if raw != key:
            errors.append(f"Merge field must not contain spaces: {{{{{raw}}}}}")
        elif not TOKEN_PATTERN.fullmatch("{{" + key + "}}"):
            errors.append(f"Malformed merge field: {{{{{raw}}}}}")
        elif key not in known:
            errors.append(f"Unknown merge field: {{{{{raw}}}}}")
    return errors
