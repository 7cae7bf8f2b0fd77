import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlmodel import Session

from ..db import get_session
from ..effects import enqueue_settle
from ..models import Invoice
from ..payments import to_gateway_result, verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payments")
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header(default=None, alias="Stripe-Signature"),
    session: Session = Depends(get_session),
):
    payload = await request.body()
    event = verify_webhook(payload, stripe_signature)
    result = to_gateway_result(event)
    if result is None:
        logger.info("webhook %s type=%s ignored", event.get("id"), event.get("type"))
        return {"received": True, "handled": False}
    invoice = session.get(Invoice, result.invoice_id)
    if invoice is None:
        logger.warning("webhook %s for unknown invoice %s", result.event_id, result.invoice_id)
        return {"received": True, "handled": False}
    job = enqueue_settle(session, invoice.tenant_id, result)
    logger.info("webhook %s queued as job %s", result.event_id, job.id)
    return {"received": True, "handled": True, "job_id": job.id}
