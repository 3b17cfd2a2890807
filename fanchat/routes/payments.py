"""
Payment collaborator webhook
============================
Captured payments arrive here. The body is signed with the shared secret
(``X-Payment-Signature: sha256=<hex>``); unsigned or mis-signed calls are
rejected before anything is parsed.
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from typing import Optional
import hashlib
import hmac
import json

from ..config import get_settings
from ..dependencies import get_ledger, get_session_machine
from ..errors import InvalidMessage, retry_transient
from ..logging_config import get_logger
from ..schemas.payment import PaymentEvent, PurchaseScheduled, UnlockCaptured
from ..services.session_machine import SessionStateMachine, duration_from_treat_id, is_chat_session_treat
from ..services.unlock_ledger import UnlockLedger

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = get_logger("payments")

UNLOCK_CAPTURED = "unlock.captured"
PURCHASE_SCHEDULED = "purchase.scheduled"


def sign_payload(payload: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a webhook body"""
    signature = hmac.new(
        secret.encode('utf-8'),
        payload,
        hashlib.sha256
    ).hexdigest()
    return f"sha256={signature}"


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature)


def parse_event(raw: bytes, model):
    try:
        event = PaymentEvent.model_validate(json.loads(raw))
        return event, model.model_validate(event.data) if model else None
    except (ValueError, ValidationError) as e:
        raise InvalidMessage("Malformed payment event", {"error": str(e)})


async def read_raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/webhook")
def payment_webhook(
    raw: bytes = Depends(read_raw_body),
    x_payment_signature: Optional[str] = Header(default=None),
    ledger: UnlockLedger = Depends(get_ledger),
    machine: SessionStateMachine = Depends(get_session_machine),
):
    """Receive a payment event from the payment collaborator."""
    secret = get_settings().payment_webhook_secret
    if not secret:
        logger.error("Payment webhook called but PAYMENT_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Payment webhook is not configured")

    if not verify_signature(raw, x_payment_signature, secret):
        logger.warning("Rejected payment webhook with bad signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event, _ = parse_event(raw, None)

    if event.type == UNLOCK_CAPTURED:
        _, data = parse_event(raw, UnlockCaptured)
        record = retry_transient(lambda: ledger.record_unlock(
            data.conversation_id,
            data.message_id,
            data.unlock_id,
            data.viewer_uid,
            data.amount_cents,
            data.payer_email,
        ))
        if record is None:
            return {"status": "ignored", "reason": "unknown item"}
        return {"status": "recorded", "unlock_id": record.id}

    if event.type == PURCHASE_SCHEDULED:
        _, data = parse_event(raw, PurchaseScheduled)
        if not is_chat_session_treat(data.treat_id) and not data.duration_minutes:
            logger.info("Scheduled purchase is not a chat session", purchase_id=data.purchase_id)
            return {"status": "ignored", "reason": "not a chat session"}

        conversation_id = None
        if data.fan_uid and machine.authority.is_creator(data.fan_uid):
            # Left unbound; the creator can bind it later
            logger.warning("Purchase names the creator as the fan", purchase_id=data.purchase_id)
        elif data.fan_uid:
            conversation_id = retry_transient(lambda: machine.store.ensure_conversation(
                data.fan_uid, data.fan_email, data.fan_name
            ))
        duration = data.duration_minutes or duration_from_treat_id(
            data.treat_id,
            default=machine.settings.default_session_minutes,
            maximum=machine.settings.max_session_minutes,
        )
        chat_session = retry_transient(lambda: machine.schedule_session(
            data.purchase_id,
            data.fan_email,
            data.fan_name,
            data.scheduled_start,
            duration_minutes=duration,
            conversation_id=conversation_id,
        ))
        return {"status": "scheduled", "session_id": chat_session.id}

    logger.info("Ignoring unhandled payment event", event_type=event.type)
    return {"status": "ignored", "reason": "unhandled event type"}
