from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from app.services.callback_service import handle_n8n_callback, handle_whatsapp_callback
from app.services.whatsapp_service import process_whatsapp_webhook
from core.config.config import Config
from core.models.database import get_session
from core.models.schemas import N8nCallbackRequest, WhatsAppCallbackRequest
from core.utils.error_handler import (
    InvalidStatusTransitionError, InvalidWebhookPayloadError, InvoiceNotFoundError
)
from core.utils.logging_config import get_logger
from integrations.n8n.n8n_client import N8nClient, get_n8n_client

logger = get_logger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/n8n-callback")
async def n8n_callback(payload: N8nCallbackRequest):
    """
    Receive the extraction result for one invoice

    Returns:
        200 once applied, 404 for unknown invoices, 409 if the invoice already has a result
    """
    session = get_session()
    try:
        invoice = handle_n8n_callback(session, payload)
        return {
            "message": "Callback processed successfully",
            "invoiceId": invoice.id,
            "status": invoice.status,
        }
    except InvoiceNotFoundError as e:
        logger.warning(f"n8n callback for unknown invoice {payload.invoice_id}")
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidStatusTransitionError as e:
        logger.warning(f"Rejected n8n callback for invoice {payload.invoice_id}: {e.message}")
        raise HTTPException(status_code=409, detail=e.message)
    finally:
        session.close()


@router.post("/whatsapp-callback")
async def whatsapp_callback(payload: WhatsAppCallbackRequest):
    """Receive the WhatsApp workflow's results for one message"""
    session = get_session()
    try:
        result = handle_whatsapp_callback(session, payload)
        return {"message": "WhatsApp callback processed successfully", **result}
    finally:
        session.close()


@router.post("/whatsapp-message")
async def whatsapp_message(
    payload: Dict[str, Any] = Body(...),
    client: N8nClient = Depends(get_n8n_client)
):
    """Inbound WhatsApp Business message webhook"""
    session = get_session()
    try:
        return await run_in_threadpool(process_whatsapp_webhook, session, client, payload)
    except InvalidWebhookPayloadError as e:
        logger.warning(f"Rejected WhatsApp webhook: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)
    finally:
        session.close()


@router.get("/whatsapp-verify")
async def whatsapp_verify(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge")
):
    """WhatsApp Business webhook verification handshake"""
    if not mode or not token:
        raise HTTPException(status_code=400, detail="Missing verification parameters")

    if mode == 'subscribe' and token == Config.WHATSAPP_VERIFY_TOKEN:
        logger.info("WhatsApp webhook verified")
        return PlainTextResponse(challenge or '')

    logger.warning("WhatsApp webhook verification failed")
    raise HTTPException(status_code=403, detail="Forbidden")
