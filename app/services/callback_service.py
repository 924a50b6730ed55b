"""
Callback handling - applies extraction results reported by n8n
"""
from typing import Any, Dict, List, Optional

from core.config.config import Config
from core.models.database import Invoice, WhatsAppGroup
from core.models.schemas import InvoiceStatus, N8nCallbackRequest, WhatsAppCallbackRequest
from core.utils.error_handler import InvalidStatusTransitionError
from core.utils.helpers import normalize_date, to_float
from core.utils.logging_config import get_logger
from core.utils.state_manager import status_manager
from app.services.invoice_service import get_invoice

logger = get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = 'Processing failed'


def normalize_extracted_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shape the workflow's extracted fields into the stored record

    Dates become ISO strings, currency defaults to USD, list/dict fields
    default to empty. Keys the workflow adds beyond these are kept.
    """
    normalized = {
        'invoiceNumber': data.get('invoiceNumber'),
        'vendor': data.get('vendor'),
        'vendorAddress': data.get('vendorAddress'),
        'date': normalize_date(data.get('date')),
        'dueDate': normalize_date(data.get('dueDate')),
        'amount': data.get('amount'),
        'currency': data.get('currency') or 'USD',
        'vatAmount': data.get('vatAmount'),
        'vatRate': data.get('vatRate'),
        'vatId': data.get('vatId'),
        'items': data.get('items') or [],
        'bankDetails': data.get('bankDetails') or {},
    }
    extras = {key: value for key, value in data.items() if key not in normalized}
    return {**extras, **normalized}


def normalize_confidence(scores: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'overall': scores.get('overall'),
        'fields': scores.get('fields') or {},
    }


def apply_extraction_result(
    invoice: Invoice,
    status: str,
    extracted_data: Optional[Dict[str, Any]] = None,
    confidence_scores: Optional[Dict[str, Any]] = None,
    errors: Optional[List[str]] = None,
    execution_id: Optional[str] = None
) -> Invoice:
    """
    Apply one extraction outcome to an invoice (caller commits)

    processed: store data and confidence; with extracted data and overall
    confidence at or above AUTO_VALIDATE_THRESHOLD the invoice is validated
    straight away. Results for an invoice already marked failed (e.g. the
    trigger call timed out on our side) are still applied.
    failed: store the reported errors (a generic message if none).

    Raises:
        InvalidStatusTransitionError: if the invoice was already processed or validated
    """
    if not status_manager.accepts_callback(invoice.status):
        raise InvalidStatusTransitionError(invoice.status, status)

    invoice.finish_processing()
    if execution_id and not invoice.n8n_execution_id:
        invoice.n8n_execution_id = execution_id

    if status == InvoiceStatus.PROCESSED.value:
        if extracted_data is not None:
            invoice.extracted_data = normalize_extracted_data(extracted_data)
        if confidence_scores:
            invoice.confidence_scores = normalize_confidence(confidence_scores)

        overall = to_float((confidence_scores or {}).get('overall'))
        if extracted_data is not None and overall >= Config.AUTO_VALIDATE_THRESHOLD:
            invoice.is_validated = True
            status_manager.transition(invoice, InvoiceStatus.VALIDATED)
        else:
            status_manager.transition(invoice, InvoiceStatus.PROCESSED)

        logger.info(
            f"Invoice processed: {invoice.id} (vendor={(extracted_data or {}).get('vendor')}, "
            f"amount={(extracted_data or {}).get('amount')}, confidence={overall})"
        )
    else:
        invoice.processing_errors = list(errors or []) or [DEFAULT_FAILURE_MESSAGE]
        status_manager.transition(invoice, InvoiceStatus.FAILED)
        logger.error(f"Invoice processing failed: {invoice.id} ({invoice.processing_errors})")

    return invoice


def handle_n8n_callback(session, payload: N8nCallbackRequest) -> Invoice:
    """
    Apply the invoice workflow's callback

    Raises:
        InvoiceNotFoundError: unknown invoice, nothing changed
        InvalidStatusTransitionError: invoice already processed or validated, nothing changed
    """
    logger.info(
        f"Received n8n callback for invoice {payload.invoice_id} "
        f"(status={payload.status}, execution={payload.execution_id}, time={payload.processing_time})"
    )
    invoice = get_invoice(session, payload.invoice_id)

    try:
        apply_extraction_result(
            invoice,
            payload.status,
            extracted_data=payload.extracted_data,
            confidence_scores=payload.confidence_scores,
            errors=payload.errors,
            execution_id=payload.execution_id
        )
    except InvalidStatusTransitionError:
        session.rollback()
        raise

    session.commit()
    return invoice


def handle_whatsapp_callback(session, payload: WhatsAppCallbackRequest) -> Dict[str, Any]:
    """
    Apply the WhatsApp workflow's callback

    Updates the group's counters and every listed invoice. Invoices that are
    unknown or already processed are skipped and logged.
    """
    logger.info(
        f"Received WhatsApp callback for group {payload.group_id} "
        f"(message={payload.message_id}, status={payload.status}, invoices={len(payload.invoices)})"
    )

    group = None
    if payload.group_id:
        group = session.query(WhatsAppGroup).filter(WhatsAppGroup.group_id == payload.group_id).first()

    if group is not None:
        group.increment_processed_count()
        if payload.status == InvoiceStatus.PROCESSED.value and payload.invoices:
            group.increment_success_count(len(payload.invoices))
        elif payload.status == InvoiceStatus.FAILED.value:
            group.increment_failed_count()

    applied = 0
    for result in payload.invoices:
        invoice = session.get(Invoice, result.invoice_id)
        if invoice is None:
            logger.warning(f"WhatsApp callback references unknown invoice {result.invoice_id}")
            continue
        try:
            apply_extraction_result(
                invoice,
                result.status,
                extracted_data=result.extracted_data,
                confidence_scores=result.confidence_scores,
                errors=result.errors
            )
            applied += 1
        except InvalidStatusTransitionError as e:
            logger.warning(f"Skipping invoice {result.invoice_id} in WhatsApp callback: {e.message}")

    session.commit()

    return {
        'groupId': payload.group_id,
        'messageId': payload.message_id,
        'receivedInvoices': len(payload.invoices),
        'processedInvoices': applied,
    }
