"""
Upload intake - accepts invoice files and hands them to the extraction workflow
"""
from pathlib import Path
from typing import Optional

from core.config.config import Config
from core.models.database import Invoice
from core.models.schemas import InvoiceSource, InvoiceStatus
from core.utils.error_handler import RetryNotAllowedError, UploadValidationError, WorkflowTriggerError
from core.utils.helpers import file_extension
from core.utils.logging_config import get_logger
from core.utils.state_manager import status_manager
from app.services.invoice_service import get_invoice

logger = get_logger(__name__)


def validate_upload(filename: Optional[str], content_type: Optional[str], size: int) -> None:
    """
    Check an upload against the type and size allowlist

    Both the MIME type and the extension must be allowed.

    Raises:
        UploadValidationError: if the file is rejected
    """
    allowlist = Config.load_defaults().get('upload', {})
    allowed_types = set(allowlist.get('allowed_mime_types', []))
    allowed_extensions = set(allowlist.get('allowed_extensions', []))

    if not filename:
        raise UploadValidationError("No file uploaded")

    extension = file_extension(filename)
    mime_type = (content_type or '').split(';')[0].strip().lower()
    if mime_type not in allowed_types or extension not in allowed_extensions:
        raise UploadValidationError(
            "Invalid file type. Only PDF, PNG, JPG, and JPEG files are allowed.",
            {'filename': filename, 'content_type': content_type}
        )

    if size == 0:
        raise UploadValidationError("Uploaded file is empty", {'filename': filename})

    if size > Config.MAX_FILE_SIZE:
        raise UploadValidationError(
            f"File exceeds the maximum size of {Config.MAX_FILE_SIZE // (1024 * 1024)} MB",
            {'filename': filename, 'size': size, 'max_size': Config.MAX_FILE_SIZE}
        )


def start_processing(session, client, invoice: Invoice) -> Invoice:
    """
    Move an invoice to processing and trigger the n8n workflow

    The status change is committed before the outbound call so a fast
    callback always finds the invoice in processing.

    Raises:
        WorkflowTriggerError: after the invoice has been marked failed
    """
    status_manager.transition(invoice, InvoiceStatus.PROCESSING)
    invoice.start_processing()
    session.commit()

    try:
        result = client.trigger_invoice_workflow(
            invoice_id=invoice.id,
            file_path=invoice.file_url,
            filename=invoice.original_filename,
            file_type=invoice.file_type,
            source=invoice.source
        )
    except WorkflowTriggerError as e:
        logger.error(f"Failed to trigger n8n workflow for invoice {invoice.id}: {e.message}")
        status_manager.transition(invoice, InvoiceStatus.FAILED)
        invoice.add_processing_error(e.message)
        invoice.finish_processing()
        session.commit()
        e.details['invoice_id'] = invoice.id
        raise

    invoice.n8n_workflow_id = result['workflow_id']
    invoice.n8n_execution_id = result['execution_id']
    session.commit()

    logger.info(
        f"n8n workflow triggered for invoice {invoice.id} "
        f"(workflow={invoice.n8n_workflow_id}, execution={invoice.n8n_execution_id})"
    )
    return invoice


def ingest_upload(
    session,
    storage,
    client,
    filename: Optional[str],
    content_type: Optional[str],
    data: bytes,
    source: str = InvoiceSource.UPLOAD.value
) -> Invoice:
    """
    Store an uploaded invoice, record it and start extraction

    Steps:
    1. Validate type/size (nothing is stored on rejection)
    2. Stage the file, insert the row, then commit the file into the store
    3. Trigger the extraction workflow

    Returns:
        The invoice, in processing

    Raises:
        UploadValidationError: file rejected, no row created
        WorkflowTriggerError: row kept as failed, stored file kept for retry
    """
    validate_upload(filename, content_type, len(data))

    staged_path = storage.stage(data, filename)
    invoice = Invoice(
        original_filename=filename,
        file_type=file_extension(filename).lstrip('.'),
        file_size=len(data),
        file_url=str(storage.final_path(staged_path)),
        source=source,
        status=InvoiceStatus.UPLOADED.value
    )

    try:
        session.add(invoice)
        session.commit()
    except Exception:
        session.rollback()
        storage.discard(staged_path)
        raise

    try:
        storage.commit(staged_path)
    except OSError:
        logger.error(f"Failed to move staged file for invoice {invoice.id}, removing row")
        session.delete(invoice)
        session.commit()
        storage.discard(staged_path)
        raise

    logger.info(f"Invoice uploaded: {invoice.id} ({filename}, {len(data)} bytes, source={source})")

    return start_processing(session, client, invoice)


def retry_processing(session, client, invoice_id: str) -> Invoice:
    """
    Send a failed invoice through extraction again

    Raises:
        InvoiceNotFoundError: unknown invoice
        RetryNotAllowedError: not failed, retry ceiling reached, or no stored file
        WorkflowTriggerError: trigger failed again, invoice back to failed
    """
    invoice = get_invoice(session, invoice_id)

    if invoice.status != InvoiceStatus.FAILED.value:
        raise RetryNotAllowedError("Can only retry failed invoices", {'status': invoice.status})

    max_retries = Config.MAX_PROCESSING_RETRIES
    if max_retries and invoice.retry_count >= max_retries:
        raise RetryNotAllowedError(
            f"Retry limit of {max_retries} reached",
            {'retry_count': invoice.retry_count}
        )

    if not invoice.file_url or not Path(invoice.file_url).exists():
        raise RetryNotAllowedError("Invoice has no stored file to process")

    invoice.retry_count = (invoice.retry_count or 0) + 1
    invoice.processing_errors = []
    logger.info(f"Retrying invoice {invoice_id} (attempt {invoice.retry_count})")

    return start_processing(session, client, invoice)
