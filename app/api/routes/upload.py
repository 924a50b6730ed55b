from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from app.services.invoice_service import get_invoice
from app.services.storage_service import UploadStorage, get_storage
from app.services.upload_service import ingest_upload, retry_processing
from core.config.config import Config
from core.models.database import get_session
from core.models.schemas import InvoiceSource
from core.utils.error_handler import (
    InvoiceNotFoundError, RetryNotAllowedError, UploadValidationError, WorkflowTriggerError
)
from core.utils.helpers import isoformat
from core.utils.logging_config import get_logger
from integrations.n8n.n8n_client import N8nClient, get_n8n_client

logger = get_logger(__name__)

router = APIRouter(prefix="/api/upload", tags=["upload"])


def _trigger_failure(e: WorkflowTriggerError) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={
            "error": "Failed to start processing",
            "invoiceId": e.details.get('invoice_id'),
            "details": e.message,
        }
    )


@router.post("")
async def upload_invoice(
    invoice: UploadFile = File(...),
    source: InvoiceSource = Form(InvoiceSource.UPLOAD),
    storage: UploadStorage = Depends(get_storage),
    client: N8nClient = Depends(get_n8n_client)
):
    """
    Upload an invoice file and start extraction

    Returns:
        201 with the invoice summary once the workflow has been triggered
    """
    # One byte past the limit is enough to reject oversized files
    data = await invoice.read(Config.MAX_FILE_SIZE + 1)

    session = get_session()
    try:
        created = await run_in_threadpool(
            ingest_upload,
            session,
            storage,
            client,
            invoice.filename,
            invoice.content_type,
            data,
            source.value
        )

        return JSONResponse(
            status_code=201,
            content={
                "message": "Invoice uploaded successfully",
                "invoice": {
                    "id": created.id,
                    "filename": created.original_filename,
                    "status": created.status,
                    "uploadedAt": isoformat(created.created_at),
                },
            }
        )

    except UploadValidationError as e:
        logger.warning(f"Upload rejected ({invoice.filename}): {e.message}")
        raise HTTPException(status_code=400, detail=e.message)
    except WorkflowTriggerError as e:
        raise _trigger_failure(e)
    finally:
        session.close()
        await invoice.close()


@router.get("/status/{invoice_id}")
async def get_upload_status(invoice_id: str):
    """Current processing status of an uploaded invoice"""
    session = get_session()
    try:
        invoice = get_invoice(session, invoice_id)
        return {
            "id": invoice.id,
            "filename": invoice.original_filename,
            "status": invoice.status,
            "extractedData": invoice.extracted_data or {},
            "confidenceScores": invoice.confidence_scores or {},
            "processingErrors": invoice.processing_errors or [],
            "isValidated": invoice.is_validated,
            "processingTime": invoice.processing_time_ms(),
            "createdAt": isoformat(invoice.created_at),
            "updatedAt": isoformat(invoice.updated_at),
        }
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    finally:
        session.close()


@router.post("/retry/{invoice_id}")
async def retry_invoice(invoice_id: str, client: N8nClient = Depends(get_n8n_client)):
    """Send a failed invoice through extraction again"""
    session = get_session()
    try:
        invoice = await run_in_threadpool(retry_processing, session, client, invoice_id)
        return {
            "message": "Invoice processing restarted",
            "invoice": {
                "id": invoice.id,
                "status": invoice.status,
                "retryCount": invoice.retry_count,
            },
        }
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except RetryNotAllowedError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except WorkflowTriggerError as e:
        raise _trigger_failure(e)
    finally:
        session.close()
