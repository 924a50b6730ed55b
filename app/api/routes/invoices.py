from datetime import datetime
from typing import Optional
import json

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from app.services.invoice_service import (
    InvoiceFilters,
    compute_stats,
    delete_invoice,
    export_invoices,
    get_invoice,
    list_invoices,
    resolve_export_fields,
    rows_to_csv,
    serialize_detail,
    update_extracted_data,
    update_validation,
)
from app.services.storage_service import UploadStorage, get_storage
from core.models.database import get_session
from core.models.schemas import (
    DataUpdateRequest,
    ExportFormat,
    InvoiceSortField,
    InvoiceSource,
    InvoiceStatus,
    SortOrder,
    StatsPeriod,
    ValidationUpdateRequest,
)
from core.utils.error_handler import InvoiceNotFoundError
from core.utils.logging_config import get_logger
from integrations.n8n.n8n_client import N8nClient, get_n8n_client

logger = get_logger(__name__)

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


def invoice_filters(
    status: Optional[InvoiceStatus] = Query(None),
    source: Optional[InvoiceSource] = Query(None),
    vendor: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    min_amount: Optional[float] = Query(None, alias="minAmount"),
    max_amount: Optional[float] = Query(None, alias="maxAmount"),
) -> InvoiceFilters:
    """Filter query parameters shared by the list and export endpoints"""
    return InvoiceFilters(
        status=status.value if status else None,
        source=source.value if source else None,
        vendor=vendor,
        date_from=date_from,
        date_to=date_to,
        min_amount=min_amount,
        max_amount=max_amount,
    )


@router.get("")
async def get_invoices(
    filters: InvoiceFilters = Depends(invoice_filters),
    sort_by: InvoiceSortField = Query(InvoiceSortField.CREATED_AT, alias="sortBy"),
    sort_order: SortOrder = Query(SortOrder.DESC, alias="sortOrder"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0)
):
    """
    List invoices

    Filters: status, source, vendor (substring), dateFrom/dateTo, minAmount/maxAmount.
    Sorting: createdAt, updatedAt, amount or vendor.
    """
    session = get_session()
    try:
        return list_invoices(session, filters, sort_by.value, sort_order.value, limit, offset)
    finally:
        session.close()


@router.get("/export")
async def export_invoice_list(
    filters: InvoiceFilters = Depends(invoice_filters),
    format: ExportFormat = Query(ExportFormat.CSV),
    fields: Optional[str] = Query(None),
    sort_by: InvoiceSortField = Query(InvoiceSortField.CREATED_AT, alias="sortBy"),
    sort_order: SortOrder = Query(SortOrder.DESC, alias="sortOrder")
):
    """Download the filtered invoices as CSV or JSON"""
    try:
        selected = resolve_export_fields(fields)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    session = get_session()
    try:
        rows = export_invoices(session, filters, selected, sort_by.value, sort_order.value)
    finally:
        session.close()

    logger.info(f"Exported {len(rows)} invoice(s) as {format.value}")
    filename = f"invoices-{datetime.utcnow().strftime('%Y%m%d%H%M%S')}.{format.value}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}

    if format == ExportFormat.JSON:
        return Response(
            content=json.dumps(rows, default=str),
            media_type="application/json",
            headers=headers
        )
    return Response(content=rows_to_csv(rows, selected), media_type="text/csv", headers=headers)


@router.get("/stats/overview")
async def get_stats_overview(period: StatsPeriod = Query(StatsPeriod.MONTH)):
    """Dashboard statistics for the trailing period"""
    session = get_session()
    try:
        return compute_stats(session, period.value)
    finally:
        session.close()


@router.get("/{invoice_id}")
async def get_invoice_detail(invoice_id: str):
    """Full invoice record including processing and validation errors"""
    session = get_session()
    try:
        return serialize_detail(get_invoice(session, invoice_id))
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    finally:
        session.close()


@router.put("/{invoice_id}/validate")
async def validate_invoice(invoice_id: str, request: ValidationUpdateRequest):
    session = get_session()
    try:
        invoice = update_validation(session, invoice_id, request.is_validated, request.validation_errors)
        return {
            "message": "Invoice validation updated",
            "invoice": {
                "id": invoice.id,
                "status": invoice.status,
                "isValidated": invoice.is_validated,
                "validationErrors": invoice.validation_errors or [],
            },
        }
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    finally:
        session.close()


@router.put("/{invoice_id}/data")
async def update_invoice_data(invoice_id: str, request: DataUpdateRequest):
    """Merge manual corrections into the extracted data; the invoice needs re-validation"""
    session = get_session()
    try:
        invoice = update_extracted_data(session, invoice_id, request.extracted_data)
        return {
            "message": "Invoice data updated",
            "invoice": {
                "id": invoice.id,
                "status": invoice.status,
                "extractedData": invoice.extracted_data or {},
                "isValidated": invoice.is_validated,
            },
        }
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    finally:
        session.close()


@router.delete("/{invoice_id}")
async def remove_invoice(
    invoice_id: str,
    storage: UploadStorage = Depends(get_storage),
    client: N8nClient = Depends(get_n8n_client)
):
    session = get_session()
    try:
        await run_in_threadpool(delete_invoice, session, invoice_id, storage, client)
        return {"message": "Invoice deleted successfully"}
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    finally:
        session.close()
