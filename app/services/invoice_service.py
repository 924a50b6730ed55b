"""
Invoice queries, manual edits and reporting
"""
import csv
import io
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from core.models.database import Invoice
from core.models.schemas import InvoiceSource, InvoiceStatus
from core.utils.error_handler import InvoiceNotFoundError, WorkflowTriggerError
from core.utils.helpers import isoformat, normalize_date, period_start, to_float
from core.utils.logging_config import get_logger
from core.utils.state_manager import status_manager

logger = get_logger(__name__)

# Extracted-data keys holding dates that are re-parsed on manual edits
DATE_FIELDS = ('date', 'dueDate')

EXPORT_FIELDS = [
    'id', 'filename', 'status', 'source', 'vendor', 'invoiceNumber', 'date', 'dueDate',
    'amount', 'currency', 'vatAmount', 'vatRate', 'vatId', 'confidence', 'isValidated',
    'createdAt',
]


@dataclass
class InvoiceFilters:
    status: Optional[str] = None
    source: Optional[str] = None
    vendor: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None


def _amount_expr():
    return Invoice.extracted_data['amount'].as_float()


def _vendor_expr():
    return Invoice.extracted_data['vendor'].as_string()


SORT_EXPRESSIONS = {
    'createdAt': lambda: Invoice.created_at,
    'updatedAt': lambda: Invoice.updated_at,
    'amount': _amount_expr,
    'vendor': _vendor_expr,
}


def get_invoice(session, invoice_id: str) -> Invoice:
    """
    Load an invoice by id

    Raises:
        InvoiceNotFoundError: if no row matches
    """
    invoice = session.get(Invoice, invoice_id)
    if invoice is None:
        raise InvoiceNotFoundError(invoice_id)
    return invoice


def whatsapp_info(invoice: Invoice) -> Dict[str, Any]:
    return {
        'groupId': invoice.whatsapp_group_id,
        'messageId': invoice.whatsapp_message_id,
        'sender': invoice.whatsapp_sender,
        'mediaId': invoice.whatsapp_media_id,
    }


def serialize_summary(invoice: Invoice) -> Dict[str, Any]:
    """List view of an invoice; the storage path is never exposed"""
    item = {
        'id': invoice.id,
        'filename': invoice.original_filename,
        'status': invoice.status,
        'source': invoice.source,
        'extractedData': invoice.extracted_data or {},
        'confidenceScores': invoice.confidence_scores or {},
        'isValidated': invoice.is_validated,
        'createdAt': isoformat(invoice.created_at),
        'updatedAt': isoformat(invoice.updated_at),
        'processingTime': invoice.processing_time_ms(),
    }
    if invoice.source == InvoiceSource.WHATSAPP.value:
        item['whatsappInfo'] = whatsapp_info(invoice)
    return item


def serialize_detail(invoice: Invoice) -> Dict[str, Any]:
    """Full view of an invoice including error lists"""
    item = serialize_summary(invoice)
    item.update({
        'fileType': invoice.file_type,
        'fileSize': invoice.file_size,
        'validationErrors': invoice.validation_errors or [],
        'processingErrors': invoice.processing_errors or [],
        'n8nWorkflowId': invoice.n8n_workflow_id,
        'n8nExecutionId': invoice.n8n_execution_id,
        'processingStartTime': isoformat(invoice.processing_start_time),
        'processingEndTime': isoformat(invoice.processing_end_time),
        'retryCount': invoice.retry_count,
    })
    return item


def apply_filters(query, filters: InvoiceFilters):
    """Narrow an Invoice query by the list/export filters"""
    if filters.status:
        query = query.filter(Invoice.status == filters.status)
    if filters.source:
        query = query.filter(Invoice.source == filters.source)
    if filters.vendor:
        query = query.filter(_vendor_expr().ilike(f"%{filters.vendor}%"))
    if filters.date_from:
        query = query.filter(Invoice.created_at >= filters.date_from)
    if filters.date_to:
        query = query.filter(Invoice.created_at <= filters.date_to)
    if filters.min_amount is not None:
        query = query.filter(_amount_expr() >= filters.min_amount)
    if filters.max_amount is not None:
        query = query.filter(_amount_expr() <= filters.max_amount)
    return query


def apply_sort(query, sort_by: str = 'createdAt', sort_order: str = 'desc'):
    expression = SORT_EXPRESSIONS.get(sort_by, SORT_EXPRESSIONS['createdAt'])()
    ordered = expression.desc() if sort_order == 'desc' else expression.asc()
    return query.order_by(ordered, Invoice.id)


def list_invoices(
    session,
    filters: InvoiceFilters,
    sort_by: str = 'createdAt',
    sort_order: str = 'desc',
    limit: int = 20,
    offset: int = 0
) -> Dict[str, Any]:
    """
    Filtered, sorted, paginated invoice list

    Returns:
        {'invoices': [...], 'pagination': {total, limit, offset, hasMore}}
    """
    query = apply_filters(session.query(Invoice), filters)
    total = query.count()
    invoices = apply_sort(query, sort_by, sort_order).offset(offset).limit(limit).all()

    return {
        'invoices': [serialize_summary(invoice) for invoice in invoices],
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'hasMore': offset + len(invoices) < total,
        },
    }


def update_validation(
    session,
    invoice_id: str,
    is_validated: bool,
    validation_errors: Optional[List[str]] = None
) -> Invoice:
    """
    Set the validation flag and errors from reviewer input

    processed <-> validated follows the flag; other statuses are left alone.
    """
    invoice = get_invoice(session, invoice_id)
    invoice.is_validated = is_validated
    invoice.validation_errors = list(validation_errors or [])

    if is_validated and invoice.status == InvoiceStatus.PROCESSED.value:
        status_manager.transition(invoice, InvoiceStatus.VALIDATED)
    elif not is_validated and invoice.status == InvoiceStatus.VALIDATED.value:
        status_manager.transition(invoice, InvoiceStatus.PROCESSED)

    session.commit()
    logger.info(f"Invoice validation updated: {invoice_id} (isValidated={is_validated}, status={invoice.status})")
    return invoice


def update_extracted_data(session, invoice_id: str, data: Dict[str, Any]) -> Invoice:
    """
    Shallow-merge manual corrections into the extracted data

    Any manual edit clears validation; a validated invoice drops back to processed.
    """
    invoice = get_invoice(session, invoice_id)

    merged = {**(invoice.extracted_data or {}), **data}
    for field in DATE_FIELDS:
        if data.get(field):
            merged[field] = normalize_date(data[field])
    invoice.extracted_data = merged

    invoice.is_validated = False
    invoice.validation_errors = []
    if invoice.status == InvoiceStatus.VALIDATED.value:
        status_manager.transition(invoice, InvoiceStatus.PROCESSED)

    session.commit()
    logger.info(f"Invoice data updated: {invoice_id} (vendor={data.get('vendor')}, amount={data.get('amount')})")
    return invoice


def delete_invoice(session, invoice_id: str, storage, client=None) -> Invoice:
    """
    Delete an invoice row and its stored file

    A running n8n execution is asked to stop first; failure to stop is logged only.
    """
    invoice = get_invoice(session, invoice_id)

    if client is not None and invoice.status == InvoiceStatus.PROCESSING.value and invoice.n8n_execution_id:
        try:
            client.cancel_workflow(invoice.n8n_execution_id)
        except WorkflowTriggerError as e:
            logger.warning(f"Could not stop execution {invoice.n8n_execution_id} for {invoice_id}: {e.message}")

    file_url = invoice.file_url
    session.delete(invoice)
    session.commit()
    storage.remove(file_url)

    logger.info(f"Invoice deleted: {invoice_id} ({invoice.original_filename})")
    return invoice


def daily_buckets(rows, include_amount: bool = True) -> List[Dict[str, Any]]:
    buckets: Dict[str, Dict[str, Any]] = {}
    for created_at, extracted_data in rows:
        day = created_at.strftime('%Y-%m-%d')
        bucket = buckets.setdefault(day, {'date': day, 'count': 0, 'totalAmount': 0.0})
        bucket['count'] += 1
        bucket['totalAmount'] += to_float((extracted_data or {}).get('amount'))
    result = [buckets[day] for day in sorted(buckets)]
    if not include_amount:
        for bucket in result:
            bucket.pop('totalAmount')
    return result


def compute_stats(session, period: str = '30d', now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Overview statistics for the dashboard

    Totals and groupings cover every invoice; the period block and the
    daily activity series cover the trailing period only.
    """
    now = now or datetime.utcnow()
    start = period_start(period, now)

    total = session.query(func.count(Invoice.id)).scalar() or 0
    by_status = (
        session.query(Invoice.status, func.count(Invoice.id))
        .group_by(Invoice.status)
        .order_by(Invoice.status)
        .all()
    )
    by_source = (
        session.query(Invoice.source, func.count(Invoice.id))
        .group_by(Invoice.source)
        .order_by(Invoice.source)
        .all()
    )

    rows = (
        session.query(Invoice.created_at, Invoice.extracted_data, Invoice.confidence_scores)
        .filter(Invoice.created_at >= start)
        .all()
    )
    count = len(rows)
    amounts = [to_float((extracted or {}).get('amount')) for _, extracted, _ in rows]
    confidences = [to_float((scores or {}).get('overall')) for _, _, scores in rows]

    return {
        'period': period,
        'dateRange': {'start': start.isoformat(), 'end': now.isoformat()},
        'stats': {
            'total': total,
            'byStatus': [{'status': status, 'count': n} for status, n in by_status],
            'bySource': [{'source': source, 'count': n} for source, n in by_source],
            'period': {
                'count': count,
                'totalAmount': sum(amounts),
                'avgAmount': sum(amounts) / count if count else 0,
                'avgConfidence': sum(confidences) / count if count else 0,
            },
            'dailyActivity': daily_buckets((created_at, extracted) for created_at, extracted, _ in rows),
        },
    }


def export_row(invoice: Invoice) -> Dict[str, Any]:
    extracted = invoice.extracted_data or {}
    return {
        'id': invoice.id,
        'filename': invoice.original_filename,
        'status': invoice.status,
        'source': invoice.source,
        'vendor': extracted.get('vendor'),
        'invoiceNumber': extracted.get('invoiceNumber'),
        'date': extracted.get('date'),
        'dueDate': extracted.get('dueDate'),
        'amount': extracted.get('amount'),
        'currency': extracted.get('currency'),
        'vatAmount': extracted.get('vatAmount'),
        'vatRate': extracted.get('vatRate'),
        'vatId': extracted.get('vatId'),
        'confidence': (invoice.confidence_scores or {}).get('overall'),
        'isValidated': invoice.is_validated,
        'createdAt': isoformat(invoice.created_at),
    }


def resolve_export_fields(fields: Optional[str]) -> List[str]:
    """
    Parse the comma-separated field selection

    Raises:
        ValueError: on unknown field names
    """
    if not fields:
        return list(EXPORT_FIELDS)
    selected = [name.strip() for name in fields.split(',') if name.strip()]
    unknown = [name for name in selected if name not in EXPORT_FIELDS]
    if unknown:
        raise ValueError(f"Unknown export fields: {', '.join(unknown)}")
    return selected


def export_invoices(
    session,
    filters: InvoiceFilters,
    fields: List[str],
    sort_by: str = 'createdAt',
    sort_order: str = 'desc'
) -> List[Dict[str, Any]]:
    """Export rows restricted to the selected fields"""
    query = apply_sort(apply_filters(session.query(Invoice), filters), sort_by, sort_order)
    return [{name: row[name] for name in fields} for row in map(export_row, query.all())]


def rows_to_csv(rows: List[Dict[str, Any]], fields: List[str]) -> str:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=fields, extrasaction='ignore')
    writer.writeheader()
    for row in rows:
        writer.writerow({key: '' if value is None else value for key, value in row.items()})
    return output.getvalue()
