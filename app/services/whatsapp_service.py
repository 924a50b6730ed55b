"""
WhatsApp groups and inbound WhatsApp Business messages

Inbound messages from active groups are matched against the group's
trigger keywords; attachments become invoice stubs that the n8n WhatsApp
workflow fills in later through the whatsapp-callback webhook.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from core.config.config import Config
from core.models.database import (
    Invoice, WhatsAppGroup, default_allowed_file_types, default_trigger_keywords
)
from core.models.schemas import GroupCreateRequest, InvoiceSource, InvoiceStatus, WhatsAppWebhookPayload
from core.utils.error_handler import (
    GroupAlreadyExistsError, GroupInactiveError, GroupNotFoundError,
    InvalidWebhookPayloadError, WorkflowTriggerError
)
from core.utils.helpers import isoformat, period_start, sanitize_filename, to_float
from core.utils.logging_config import get_logger
from core.utils.state_manager import status_manager
from app.services.invoice_service import daily_buckets

logger = get_logger(__name__)

RECENT_INVOICE_LIMIT = 10

# Columns that may not be cleared through an update
NON_NULLABLE_SETTINGS = {'group_name', 'is_active', 'auto_process_attachments', 'max_file_size'}


def serialize_group(group: WhatsAppGroup, detail: bool = False) -> Dict[str, Any]:
    item = {
        'id': group.id,
        'groupId': group.group_id,
        'groupName': group.group_name,
        'groupDescription': group.group_description,
        'isActive': group.is_active,
        'triggerKeywords': group.trigger_keywords or [],
        'stats': group.stats or {},
        'connectedAt': isoformat(group.created_at),
        'lastActivityAt': isoformat(group.last_activity_at),
    }
    if detail:
        item.update({
            'autoProcessAttachments': group.auto_process_attachments,
            'allowedFileTypes': group.allowed_file_types or [],
            'maxFileSize': group.max_file_size,
            'webhookUrl': group.webhook_url,
            'connectedBy': group.connected_by,
            'updatedAt': isoformat(group.updated_at),
        })
    return item


def get_group(session, group_id: str) -> WhatsAppGroup:
    """
    Raises:
        GroupNotFoundError: if the group was never connected
    """
    group = session.query(WhatsAppGroup).filter(WhatsAppGroup.group_id == group_id).first()
    if group is None:
        raise GroupNotFoundError(group_id)
    return group


def create_group(session, payload: GroupCreateRequest) -> WhatsAppGroup:
    """Connect a new WhatsApp group"""
    existing = session.query(WhatsAppGroup).filter(WhatsAppGroup.group_id == payload.group_id).first()
    if existing is not None:
        raise GroupAlreadyExistsError(existing)

    group = WhatsAppGroup(
        group_id=payload.group_id,
        group_name=payload.group_name,
        group_description=payload.group_description,
        trigger_keywords=payload.trigger_keywords or default_trigger_keywords(),
        auto_process_attachments=payload.auto_process_attachments,
        allowed_file_types=payload.allowed_file_types or default_allowed_file_types(),
        max_file_size=payload.max_file_size if payload.max_file_size is not None else Config.MAX_FILE_SIZE,
        webhook_url=payload.webhook_url,
        webhook_secret=payload.webhook_secret,
        connected_by=payload.connected_by,
        is_active=True
    )
    session.add(group)
    session.commit()

    logger.info(f"WhatsApp group connected: {group.group_id} ({group.group_name}, by {group.connected_by})")
    return group


def list_groups(session, active_only: bool = True, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
    query = session.query(WhatsAppGroup)
    if active_only:
        query = query.filter(WhatsAppGroup.is_active.is_(True))

    total = query.count()
    groups = query.order_by(WhatsAppGroup.created_at.desc(), WhatsAppGroup.id).offset(offset).limit(limit).all()

    return {
        'groups': [serialize_group(group) for group in groups],
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'hasMore': offset + len(groups) < total,
        },
    }


def recent_invoices(session, group_id: str, limit: int = RECENT_INVOICE_LIMIT) -> List[Dict[str, Any]]:
    invoices = (
        session.query(Invoice)
        .filter(Invoice.whatsapp_group_id == group_id)
        .order_by(Invoice.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            'id': invoice.id,
            'filename': invoice.original_filename,
            'status': invoice.status,
            'vendor': (invoice.extracted_data or {}).get('vendor'),
            'amount': (invoice.extracted_data or {}).get('amount'),
            'createdAt': isoformat(invoice.created_at),
        }
        for invoice in invoices
    ]


def update_group(session, group_id: str, changes: Dict[str, Any]) -> WhatsAppGroup:
    """
    Apply a partial settings update

    Clearing the keyword or file-type lists restores the defaults.
    """
    group = get_group(session, group_id)

    for field, value in changes.items():
        if value is None and field in NON_NULLABLE_SETTINGS:
            continue
        if field == 'trigger_keywords' and not value:
            value = default_trigger_keywords()
        if field == 'allowed_file_types' and not value:
            value = default_allowed_file_types()
        setattr(group, field, value)

    session.commit()
    logger.info(f"WhatsApp group updated: {group_id} (name={group.group_name}, active={group.is_active})")
    return group


def deactivate_group(session, group_id: str) -> WhatsAppGroup:
    """Soft delete: the row stays, the group stops matching messages"""
    group = get_group(session, group_id)
    group.is_active = False
    session.commit()
    logger.info(f"WhatsApp group disconnected: {group_id}")
    return group


def group_stats(session, group_id: str, period: str = '30d', now: Optional[datetime] = None) -> Dict[str, Any]:
    """Running counters plus invoice activity for the trailing period"""
    group = get_group(session, group_id)
    now = now or datetime.utcnow()
    start = period_start(period, now)

    rows = (
        session.query(Invoice.status, Invoice.created_at, Invoice.extracted_data)
        .filter(Invoice.whatsapp_group_id == group_id, Invoice.created_at >= start)
        .all()
    )

    by_status: Dict[str, Dict[str, Any]] = {}
    for status, _, extracted in rows:
        bucket = by_status.setdefault(status, {'status': status, 'count': 0, 'totalAmount': 0.0})
        bucket['count'] += 1
        bucket['totalAmount'] += to_float((extracted or {}).get('amount'))

    return {
        'groupId': group_id,
        'period': period,
        'stats': {
            'overall': group.stats or {},
            'period': {
                'invoicesByStatus': [by_status[status] for status in sorted(by_status)],
                'dailyActivity': daily_buckets(
                    ((created_at, extracted) for _, created_at, extracted in rows),
                    include_amount=False
                ),
                'dateRange': {'start': start.isoformat(), 'end': now.isoformat()},
            },
        },
    }


def check_test_message(group: WhatsAppGroup, message: str) -> Dict[str, Any]:
    """
    Report whether a message would trigger processing for a group

    Raises:
        GroupInactiveError: if the group is deactivated
    """
    if not group.is_active:
        raise GroupInactiveError("Group is not active", {'group_id': group.group_id})

    matched = group.matched_keywords(message)
    return {
        'groupId': group.group_id,
        'groupName': group.group_name,
        'testMessage': message,
        'wouldTrigger': bool(matched),
        'matchedKeywords': matched,
        'allTriggerKeywords': group.trigger_keywords or [],
    }


def _message_date(timestamp: Any) -> Optional[datetime]:
    try:
        return datetime.utcfromtimestamp(int(timestamp))
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _attachment_file_type(attachment: Dict[str, Any]) -> str:
    subtype = (attachment.get('mime_type') or '').split(';')[0].split('/')[-1].strip().lower()
    mapping = Config.load_defaults().get('mime_subtypes', {})
    return mapping.get(subtype, subtype or 'unknown')


def _create_stub(session, group: WhatsAppGroup, message: Dict[str, Any], attachment: Dict[str, Any]) -> Optional[Invoice]:
    """Invoice placeholder for an attachment whose media is not downloaded yet"""
    message_id = message.get('id')
    file_type = _attachment_file_type(attachment)
    if file_type not in (group.allowed_file_types or []):
        logger.info(f"Skipping {file_type} attachment in message {message_id}: not allowed for group {group.group_id}")
        return None

    stub = Invoice(
        original_filename=sanitize_filename(attachment.get('filename') or '') or f"whatsapp_{message_id}",
        file_type=file_type,
        file_size=0,
        source=InvoiceSource.WHATSAPP.value,
        whatsapp_group_id=group.group_id,
        whatsapp_message_id=message_id,
        whatsapp_sender=message.get('from'),
        whatsapp_media_id=attachment.get('id'),
        status=InvoiceStatus.UPLOADED.value
    )
    stub.start_processing()
    session.add(stub)
    return stub


def _dispatch_to_workflow(
    session,
    client,
    group: WhatsAppGroup,
    message: Dict[str, Any],
    text: str,
    attachment: Optional[Dict[str, Any]],
    stubs: List[Invoice]
) -> None:
    """Hand a matched message to the WhatsApp workflow and move its stubs along"""
    attachments = [
        {
            'invoiceId': stub.id,
            'mediaId': stub.whatsapp_media_id,
            'mimeType': (attachment or {}).get('mime_type'),
            'fileType': stub.file_type,
            'filename': stub.original_filename,
        }
        for stub in stubs
    ]

    try:
        result = client.trigger_whatsapp_workflow(
            group_id=group.group_id,
            message_id=message.get('id'),
            sender=message.get('from'),
            message=text,
            attachments=attachments,
            timestamp=message.get('timestamp')
        )
    except WorkflowTriggerError as e:
        for stub in stubs:
            status_manager.transition(stub, InvoiceStatus.FAILED)
            stub.add_processing_error(e.message)
            stub.finish_processing()
        session.commit()
        return

    for stub in stubs:
        status_manager.transition(stub, InvoiceStatus.PROCESSING)
        stub.n8n_workflow_id = result['workflow_id']
        stub.n8n_execution_id = result['execution_id']
    session.commit()


def _process_message(session, client, group_id: Optional[str], message: Dict[str, Any]) -> int:
    """
    Handle one inbound message

    Returns:
        Number of invoice stubs created
    """
    group = (
        session.query(WhatsAppGroup)
        .filter(WhatsAppGroup.group_id == group_id, WhatsAppGroup.is_active.is_(True))
        .first()
    )
    if group is None:
        logger.info(f"Message from unregistered group: {group_id}")
        return 0

    message_id = message.get('id')
    text = (message.get('text') or {}).get('body') or ''
    attachment = message.get('document') or message.get('image')
    has_keyword = group.has_keyword(text)

    if not (has_keyword or attachment):
        return 0

    logger.info(
        f"Processing WhatsApp message {message_id} from group {group_id} "
        f"(sender={message.get('from')}, attachment={bool(attachment)}, keyword={has_keyword})"
    )
    group.increment_message_count(_message_date(message.get('timestamp')))

    stubs = []
    if attachment and group.auto_process_attachments:
        stub = _create_stub(session, group, message, attachment)
        if stub is not None:
            stubs.append(stub)
    session.commit()

    for stub in stubs:
        logger.info(f"Created invoice record for WhatsApp attachment: {stub.id}")

    _dispatch_to_workflow(session, client, group, message, text, attachment, stubs)
    return len(stubs)


def process_whatsapp_webhook(session, client, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Handle a WhatsApp Business message webhook

    The group is identified by the receiving phone number. Messages from
    unknown or inactive groups are skipped. Payloads without messages
    (delivery/status updates) are acknowledged.

    Raises:
        InvalidWebhookPayloadError: if the payload has no entry/changes or
            its entries, changes or messages are not shaped as expected
    """
    try:
        webhook = WhatsAppWebhookPayload.model_validate(payload)
    except ValidationError as e:
        raise InvalidWebhookPayloadError(
            "Invalid WhatsApp webhook payload", {'errors': e.errors(include_url=False, include_input=False)}
        ) from e
    if not webhook.entry[0].changes:
        raise InvalidWebhookPayloadError("Invalid WhatsApp webhook payload")

    message_count = 0
    invoices_created = 0
    for entry in webhook.entry:
        for change in entry.changes or []:
            if change.value is None:
                continue
            group_id = change.value.metadata.display_phone_number if change.value.metadata else None
            for message in change.value.messages or []:
                message_count += 1
                message_data = message.model_dump(by_alias=True, exclude_none=True)
                invoices_created += _process_message(session, client, group_id, message_data)

    if message_count == 0:
        return {'status': 'acknowledged'}

    return {'status': 'processed', 'messages': message_count, 'invoicesCreated': invoices_created}
