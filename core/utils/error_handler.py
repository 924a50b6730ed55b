"""
Exception taxonomy for invoice intake

Routes translate these into HTTP responses:
- UploadValidationError, RetryNotAllowedError -> 400
- InvoiceNotFoundError, GroupNotFoundError -> 404
- InvalidStatusTransitionError, GroupAlreadyExistsError -> 409
- GroupInactiveError, InvalidWebhookPayloadError -> 400
- WorkflowTriggerError -> 500 with the upstream message attached
"""
from typing import Any, Dict, Optional
from datetime import datetime


class InvoiceIntakeError(Exception):
    """Base exception for invoice intake errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.utcnow().isoformat()


class UploadValidationError(InvoiceIntakeError):
    """Uploaded file rejected by the type/size allowlist"""
    pass


class InvoiceNotFoundError(InvoiceIntakeError):
    """Invoice lookup missed"""

    def __init__(self, invoice_id: str):
        super().__init__("Invoice not found", {'invoice_id': invoice_id})
        self.invoice_id = invoice_id


class GroupNotFoundError(InvoiceIntakeError):
    """WhatsApp group lookup missed"""

    def __init__(self, group_id: str):
        super().__init__("Group not found", {'group_id': group_id})
        self.group_id = group_id


class InvalidStatusTransitionError(InvoiceIntakeError):
    """Requested status change is not allowed from the current status"""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move invoice from '{current}' to '{target}'",
            {'current_status': current, 'target_status': target}
        )
        self.current = current
        self.target = target


class RetryNotAllowedError(InvoiceIntakeError):
    """Invoice cannot be sent for processing again"""
    pass


class WorkflowTriggerError(InvoiceIntakeError):
    """Call to the external n8n workflow failed"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Any = None
    ):
        super().__init__(message, {'status_code': status_code, 'response_body': response_body})
        self.status_code = status_code
        self.response_body = response_body


class GroupAlreadyExistsError(InvoiceIntakeError):
    """A WhatsApp group with this id is already connected"""

    def __init__(self, group):
        super().__init__("Group already connected", {'group_id': group.group_id})
        self.group = group


class GroupInactiveError(InvoiceIntakeError):
    """Operation requires an active WhatsApp group"""
    pass


class InvalidWebhookPayloadError(InvoiceIntakeError):
    """Inbound webhook body does not have the expected shape"""
    pass
