"""
Enumerations and request schemas for the invoice intake API

Request bodies use the camelCase field names the dashboard and n8n send;
Python code works with the snake_case attributes.
"""
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel


class InvoiceStatus(str, Enum):
    UPLOADED = 'uploaded'
    PROCESSING = 'processing'
    PROCESSED = 'processed'
    FAILED = 'failed'
    VALIDATED = 'validated'


class InvoiceSource(str, Enum):
    UPLOAD = 'upload'
    WHATSAPP = 'whatsapp'
    EMAIL = 'email'


class InvoiceSortField(str, Enum):
    CREATED_AT = 'createdAt'
    UPDATED_AT = 'updatedAt'
    AMOUNT = 'amount'
    VENDOR = 'vendor'


class SortOrder(str, Enum):
    ASC = 'asc'
    DESC = 'desc'


class StatsPeriod(str, Enum):
    WEEK = '7d'
    MONTH = '30d'
    QUARTER = '90d'
    YEAR = '1y'


class GroupStatsPeriod(str, Enum):
    WEEK = '7d'
    MONTH = '30d'
    QUARTER = '90d'


class ExportFormat(str, Enum):
    CSV = 'csv'
    JSON = 'json'


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# Webhook payloads

class N8nCallbackRequest(CamelModel):
    """Extraction result posted back by the n8n invoice workflow"""
    invoice_id: str = Field(..., min_length=1)
    status: Literal['processed', 'failed']
    execution_id: str = Field(..., min_length=1)
    extracted_data: Optional[Dict[str, Any]] = None
    confidence_scores: Optional[Dict[str, Any]] = None
    errors: Optional[List[str]] = None
    processing_time: Optional[float] = None


class CallbackInvoiceResult(CamelModel):
    invoice_id: str = Field(..., min_length=1)
    status: Literal['processed', 'failed']
    extracted_data: Optional[Dict[str, Any]] = None
    confidence_scores: Optional[Dict[str, Any]] = None
    errors: Optional[List[str]] = None


class WhatsAppCallbackRequest(CamelModel):
    """Result posted back by the n8n WhatsApp workflow"""
    group_id: Optional[str] = None
    message_id: Optional[str] = None
    status: Optional[str] = None
    invoices: List[CallbackInvoiceResult] = Field(default_factory=list)
    errors: Optional[List[str]] = None


# WhatsApp Business message webhook (Meta's snake_case field names)

class WhatsAppModel(BaseModel):
    model_config = ConfigDict(extra='allow', populate_by_name=True)


class WhatsAppText(WhatsAppModel):
    body: Optional[str] = None


class WhatsAppMedia(WhatsAppModel):
    id: Optional[str] = None
    mime_type: Optional[str] = None
    filename: Optional[str] = None


class WhatsAppMessage(WhatsAppModel):
    id: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias='from')
    timestamp: Optional[Union[str, int]] = None
    type: Optional[str] = None
    text: Optional[WhatsAppText] = None
    document: Optional[WhatsAppMedia] = None
    image: Optional[WhatsAppMedia] = None


class WhatsAppMetadata(WhatsAppModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class WhatsAppChangeValue(WhatsAppModel):
    metadata: Optional[WhatsAppMetadata] = None
    messages: Optional[List[WhatsAppMessage]] = None


class WhatsAppChange(WhatsAppModel):
    field: Optional[str] = None
    value: Optional[WhatsAppChangeValue] = None


class WhatsAppEntry(WhatsAppModel):
    id: Optional[str] = None
    changes: Optional[List[WhatsAppChange]] = None


class WhatsAppWebhookPayload(WhatsAppModel):
    object: Optional[str] = None
    entry: List[WhatsAppEntry] = Field(..., min_length=1)


# Invoice edits

class ValidationUpdateRequest(CamelModel):
    is_validated: bool
    validation_errors: Optional[List[str]] = None


class DataUpdateRequest(CamelModel):
    extracted_data: Dict[str, Any]


# WhatsApp groups

# Empty keywords would match every message
TriggerKeyword = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class GroupCreateRequest(CamelModel):
    group_id: str = Field(..., min_length=1)
    group_name: str = Field(..., min_length=1)
    group_description: Optional[str] = None
    trigger_keywords: Optional[List[TriggerKeyword]] = None
    auto_process_attachments: bool = True
    allowed_file_types: Optional[List[str]] = None
    max_file_size: Optional[int] = Field(default=None, ge=0)
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    connected_by: Optional[str] = None


class GroupUpdateRequest(CamelModel):
    group_name: Optional[str] = Field(default=None, min_length=1)
    group_description: Optional[str] = None
    trigger_keywords: Optional[List[TriggerKeyword]] = None
    auto_process_attachments: Optional[bool] = None
    allowed_file_types: Optional[List[str]] = None
    max_file_size: Optional[int] = Field(default=None, ge=0)
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    is_active: Optional[bool] = None


class GroupTestRequest(CamelModel):
    message: str = ''
