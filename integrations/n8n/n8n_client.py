"""
n8n Client - External extraction workflow

Thin wrapper around the n8n webhooks that run OCR/AI field extraction.
Every call is a single HTTP request with a fixed timeout; there is no retry
or backoff here, callers own any state rollback.

Operations:
- trigger_invoice_workflow: send an uploaded invoice file for extraction
- trigger_whatsapp_workflow: send a WhatsApp message (and its attachments)
- cancel_workflow: stop a running execution
"""
import base64
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from core.config.config import Config
from core.utils.error_handler import WorkflowTriggerError
from core.utils.helpers import generate_execution_id
from core.utils.logging_config import get_logger

logger = get_logger(__name__)


class N8nClient:
    """
    Client for the n8n extraction workflows
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        invoice_webhook_url: Optional[str] = None,
        whatsapp_webhook_url: Optional[str] = None,
        backend_url: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.base_url = (base_url or Config.N8N_BASE_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else Config.N8N_API_KEY
        self.invoice_webhook_url = invoice_webhook_url or Config.N8N_WEBHOOK_URL
        self.whatsapp_webhook_url = whatsapp_webhook_url or Config.N8N_WHATSAPP_WEBHOOK_URL
        self.backend_url = (backend_url or Config.BACKEND_URL).rstrip('/')
        self.timeout = timeout or Config.N8N_TIMEOUT_SECONDS

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
        return headers

    def _post(self, url: str, payload: Dict[str, Any], action: str) -> Dict[str, Any]:
        """
        POST a JSON payload and return the decoded response body

        Raises:
            WorkflowTriggerError: on network errors, timeouts and non-2xx answers
        """
        try:
            response = requests.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            upstream = getattr(e, 'response', None)
            status_code = upstream.status_code if upstream is not None else None
            body = upstream.text if upstream is not None else None
            logger.error(f"{action} failed: {e} (status={status_code})")
            raise WorkflowTriggerError(
                f"{action} failed: {e}",
                status_code=status_code,
                response_body=body
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {'data': data}

    def trigger_invoice_workflow(
        self,
        invoice_id: str,
        file_path: str,
        filename: str,
        file_type: str,
        source: str
    ) -> Dict[str, Any]:
        """
        Trigger the invoice-processing workflow

        Args:
            invoice_id: Invoice identifier echoed back in the callback
            file_path: Stored file to send (read fully, base64-encoded)
            filename: Original filename
            file_type: pdf, png, jpg or jpeg
            source: upload, whatsapp or email

        Returns:
            Dict with workflow_id, execution_id, status and the raw response
        """
        try:
            with open(file_path, 'rb') as f:
                file_bytes = f.read()
        except OSError as e:
            raise WorkflowTriggerError(f"n8n workflow trigger failed: cannot read {filename}: {e}") from e

        payload = {
            'invoiceId': invoice_id,
            'filename': filename,
            'fileType': file_type,
            'source': source,
            'fileData': base64.b64encode(file_bytes).decode('ascii'),
            'fileSize': len(file_bytes),
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'callbackUrl': f"{self.backend_url}/api/webhooks/n8n-callback",
        }

        logger.info(
            f"Triggering n8n workflow for invoice {invoice_id} "
            f"({filename}, {file_type}, {len(file_bytes)} bytes, source={source})"
        )
        data = self._post(self.invoice_webhook_url, payload, "n8n workflow trigger")

        result = {
            'workflow_id': data.get('workflowId') or 'invoice-processing',
            'execution_id': data.get('executionId') or generate_execution_id('exec'),
            'status': 'triggered',
            'response': data,
        }
        logger.info(f"n8n workflow triggered for invoice {invoice_id}: execution {result['execution_id']}")
        return result

    def trigger_whatsapp_workflow(
        self,
        group_id: str,
        message_id: str,
        sender: Optional[str],
        message: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
        timestamp: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Trigger the WhatsApp message-processing workflow

        The workflow downloads attachment media itself and reports back
        through /api/webhooks/whatsapp-callback.
        """
        attachments = attachments or []
        payload = {
            'type': 'whatsapp_message',
            'groupId': group_id,
            'messageId': message_id,
            'sender': sender,
            'message': message,
            'attachments': attachments,
            'timestamp': timestamp,
            'callbackUrl': f"{self.backend_url}/api/webhooks/whatsapp-callback",
        }

        logger.info(
            f"Triggering WhatsApp workflow for group {group_id}: message {message_id}, "
            f"{len(attachments)} attachment(s)"
        )
        data = self._post(self.whatsapp_webhook_url, payload, "WhatsApp workflow trigger")

        return {
            'workflow_id': data.get('workflowId') or 'whatsapp-processing',
            'execution_id': data.get('executionId') or generate_execution_id('whatsapp'),
            'status': 'triggered',
            'response': data,
        }

    def cancel_workflow(self, execution_id: str) -> Dict[str, Any]:
        """Stop a running n8n execution"""
        url = f"{self.base_url}/api/v1/executions/{execution_id}/stop"
        self._post(url, {}, "n8n workflow cancel")
        logger.info(f"Workflow execution cancelled: {execution_id}")
        return {
            'execution_id': execution_id,
            'status': 'cancelled',
            'cancelled_at': datetime.utcnow().isoformat() + 'Z',
        }


# Create client instance
n8n_client = N8nClient()


def get_n8n_client() -> N8nClient:
    """FastAPI dependency returning the shared client"""
    return n8n_client
