import unittest

from core.config.config import Config
from core.models.database import Invoice, WhatsAppGroup
from core.utils.error_handler import WorkflowTriggerError
from tests.base import ApiTestCase


def whatsapp_payload(messages, phone_number='15550001111'):
    return {
        'object': 'whatsapp_business_account',
        'entry': [{
            'id': 'waba-1',
            'changes': [{
                'field': 'messages',
                'value': {
                    'messaging_product': 'whatsapp',
                    'metadata': {'display_phone_number': phone_number, 'phone_number_id': 'pn-1'},
                    'messages': messages,
                },
            }],
        }],
    }


class TestN8nCallback(ApiTestCase):

    def _processing_invoice(self):
        invoice = self.create_invoice(status='processing', n8n_execution_id='e1')
        invoice.start_processing()
        self.session.commit()
        return invoice

    def test_failed_callback_stores_errors(self):
        invoice = self._processing_invoice()

        response = self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': invoice.id,
            'status': 'failed',
            'executionId': 'e1',
            'errors': ['OCR timeout'],
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'failed')
        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.status, 'failed')
        self.assertEqual(invoice.processing_errors, ['OCR timeout'])
        self.assertIsNotNone(invoice.processing_end_time)

    def test_failed_callback_without_errors_uses_generic_message(self):
        invoice = self._processing_invoice()

        self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': invoice.id,
            'status': 'failed',
            'executionId': 'e1',
        })

        self.assertEqual(self.reload(Invoice, invoice.id).processing_errors, ['Processing failed'])

    def test_confident_extraction_is_auto_validated(self):
        invoice = self._processing_invoice()

        response = self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': invoice.id,
            'status': 'processed',
            'executionId': 'e1',
            'extractedData': {
                'vendor': 'Acme GmbH',
                'invoiceNumber': 'INV-7',
                'date': '03/15/2024',
                'amount': 1250.5,
            },
            'confidenceScores': {'overall': 0.95, 'fields': {'vendor': 0.99}},
            'processingTime': 4200,
        })

        self.assertEqual(response.status_code, 200)
        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.status, 'validated')
        self.assertTrue(invoice.is_validated)
        self.assertEqual(invoice.extracted_data['vendor'], 'Acme GmbH')
        self.assertEqual(invoice.extracted_data['date'], '2024-03-15T00:00:00')
        self.assertEqual(invoice.extracted_data['currency'], 'USD')
        self.assertEqual(invoice.extracted_data['items'], [])
        self.assertEqual(invoice.confidence_scores['overall'], 0.95)
        self.assertGreaterEqual(invoice.processing_end_time, invoice.processing_start_time)

    def test_threshold_is_inclusive(self):
        invoice = self._processing_invoice()

        self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': invoice.id,
            'status': 'processed',
            'executionId': 'e1',
            'extractedData': {'vendor': 'Acme'},
            'confidenceScores': {'overall': Config.AUTO_VALIDATE_THRESHOLD},
        })

        self.assertEqual(self.reload(Invoice, invoice.id).status, 'validated')

    def test_low_confidence_extraction_is_processed(self):
        invoice = self._processing_invoice()

        self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': invoice.id,
            'status': 'processed',
            'executionId': 'e1',
            'extractedData': {'vendor': 'Acme', 'amount': 99},
            'confidenceScores': {'overall': 0.62},
        })

        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.status, 'processed')
        self.assertFalse(invoice.is_validated)

    def test_unknown_invoice_is_not_found(self):
        response = self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': 'missing',
            'status': 'failed',
            'executionId': 'e1',
        })

        self.assertEqual(response.status_code, 404)

    def test_missing_required_fields(self):
        invoice = self._processing_invoice()

        response = self.client.post("/api/webhooks/n8n-callback", json={'invoiceId': invoice.id})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Validation failed')
        self.assertEqual(self.reload(Invoice, invoice.id).status, 'processing')

    def test_callback_for_invoice_not_processing(self):
        invoice = self.create_invoice(status='validated', is_validated=True, extracted_data={'vendor': 'Acme'})

        response = self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': invoice.id,
            'status': 'failed',
            'executionId': 'e1',
            'errors': ['late duplicate'],
        })

        self.assertEqual(response.status_code, 409)
        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.status, 'validated')
        self.assertEqual(invoice.processing_errors, [])

    def test_late_result_for_failed_invoice_is_applied(self):
        invoice = self.create_invoice(status='failed', processing_errors=['n8n workflow trigger failed: timeout'])

        response = self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': invoice.id,
            'status': 'processed',
            'executionId': 'e9',
            'extractedData': {'vendor': 'Acme', 'amount': 410},
            'confidenceScores': {'overall': 0.95},
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'validated')
        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.status, 'validated')
        self.assertTrue(invoice.is_validated)
        self.assertEqual(invoice.extracted_data['vendor'], 'Acme')
        self.assertEqual(invoice.n8n_execution_id, 'e9')

    def test_result_for_uploaded_invoice_is_applied(self):
        invoice = self.create_invoice(status='uploaded')

        response = self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': invoice.id,
            'status': 'processed',
            'executionId': 'e1',
            'extractedData': {'vendor': 'Acme'},
            'confidenceScores': {'overall': 0.4},
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.reload(Invoice, invoice.id).status, 'processed')

    def test_confident_result_without_data_is_not_validated(self):
        invoice = self._processing_invoice()

        response = self.client.post("/api/webhooks/n8n-callback", json={
            'invoiceId': invoice.id,
            'status': 'processed',
            'executionId': 'e1',
            'confidenceScores': {'overall': 0.95},
        })

        self.assertEqual(response.status_code, 200)
        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.status, 'processed')
        self.assertFalse(invoice.is_validated)
        self.assertEqual(invoice.extracted_data, {})


class TestWhatsAppCallback(ApiTestCase):

    def test_updates_group_counters_and_invoices(self):
        self.create_group()
        first = self.create_invoice(status='processing', source='whatsapp', whatsapp_group_id='15550001111')
        second = self.create_invoice(status='processing', source='whatsapp', whatsapp_group_id='15550001111')

        response = self.client.post("/api/webhooks/whatsapp-callback", json={
            'groupId': '15550001111',
            'messageId': 'wamid.1',
            'status': 'processed',
            'invoices': [
                {
                    'invoiceId': first.id,
                    'status': 'processed',
                    'extractedData': {'vendor': 'Acme'},
                    'confidenceScores': {'overall': 0.5},
                },
                {'invoiceId': second.id, 'status': 'failed', 'errors': ['Unreadable scan']},
                {'invoiceId': 'missing', 'status': 'processed'},
            ],
        })

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['receivedInvoices'], 3)
        self.assertEqual(body['processedInvoices'], 2)

        self.assertEqual(self.reload(Invoice, first.id).status, 'processed')
        self.assertEqual(self.reload(Invoice, second.id).processing_errors, ['Unreadable scan'])

        group = self.session.query(WhatsAppGroup).filter_by(group_id='15550001111').one()
        self.session.refresh(group)
        self.assertEqual(group.stats['processedMessages'], 1)
        self.assertEqual(group.stats['successfulExtractions'], 3)

    def test_failed_message_counts_failure(self):
        self.create_group()

        self.client.post("/api/webhooks/whatsapp-callback", json={
            'groupId': '15550001111',
            'messageId': 'wamid.2',
            'status': 'failed',
            'errors': ['Media download failed'],
        })

        group = self.session.query(WhatsAppGroup).filter_by(group_id='15550001111').one()
        self.session.refresh(group)
        self.assertEqual(group.stats['failedExtractions'], 1)


class TestWhatsAppMessageWebhook(ApiTestCase):

    def test_document_message_creates_stub_and_triggers_workflow(self):
        self.create_group()

        response = self.client.post("/api/webhooks/whatsapp-message", json=whatsapp_payload([{
            'id': 'wamid.100',
            'from': '4915112345678',
            'timestamp': '1710000000',
            'type': 'document',
            'document': {'id': 'media-1', 'mime_type': 'application/pdf', 'filename': 'march.pdf'},
        }]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'processed')
        self.assertEqual(response.json()['invoicesCreated'], 1)

        stub = self.session.query(Invoice).one()
        self.assertEqual(stub.status, 'processing')
        self.assertEqual(stub.source, 'whatsapp')
        self.assertEqual(stub.file_size, 0)
        self.assertEqual(stub.file_type, 'pdf')
        self.assertEqual(stub.original_filename, 'march.pdf')
        self.assertEqual(stub.whatsapp_group_id, '15550001111')
        self.assertEqual(stub.whatsapp_message_id, 'wamid.100')
        self.assertEqual(stub.whatsapp_sender, '4915112345678')
        self.assertEqual(stub.whatsapp_media_id, 'media-1')
        self.assertEqual(stub.n8n_execution_id, 'wa-exec-1')

        kwargs = self.n8n.trigger_whatsapp_workflow.call_args.kwargs
        self.assertEqual(kwargs['group_id'], '15550001111')
        self.assertEqual(kwargs['attachments'][0]['invoiceId'], stub.id)
        self.assertEqual(kwargs['attachments'][0]['mediaId'], 'media-1')

        group = self.session.query(WhatsAppGroup).one()
        self.session.refresh(group)
        self.assertEqual(group.stats['totalMessages'], 1)
        self.assertEqual(group.stats['lastMessageDate'], '2024-03-09T16:00:00')
        self.assertIsNotNone(group.last_activity_at)

    def test_keyword_message_without_attachment_creates_no_stub(self):
        self.create_group()

        response = self.client.post("/api/webhooks/whatsapp-message", json=whatsapp_payload([{
            'id': 'wamid.101',
            'from': '4915112345678',
            'timestamp': '1710000000',
            'type': 'text',
            'text': {'body': 'Sending the INVOICE tomorrow'},
        }]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.session.query(Invoice).count(), 0)
        group = self.session.query(WhatsAppGroup).one()
        self.session.refresh(group)
        self.assertEqual(group.stats['totalMessages'], 1)

    def test_unmatched_message_is_ignored(self):
        self.create_group()

        self.client.post("/api/webhooks/whatsapp-message", json=whatsapp_payload([{
            'id': 'wamid.102',
            'from': '4915112345678',
            'timestamp': '1710000000',
            'text': {'body': 'lunch at noon?'},
        }]))

        group = self.session.query(WhatsAppGroup).one()
        self.session.refresh(group)
        self.assertEqual(group.stats['totalMessages'], 0)
        self.n8n.trigger_whatsapp_workflow.assert_not_called()

    def test_unknown_group_is_skipped(self):
        response = self.client.post("/api/webhooks/whatsapp-message", json=whatsapp_payload([{
            'id': 'wamid.103',
            'from': '4915112345678',
            'timestamp': '1710000000',
            'image': {'id': 'media-2', 'mime_type': 'image/jpeg'},
        }], phone_number='19990000000'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.session.query(Invoice).count(), 0)

    def test_inactive_group_is_skipped(self):
        self.create_group(is_active=False)

        self.client.post("/api/webhooks/whatsapp-message", json=whatsapp_payload([{
            'id': 'wamid.104',
            'image': {'id': 'media-3', 'mime_type': 'image/png'},
        }]))

        self.assertEqual(self.session.query(Invoice).count(), 0)

    def test_disallowed_attachment_type_creates_no_stub(self):
        self.create_group(allowed_file_types=['pdf'])

        self.client.post("/api/webhooks/whatsapp-message", json=whatsapp_payload([{
            'id': 'wamid.105',
            'image': {'id': 'media-4', 'mime_type': 'image/png'},
        }]))

        self.assertEqual(self.session.query(Invoice).count(), 0)

    def test_trigger_failure_marks_stubs_failed(self):
        self.create_group()
        self.n8n.trigger_whatsapp_workflow.side_effect = WorkflowTriggerError("WhatsApp workflow trigger failed: refused")

        response = self.client.post("/api/webhooks/whatsapp-message", json=whatsapp_payload([{
            'id': 'wamid.106',
            'image': {'id': 'media-5', 'mime_type': 'image/jpeg'},
        }]))

        self.assertEqual(response.status_code, 200)
        stub = self.session.query(Invoice).one()
        self.assertEqual(stub.status, 'failed')
        self.assertEqual(stub.original_filename, 'whatsapp_wamid.106')
        self.assertEqual(stub.processing_errors, ["WhatsApp workflow trigger failed: refused"])

    def test_status_update_is_acknowledged(self):
        payload = whatsapp_payload([])
        payload['entry'][0]['changes'][0]['value'].pop('messages')

        response = self.client.post("/api/webhooks/whatsapp-message", json=payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'acknowledged'})

    def test_malformed_payload(self):
        response = self.client.post("/api/webhooks/whatsapp-message", json={'object': 'whatsapp_business_account'})

        self.assertEqual(response.status_code, 400)

    def test_non_object_entries_are_rejected(self):
        for payload in ({'entry': ['garbage']}, {'entry': [{'changes': ['garbage']}]}, {'entry': 'garbage'}):
            with self.subTest(payload=payload):
                response = self.client.post("/api/webhooks/whatsapp-message", json=payload)

                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()['error'], 'Invalid WhatsApp webhook payload')

    def test_malformed_message_is_rejected(self):
        self.create_group()
        malformed = [
            {'id': 'wamid.200', 'text': 'invoice attached'},
            {'id': 'wamid.201', 'text': {'body': 42}},
            {'id': 'wamid.202', 'document': 'march.pdf'},
            'garbage',
        ]
        for message in malformed:
            with self.subTest(message=message):
                response = self.client.post("/api/webhooks/whatsapp-message", json=whatsapp_payload([message]))

                self.assertEqual(response.status_code, 400)

        self.assertEqual(self.session.query(Invoice).count(), 0)
        self.n8n.trigger_whatsapp_workflow.assert_not_called()


class TestWhatsAppVerify(ApiTestCase):

    def test_matching_token_echoes_challenge(self):
        response = self.client.get("/api/webhooks/whatsapp-verify", params={
            'hub.mode': 'subscribe',
            'hub.verify_token': Config.WHATSAPP_VERIFY_TOKEN,
            'hub.challenge': '1158201444',
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, '1158201444')

    def test_wrong_token_is_forbidden(self):
        response = self.client.get("/api/webhooks/whatsapp-verify", params={
            'hub.mode': 'subscribe',
            'hub.verify_token': 'nope',
            'hub.challenge': '1158201444',
        })

        self.assertEqual(response.status_code, 403)

    def test_wrong_mode_is_forbidden(self):
        response = self.client.get("/api/webhooks/whatsapp-verify", params={
            'hub.mode': 'unsubscribe',
            'hub.verify_token': Config.WHATSAPP_VERIFY_TOKEN,
            'hub.challenge': '1158201444',
        })

        self.assertEqual(response.status_code, 403)

    def test_missing_parameters(self):
        response = self.client.get("/api/webhooks/whatsapp-verify")

        self.assertEqual(response.status_code, 400)


if __name__ == '__main__':
    unittest.main()
