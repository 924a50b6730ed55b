import csv
import io
import unittest
from datetime import datetime, timedelta
from pathlib import Path

from core.models.database import Invoice
from core.utils.error_handler import WorkflowTriggerError
from tests.base import ApiTestCase


class InvoiceQueryTestCase(ApiTestCase):

    def seed(self):
        now = datetime.utcnow()
        self.acme = self.create_invoice(
            status='validated', is_validated=True, source='upload',
            extracted_data={'vendor': 'Acme GmbH', 'amount': 1200.0, 'currency': 'EUR'},
            confidence_scores={'overall': 0.95},
            created_at=now - timedelta(days=1)
        )
        self.globex = self.create_invoice(
            status='validated', is_validated=True, source='email',
            extracted_data={'vendor': 'Globex', 'amount': 80.0},
            confidence_scores={'overall': 0.91},
            created_at=now - timedelta(days=2)
        )
        self.initech = self.create_invoice(
            status='processed', source='upload',
            extracted_data={'vendor': 'Initech', 'amount': 560.0},
            confidence_scores={'overall': 0.7},
            created_at=now - timedelta(days=3)
        )
        self.stale = self.create_invoice(
            status='failed', source='upload', processing_errors=['OCR timeout'],
            created_at=now - timedelta(days=120)
        )


class TestListInvoices(InvoiceQueryTestCase):

    def test_filter_sort_and_limit(self):
        self.seed()

        response = self.client.get("/api/invoices", params={
            'status': 'validated', 'sortBy': 'amount', 'sortOrder': 'desc', 'limit': 5,
        })

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual([item['id'] for item in body['invoices']], [self.acme.id, self.globex.id])
        self.assertEqual(body['pagination'], {'total': 2, 'limit': 5, 'offset': 0, 'hasMore': False})

    def test_file_location_is_never_exposed(self):
        self.create_invoice(file_url='/srv/uploads/invoices/secret.pdf')

        item = self.client.get("/api/invoices").json()['invoices'][0]

        self.assertNotIn('fileUrl', item)
        self.assertNotIn('/srv/uploads', str(item))

    def test_vendor_substring_is_case_insensitive(self):
        self.seed()

        body = self.client.get("/api/invoices", params={'vendor': 'acme'}).json()

        self.assertEqual([item['id'] for item in body['invoices']], [self.acme.id])

    def test_amount_range_and_source(self):
        self.seed()

        body = self.client.get("/api/invoices", params={
            'source': 'upload', 'minAmount': 500, 'maxAmount': 1000,
        }).json()

        self.assertEqual([item['id'] for item in body['invoices']], [self.initech.id])

    def test_date_range_is_inclusive(self):
        created = [
            datetime(2024, 2, 29, 23, 59, 59),
            datetime(2024, 3, 1),
            datetime(2024, 3, 10, 12, 30),
            datetime(2024, 3, 20),
            datetime(2024, 3, 20, 0, 0, 1),
        ]
        invoices = [self.create_invoice(created_at=when) for when in created]

        body = self.client.get("/api/invoices", params={
            'dateFrom': '2024-03-01T00:00:00', 'dateTo': '2024-03-20T00:00:00',
            'sortBy': 'createdAt', 'sortOrder': 'asc',
        }).json()

        self.assertEqual([item['id'] for item in body['invoices']], [invoice.id for invoice in invoices[1:4]])
        self.assertEqual(body['pagination']['total'], 3)

    def test_open_ended_date_range(self):
        early = self.create_invoice(created_at=datetime(2024, 1, 5))
        late = self.create_invoice(created_at=datetime(2024, 6, 5))

        since = self.client.get("/api/invoices", params={'dateFrom': '2024-03-01T00:00:00'}).json()
        until = self.client.get("/api/invoices", params={'dateTo': '2024-03-01T00:00:00'}).json()

        self.assertEqual([item['id'] for item in since['invoices']], [late.id])
        self.assertEqual([item['id'] for item in until['invoices']], [early.id])

    def test_invalid_date_filter(self):
        response = self.client.get("/api/invoices", params={'dateFrom': 'yesterday'})

        self.assertEqual(response.status_code, 400)

    def test_pagination(self):
        self.seed()

        body = self.client.get("/api/invoices", params={'limit': 2, 'offset': 1}).json()

        self.assertEqual([item['id'] for item in body['invoices']], [self.globex.id, self.initech.id])
        self.assertTrue(body['pagination']['hasMore'])

    def test_sort_by_vendor_ascending(self):
        self.seed()

        body = self.client.get("/api/invoices", params={
            'status': 'validated', 'sortBy': 'vendor', 'sortOrder': 'asc',
        }).json()

        self.assertEqual([item['extractedData']['vendor'] for item in body['invoices']], ['Acme GmbH', 'Globex'])

    def test_invalid_status_filter(self):
        response = self.client.get("/api/invoices", params={'status': 'archived'})

        self.assertEqual(response.status_code, 400)

    def test_whatsapp_info_only_for_whatsapp_invoices(self):
        self.create_group()
        self.create_invoice(source='whatsapp', whatsapp_group_id='15550001111', whatsapp_sender='49151')
        self.create_invoice(source='upload')

        items = self.client.get("/api/invoices").json()['invoices']
        by_source = {item['source']: item for item in items}

        self.assertEqual(by_source['whatsapp']['whatsappInfo']['groupId'], '15550001111')
        self.assertEqual(by_source['whatsapp']['whatsappInfo']['sender'], '49151')
        self.assertNotIn('whatsappInfo', by_source['upload'])


class TestInvoiceDetail(InvoiceQueryTestCase):

    def test_detail_includes_error_lists(self):
        self.seed()

        response = self.client.get(f"/api/invoices/{self.stale.id}")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['processingErrors'], ['OCR timeout'])
        self.assertEqual(body['validationErrors'], [])
        self.assertEqual(body['retryCount'], 0)
        self.assertNotIn('fileUrl', body)

    def test_processing_time(self):
        start = datetime(2024, 5, 1, 12, 0, 0)
        invoice = self.create_invoice(
            status='processed',
            processing_start_time=start,
            processing_end_time=start + timedelta(seconds=4, milliseconds=250)
        )

        body = self.client.get(f"/api/invoices/{invoice.id}").json()

        self.assertEqual(body['processingTime'], 4250)

    def test_unknown_invoice(self):
        response = self.client.get("/api/invoices/missing")

        self.assertEqual(response.status_code, 404)


class TestValidation(ApiTestCase):

    def test_validating_processed_invoice(self):
        invoice = self.create_invoice(status='processed')

        response = self.client.put(f"/api/invoices/{invoice.id}/validate", json={'isValidated': True})

        self.assertEqual(response.status_code, 200)
        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.status, 'validated')
        self.assertTrue(invoice.is_validated)

    def test_unvalidating_returns_to_processed(self):
        invoice = self.create_invoice(status='validated', is_validated=True)

        self.client.put(f"/api/invoices/{invoice.id}/validate", json={
            'isValidated': False, 'validationErrors': ['VAT id does not match vendor'],
        })

        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.status, 'processed')
        self.assertFalse(invoice.is_validated)
        self.assertEqual(invoice.validation_errors, ['VAT id does not match vendor'])

    def test_other_statuses_are_left_alone(self):
        invoice = self.create_invoice(status='failed')

        self.client.put(f"/api/invoices/{invoice.id}/validate", json={'isValidated': True})

        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.status, 'failed')
        self.assertTrue(invoice.is_validated)

    def test_body_requires_flag(self):
        invoice = self.create_invoice(status='processed')

        response = self.client.put(f"/api/invoices/{invoice.id}/validate", json={})

        self.assertEqual(response.status_code, 400)


class TestDataEdit(ApiTestCase):

    def test_edit_merges_and_resets_validation(self):
        invoice = self.create_invoice(
            status='validated', is_validated=True, validation_errors=['old'],
            extracted_data={'vendor': 'Acme', 'amount': 100, 'currency': 'EUR'}
        )

        response = self.client.put(f"/api/invoices/{invoice.id}/data", json={
            'extractedData': {'amount': 120.5, 'dueDate': '2024-06-30'},
        })

        self.assertEqual(response.status_code, 200)
        invoice = self.reload(Invoice, invoice.id)
        self.assertEqual(invoice.extracted_data, {
            'vendor': 'Acme', 'amount': 120.5, 'currency': 'EUR', 'dueDate': '2024-06-30T00:00:00',
        })
        self.assertFalse(invoice.is_validated)
        self.assertEqual(invoice.validation_errors, [])
        self.assertEqual(invoice.status, 'processed')

    def test_edit_of_unknown_invoice(self):
        response = self.client.put("/api/invoices/missing/data", json={'extractedData': {'vendor': 'X'}})

        self.assertEqual(response.status_code, 404)


class TestDeleteInvoice(ApiTestCase):

    def test_delete_removes_row_and_file(self):
        path = self.create_stored_file()
        invoice = self.create_invoice(status='processed', file_url=str(path))

        response = self.client.delete(f"/api/invoices/{invoice.id}")

        self.assertEqual(response.status_code, 200)
        self.assertIsNone(self.reload(Invoice, invoice.id))
        self.assertFalse(Path(path).exists())
        self.n8n.cancel_workflow.assert_not_called()

    def test_delete_processing_invoice_stops_execution(self):
        invoice = self.create_invoice(status='processing', n8n_execution_id='exec-9')
        self.n8n.cancel_workflow.side_effect = WorkflowTriggerError("n8n workflow cancel failed")

        response = self.client.delete(f"/api/invoices/{invoice.id}")

        self.assertEqual(response.status_code, 200)
        self.n8n.cancel_workflow.assert_called_once_with('exec-9')
        self.assertIsNone(self.reload(Invoice, invoice.id))

    def test_delete_unknown_invoice(self):
        response = self.client.delete("/api/invoices/missing")

        self.assertEqual(response.status_code, 404)


class TestStats(InvoiceQueryTestCase):

    def test_overview_groupings_sum_to_total(self):
        self.seed()

        response = self.client.get("/api/invoices/stats/overview", params={'period': '30d'})

        self.assertEqual(response.status_code, 200)
        stats = response.json()['stats']
        self.assertEqual(stats['total'], 4)
        self.assertEqual(sum(item['count'] for item in stats['byStatus']), stats['total'])
        self.assertEqual(sum(item['count'] for item in stats['bySource']), stats['total'])
        self.assertIn({'status': 'validated', 'count': 2}, stats['byStatus'])

        period = stats['period']
        self.assertEqual(period['count'], 3)
        self.assertAlmostEqual(period['totalAmount'], 1840.0)
        self.assertAlmostEqual(period['avgAmount'], 1840.0 / 3)
        self.assertAlmostEqual(period['avgConfidence'], (0.95 + 0.91 + 0.7) / 3)
        self.assertEqual(sum(day['count'] for day in stats['dailyActivity']), 3)

    def test_one_year_period_includes_older_invoices(self):
        self.seed()

        stats = self.client.get("/api/invoices/stats/overview", params={'period': '1y'}).json()['stats']

        self.assertEqual(stats['period']['count'], 4)

    def test_empty_database(self):
        stats = self.client.get("/api/invoices/stats/overview").json()['stats']

        self.assertEqual(stats['total'], 0)
        self.assertEqual(stats['period']['avgAmount'], 0)
        self.assertEqual(stats['dailyActivity'], [])

    def test_unknown_period(self):
        response = self.client.get("/api/invoices/stats/overview", params={'period': '2w'})

        self.assertEqual(response.status_code, 400)


class TestExport(InvoiceQueryTestCase):

    def test_csv_export_with_selected_fields(self):
        self.seed()

        response = self.client.get("/api/invoices/export", params={
            'format': 'csv', 'status': 'validated', 'fields': 'vendor,amount', 'sortBy': 'amount',
        })

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers['content-type'].startswith('text/csv'))
        self.assertIn('attachment;', response.headers['content-disposition'])
        rows = list(csv.DictReader(io.StringIO(response.text)))
        self.assertEqual(rows, [
            {'vendor': 'Acme GmbH', 'amount': '1200.0'},
            {'vendor': 'Globex', 'amount': '80.0'},
        ])

    def test_json_export(self):
        self.seed()

        response = self.client.get("/api/invoices/export", params={'format': 'json', 'source': 'email'})

        self.assertEqual(response.status_code, 200)
        rows = response.json()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['id'], self.globex.id)
        self.assertEqual(rows[0]['confidence'], 0.91)

    def test_unknown_field(self):
        response = self.client.get("/api/invoices/export", params={'fields': 'vendor,fileUrl'})

        self.assertEqual(response.status_code, 400)
        self.assertIn('fileUrl', response.json()['error'])


if __name__ == '__main__':
    unittest.main()
