import json
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

import requests
from django.apps import apps
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from website.models import Project, SiteSetting
from payments.callbacks import CallbackVerifier, masked_payload, metadata_items
from payments.exceptions import InvalidAmount, InvalidPhoneNumber, ProviderError
from payments.models import Donation, ProviderCallback, ReconciliationTask
from payments.mpesa import (
    LiveProvider, PaymentProvider, PushResponse, QueryResult, SimulatedProvider,
    billable_amount, build_provider, clean_phone, mask_phone, normalize_phone,
    outcome_for_result_code, stk_password, validate_amount, validate_phone,
)
from payments.services import PaymentServices

SECRET = 's3cret'


class FakeProvider(PaymentProvider):
    name = 'fake'

    def __init__(self):
        self.pushes = []
        self.queries = []
        self.push_error = None
        self.next_query = QueryResult(status='processing', eta_seconds=20)

    def initiate(self, phone, amount, reference, description):
        if self.push_error:
            raise self.push_error
        self.pushes.append((phone, amount, reference))
        n = len(self.pushes)
        return PushResponse(
            merchant_request_id=f'M-{n}',
            checkout_request_id=f'ws_CO_TEST_{n}',
            response_code='0',
            response_description='Success. Request accepted for processing',
            customer_message='Success. Request accepted for processing',
        )

    def query(self, checkout_request_id, initiated_at=None):
        self.queries.append(checkout_request_id)
        if isinstance(self.next_query, Exception):
            raise self.next_query
        return self.next_query

    def check_credentials(self):
        return {'ok': True, 'provider': self.name, 'expires_in': '3599'}


def stk_callback(checkout_request_id, code=0, amount=500, receipt='QKJ4ABC123'):
    stk = {
        'MerchantRequestID': 'M-1',
        'CheckoutRequestID': checkout_request_id,
        'ResultCode': code,
        'ResultDesc': 'The service request is processed successfully.' if code == 0 else 'Request cancelled by user',
    }
    if code == 0:
        stk['CallbackMetadata'] = {'Item': [
            {'Name': 'Amount', 'Value': amount},
            {'Name': 'MpesaReceiptNumber', 'Value': receipt},
            {'Name': 'TransactionDate', 'Value': 20240101120000},
            {'Name': 'PhoneNumber', 'Value': 254712345678},
        ]}
    return json.dumps({'Body': {'stkCallback': stk}})


class PhoneAndAmountTests(SimpleTestCase):
    def test_normalize_phone_variants(self):
        self.assertEqual(normalize_phone('0712345678'), '254712345678')
        self.assertEqual(normalize_phone('+254 712 345 678'), '254712345678')
        self.assertEqual(normalize_phone('712345678'), '254712345678')
        self.assertEqual(normalize_phone('0112345678'), '254112345678')
        self.assertEqual(normalize_phone('254712345678'), '254712345678')

    def test_validate_phone(self):
        self.assertTrue(validate_phone('0712345678'))
        self.assertTrue(validate_phone('0112345678'))
        self.assertFalse(validate_phone('0812345678'))
        self.assertFalse(validate_phone('12345'))
        self.assertFalse(validate_phone(''))
        with self.assertRaises(InvalidPhoneNumber):
            clean_phone('07123')

    def test_mask_phone_hides_middle_digits(self):
        masked = mask_phone('254712345678')
        self.assertTrue(masked.startswith('25471'))
        self.assertTrue(masked.endswith('678'))
        self.assertNotIn('2345', masked)

    def test_amount_bounds(self):
        for bad in (0, -5, '0', 1000001, 'abc', None, True, 'NaN', '100.555'):
            with self.subTest(amount=bad):
                with self.assertRaises(InvalidAmount):
                    validate_amount(bad, 1000000)
        self.assertEqual(validate_amount(1000000, 1000000), Decimal('1000000'))
        self.assertEqual(validate_amount('250.50', 1000000), Decimal('250.50'))
        with self.assertRaises(InvalidAmount):
            validate_amount(5, 1000000, floor=10)

    def test_billable_amount_rounds_half_up(self):
        self.assertEqual(billable_amount(Decimal('10.50')), 11)
        self.assertEqual(billable_amount(Decimal('10.49')), 10)
        self.assertEqual(billable_amount(500), 500)

    def test_result_code_mapping(self):
        self.assertEqual(outcome_for_result_code(0), 'completed')
        self.assertEqual(outcome_for_result_code('0'), 'completed')
        self.assertEqual(outcome_for_result_code('1032'), 'cancelled')
        self.assertEqual(outcome_for_result_code(1), 'failed')
        self.assertEqual(outcome_for_result_code(None), 'failed')

    def test_stk_password(self):
        # base64("174379" + "passkey" + "20240101120000")
        self.assertEqual(
            stk_password('174379', 'passkey', '20240101120000'),
            'MTc0Mzc5cGFzc2tleTIwMjQwMTAxMTIwMDAw',
        )


class CallbackVerifierTests(SimpleTestCase):
    def test_verify_accepts_hex_and_prefixed_signature(self):
        verifier = CallbackVerifier(SECRET)
        body = b'{"Body": {}}'
        sig = verifier.sign(body)
        self.assertTrue(verifier.verify(body, sig))
        self.assertTrue(verifier.verify(body, 'sha256=' + sig.upper()))

    def test_verify_rejects_bad_or_missing_signature(self):
        verifier = CallbackVerifier(SECRET)
        self.assertFalse(verifier.verify(b'{}', 'deadbeef'))
        self.assertFalse(verifier.verify(b'{}', None))
        self.assertFalse(CallbackVerifier('').verify(b'{}', CallbackVerifier('').sign(b'{}')))

    def test_disabled_verifier_accepts_anything(self):
        self.assertTrue(CallbackVerifier('', disabled=True).verify(b'{}', None))

    def test_metadata_and_masking(self):
        payload = json.loads(stk_callback('ws_CO_1'))
        stk = payload['Body']['stkCallback']
        self.assertEqual(metadata_items(stk)['MpesaReceiptNumber'], 'QKJ4ABC123')
        masked = masked_payload(payload)
        items = {i['Name']: i['Value'] for i in masked['Body']['stkCallback']['CallbackMetadata']['Item']}
        self.assertNotEqual(items['PhoneNumber'], 254712345678)
        # Original left untouched
        self.assertEqual(metadata_items(stk)['PhoneNumber'], 254712345678)


def _response(status, data):
    resp = mock.Mock(ok=status < 400, status_code=status)
    resp.json.return_value = data
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f'{status} error')
    return resp


class LiveProviderTests(SimpleTestCase):
    def setUp(self):
        self.session = mock.Mock()
        self.session.get.return_value = _response(200, {'access_token': 'tok', 'expires_in': '3599'})
        self.provider = LiveProvider(
            base_url='https://sandbox.safaricom.co.ke/',
            consumer_key='key',
            consumer_secret='secret',
            shortcode='174379',
            passkey='passkey',
            callback_url='https://example.com/api/mpesa/callback',
            timeout=5,
            session=self.session,
        )

    def test_initiate_sends_stk_push(self):
        self.session.post.return_value = _response(200, {
            'MerchantRequestID': '29115-34620561-1',
            'CheckoutRequestID': 'ws_CO_191220191020363925',
            'ResponseCode': '0',
            'ResponseDescription': 'Success. Request accepted for processing',
            'CustomerMessage': 'Success. Request accepted for processing',
        })
        push = self.provider.initiate('254712345678', Decimal('100.50'), 'DONATION-1', 'Donation to Water')
        self.assertTrue(push.accepted)
        self.assertEqual(push.checkout_request_id, 'ws_CO_191220191020363925')
        self.assertEqual(push.as_dict()['ResponseCode'], '0')

        url = self.session.post.call_args[0][0]
        payload = self.session.post.call_args[1]['json']
        headers = self.session.post.call_args[1]['headers']
        self.assertEqual(url, 'https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest')
        self.assertEqual(payload['Amount'], 101)
        self.assertEqual(payload['PartyA'], '254712345678')
        self.assertEqual(payload['PartyB'], '174379')
        self.assertEqual(payload['AccountReference'], 'DONATION-1')
        self.assertEqual(headers['Authorization'], 'Bearer tok')
        auth = self.session.get.call_args[1]['headers']['Authorization']
        self.assertTrue(auth.startswith('Basic '))

    def test_initiate_rejected_raises_provider_error(self):
        self.session.post.return_value = _response(400, {'errorCode': '400.002.02', 'errorMessage': 'Bad Request'})
        with self.assertRaises(ProviderError) as ctx:
            self.provider.initiate('254712345678', 100, 'DONATION-1', 'Donation')
        self.assertIn('Bad Request', str(ctx.exception))

    def test_oauth_failure_raises_provider_error(self):
        self.session.get.side_effect = requests.ConnectionError('unreachable')
        with self.assertRaises(ProviderError):
            self.provider.initiate('254712345678', 100, 'DONATION-1', 'Donation')
        self.session.post.assert_not_called()

    def test_query_in_progress(self):
        self.session.post.return_value = _response(500, {
            'errorCode': '500.001.1001', 'errorMessage': 'The transaction is being processed',
        })
        result = self.provider.query('ws_CO_1')
        self.assertEqual(result.status, 'processing')
        self.assertFalse(result.is_final)

    def test_query_cancelled(self):
        self.session.post.return_value = _response(200, {'ResultCode': '1032', 'ResultDesc': 'Request cancelled by user'})
        result = self.provider.query('ws_CO_1')
        self.assertEqual(result.status, 'cancelled')
        self.assertTrue(result.is_final)

    def test_check_credentials(self):
        self.assertEqual(self.provider.check_credentials()['expires_in'], '3599')


class SimulatedProviderTests(SimpleTestCase):
    def test_settles_after_delay(self):
        provider = SimulatedProvider(settle_after=30)
        push = provider.initiate('254712345678', 100, 'DONATION-1', 'Donation')
        self.assertTrue(push.checkout_request_id.startswith('ws_CO_SIM_'))
        pending = provider.query(push.checkout_request_id, initiated_at=timezone.now())
        self.assertEqual(pending.status, 'processing')
        self.assertGreater(pending.eta_seconds, 0)
        done = provider.query(push.checkout_request_id, initiated_at=timezone.now() - timedelta(seconds=31))
        self.assertEqual(done.status, 'completed')
        self.assertTrue(done.receipt_number.startswith('SIM'))

    @override_settings(MPESA_PROVIDER='nope')
    def test_unknown_provider_name(self):
        from django.conf import settings
        with self.assertRaises(ValueError):
            build_provider(settings)


@override_settings(
    MPESA_CALLBACK_SECRET=SECRET,
    MPESA_CALLBACK_VERIFY_DISABLED=False,
    PAYMENT_EXPIRE_AFTER=120,
    PAYMENT_POLL_INTERVAL=10,
)
class DonationFlowTestCase(TestCase):
    def setUp(self):
        self.provider = FakeProvider()
        self.services = PaymentServices.build(self.provider)
        patcher = mock.patch.object(apps.get_app_config('payments'), 'services', self.services)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.project = Project.objects.create(
            title='Clean Water Initiative',
            description='Wells for rural communities.',
            target_amount=Decimal('50000'),
            category='Health & Environment',
        )
        self.verifier = CallbackVerifier(SECRET)

    def start(self, amount=500, project=None):
        donation, _ = self.services.initiator.start(
            project_id=(project or self.project).pk,
            amount=amount,
            phone_number='0712345678',
        )
        return donation

    def post_callback(self, body, signature=None):
        return self.client.post(
            reverse('payments:callback'),
            data=body,
            content_type='application/json',
            HTTP_X_CALLBACK_SIGNATURE=self.verifier.sign(body) if signature is None else signature,
        )

    def poll(self, donation, **params):
        return self.client.get(reverse('payments:donation_status'), {'donation_id': donation.pk, **params})

    def total(self):
        self.project.refresh_from_db()
        return self.project.current_amount


class InitiateDonationTests(DonationFlowTestCase):
    def create(self, **overrides):
        data = {
            'project_id': self.project.pk,
            'amount': 500,
            'phone_number': '0712345678',
            'donor_name': 'Jane',
            'donor_email': 'jane@example.com',
        }
        data.update(overrides)
        return self.client.post(reverse('payments:donations'), data=json.dumps(data), content_type='application/json')

    def test_create_initiates_push(self):
        resp = self.create()
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body['mpesa_response']['ResponseCode'], '0')
        self.assertEqual(body['status'], 'pending')
        donation = Donation.objects.get(pk=body['donation_id'])
        self.assertEqual(donation.status, Donation.STATUS_PENDING)
        self.assertEqual(donation.checkout_request_id, body['checkout_request_id'])
        self.assertEqual(donation.amount, Decimal('500'))
        self.assertEqual(self.provider.pushes[0][0], '254712345678')
        self.assertEqual(self.provider.pushes[0][2], f'DONATION-{donation.pk}')
        task = donation.reconciliation
        self.assertEqual(task.state, ReconciliationTask.STATE_QUEUED)
        self.assertEqual(task.deadline, donation.created_at + timedelta(seconds=120))

    def test_invalid_phone_rejected(self):
        resp = self.create(phone_number='12345')
        self.assertEqual(resp.status_code, 400)
        self.assertIn('phone', resp.json()['error'].lower())
        self.assertFalse(Donation.objects.exists())

    def test_amount_bounds_enforced(self):
        for amount in (0, -10, 1000001):
            with self.subTest(amount=amount):
                self.assertEqual(self.create(amount=amount).status_code, 400)
        self.assertFalse(Donation.objects.exists())
        self.assertEqual(self.create(amount=1000000).status_code, 201)

    def test_missing_fields(self):
        resp = self.create(phone_number='')
        self.assertEqual(resp.status_code, 400)
        self.assertIn('Missing required fields', resp.json()['error'])

    def test_inactive_project(self):
        self.project.status = Project.STATUS_PAUSED
        self.project.save()
        resp = self.create()
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()['error'], 'Project not found or not active')

    def test_invalid_json(self):
        resp = self.client.post(reverse('payments:donations'), data='{nope', content_type='application/json')
        self.assertEqual(resp.status_code, 400)

    def test_provider_failure_marks_donation_failed(self):
        self.provider.push_error = ProviderError('STK Push failed: Bad Request')
        resp = self.create()
        self.assertEqual(resp.status_code, 502)
        donation = Donation.objects.get(pk=resp.json()['donation_id'])
        self.assertEqual(donation.status, Donation.STATUS_FAILED)
        self.assertEqual(donation.reconciliation.state, ReconciliationTask.STATE_RESOLVED)

    def test_rejects_sub_cent_amount(self):
        resp = self.create(amount='100.555')
        self.assertEqual(resp.status_code, 400)
        self.assertIn('decimal places', resp.json()['error'])
        self.assertFalse(Donation.objects.exists())

    def test_amount_bounds_read_from_ledger_database(self):
        with mock.patch.object(SiteSetting.objects, 'using', wraps=SiteSetting.objects.using) as using:
            self.services.initiator.amount_bounds()
        self.assertEqual([c.args for c in using.call_args_list], [(self.services.ledger.using,)] * 2)

    def test_list_rejects_negative_limit(self):
        resp = self.client.get(reverse('payments:donations'), {'limit': -1})
        self.assertEqual(resp.status_code, 400)

    def test_list_hides_contact_and_correlation(self):
        donation = self.start()
        resp = self.client.get(reverse('payments:donations'), {'project_id': self.project.pk})
        self.assertEqual(resp.status_code, 200)
        row = resp.json()[0]
        self.assertEqual(row['id'], donation.pk)
        self.assertIsNone(row['phone_number'])
        self.assertIsNone(row['donor_email'])
        self.assertEqual(row['mpesa_transaction_id'], 'PENDING')
        self.assertEqual(row['donor_name'], 'Anonymous')


class CallbackTests(DonationFlowTestCase):
    def test_success_completes_and_counts_once(self):
        donation = self.start()
        body = stk_callback(donation.checkout_request_id)
        resp = self.post_callback(body)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {'ResultCode': 0, 'ResultDesc': 'Callback processed successfully'})
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_COMPLETED)
        self.assertEqual(donation.receipt_number, 'QKJ4ABC123')
        self.assertEqual(self.total(), Decimal('500'))

        # Redelivery
        resp = self.post_callback(body)
        self.assertEqual(resp.json()['ResultCode'], 0)
        self.assertEqual(self.total(), Decimal('500'))
        outcomes = list(ProviderCallback.objects.order_by('received_at', 'id').values_list('outcome', flat=True))
        self.assertEqual(outcomes, [ProviderCallback.OUTCOME_APPLIED, ProviderCallback.OUTCOME_DUPLICATE])

    def test_bad_signature_rejected(self):
        donation = self.start()
        resp = self.post_callback(stk_callback(donation.checkout_request_id), signature='0' * 64)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()['ResultCode'], 1)
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_PENDING)
        record = ProviderCallback.objects.get()
        self.assertFalse(record.signature_valid)
        self.assertEqual(record.outcome, ProviderCallback.OUTCOME_REJECTED)

    def test_missing_signature_rejected(self):
        donation = self.start()
        resp = self.client.post(
            reverse('payments:callback'), data=stk_callback(donation.checkout_request_id),
            content_type='application/json',
        )
        self.assertEqual(resp.status_code, 403)

    def test_non_zero_result_fails(self):
        donation = self.start()
        self.post_callback(stk_callback(donation.checkout_request_id, code=1032))
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_FAILED)
        self.assertEqual(self.total(), Decimal('0'))

    def test_amount_mismatch_fails(self):
        donation = self.start(amount=500)
        self.post_callback(stk_callback(donation.checkout_request_id, amount=5))
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_FAILED)
        self.assertEqual(donation.failure_reason, 'amount_mismatch')
        self.assertEqual(self.total(), Decimal('0'))

    def test_fractional_amount_matches_billed_amount(self):
        donation = self.start(amount='100.50')
        self.post_callback(stk_callback(donation.checkout_request_id, amount=101))
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_COMPLETED)
        self.assertEqual(self.total(), Decimal('100.50'))

    def test_unknown_checkout_acknowledged(self):
        resp = self.post_callback(stk_callback('ws_CO_UNKNOWN'))
        self.assertEqual(resp.json()['ResultCode'], 0)
        self.assertEqual(ProviderCallback.objects.get().outcome, ProviderCallback.OUTCOME_UNKNOWN)

    def test_invalid_format_acknowledged(self):
        resp = self.post_callback(json.dumps({'foo': 'bar'}))
        self.assertEqual(resp.json(), {'ResultCode': 0, 'ResultDesc': 'Invalid callback format'})

    def test_processing_error_acknowledged(self):
        donation = self.start()
        with mock.patch.object(self.services.ledger, 'settle', side_effect=RuntimeError('db down')):
            resp = self.post_callback(stk_callback(donation.checkout_request_id))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['ResultCode'], 0)
        self.assertEqual(resp.json()['ResultDesc'], 'Callback received but processing failed')

    def test_timeout_expires_donation(self):
        donation = self.start()
        body = json.dumps({'Body': {'stkCallback': {'CheckoutRequestID': donation.checkout_request_id}}})
        resp = self.client.put(
            reverse('payments:callback'), data=body, content_type='application/json',
            HTTP_X_CALLBACK_SIGNATURE=self.verifier.sign(body),
        )
        self.assertEqual(resp.json()['ResultCode'], 0)
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_EXPIRED)

    @override_settings(MPESA_CALLBACK_VERIFY_DISABLED=True)
    def test_verification_can_be_disabled(self):
        services = PaymentServices.build(self.provider)
        with mock.patch.object(apps.get_app_config('payments'), 'services', services):
            donation = self.start()
            self.post_callback(stk_callback(donation.checkout_request_id), signature='')
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_COMPLETED)


class StatusReconciliationTests(DonationFlowTestCase):
    def test_open_donation_reported_processing(self):
        donation = self.start()
        resp = self.poll(donation, checkout_request_id=donation.checkout_request_id)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['status'], 'processing')
        self.assertEqual(body['remaining_time'], 20)
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_PROCESSING)
        self.assertEqual(ReconciliationTask.objects.get(donation=donation).attempts, 1)

    def test_query_result_completes_then_terminal_reads_are_stable(self):
        donation = self.start()
        self.provider.next_query = QueryResult(status='completed', result_code='0', receipt_number='QAB12345')
        body = self.poll(donation).json()
        self.assertEqual(body['status'], 'completed')
        self.assertEqual(body['donation']['transaction_id'], 'QAB12345')
        self.assertEqual(self.total(), Decimal('500'))

        queries = len(self.provider.queries)
        self.provider.next_query = QueryResult(status='failed', result_code='1')
        again = self.poll(donation).json()
        self.assertEqual(again, body)
        self.assertEqual(len(self.provider.queries), queries)
        self.assertEqual(self.total(), Decimal('500'))

    def test_cancelled_by_query(self):
        donation = self.start()
        self.provider.next_query = QueryResult(status='cancelled', result_code='1032', result_desc='Cancelled')
        body = self.poll(donation).json()
        self.assertFalse(body['success'])
        self.assertEqual(body['status'], 'cancelled')

    def test_provider_error_keeps_donation_open(self):
        donation = self.start()
        self.provider.next_query = ProviderError('timeout')
        body = self.poll(donation).json()
        self.assertEqual(body['status'], 'processing')
        self.assertLessEqual(body['remaining_time'], 120)
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_PENDING)

    def test_expiry_leaves_total_unaffected(self):
        donation = self.start()
        ReconciliationTask.objects.filter(donation=donation).update(deadline=timezone.now() - timedelta(seconds=1))
        body = self.poll(donation).json()
        self.assertEqual(body['status'], 'expired')
        self.assertFalse(body['success'])
        self.assertEqual(self.provider.queries, [])

        # A late success callback no longer counts
        self.post_callback(stk_callback(donation.checkout_request_id))
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_EXPIRED)
        self.assertEqual(self.total(), Decimal('0'))

    def test_checkout_mismatch(self):
        donation = self.start()
        self.assertEqual(self.poll(donation, checkout_request_id='ws_CO_OTHER').status_code, 400)

    def test_missing_or_unknown_donation(self):
        resp = self.client.get(reverse('payments:donation_status'))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'Donation ID is required')
        self.assertEqual(self.client.get(reverse('payments:donation_status'), {'donation_id': 999}).status_code, 404)

    def test_reconcile_command_settles_due_donations(self):
        donation = self.start()
        ReconciliationTask.objects.filter(donation=donation).update(next_check_at=timezone.now() - timedelta(seconds=1))
        self.provider.next_query = QueryResult(status='completed', result_code='0', receipt_number='QCMD1')
        out = StringIO()
        call_command('reconcile_donations', '--once', stdout=out)
        self.assertIn('completed=1', out.getvalue())
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_COMPLETED)
        self.assertEqual(ReconciliationTask.objects.get(donation=donation).state, ReconciliationTask.STATE_RESOLVED)

    def test_reconcile_command_skips_tasks_not_due(self):
        donation = self.start()
        out = StringIO()
        call_command('reconcile_donations', '--once', stdout=out)
        self.assertIn('nothing due', out.getvalue())
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_PENDING)


class LedgerTests(DonationFlowTestCase):
    def test_settle_is_compare_and_set(self):
        donation = self.start()
        ledger = self.services.ledger
        self.assertTrue(ledger.settle(donation, Donation.STATUS_COMPLETED, receipt='R1'))
        stale = Donation.objects.get(pk=donation.pk)
        stale.status = Donation.STATUS_PENDING
        self.assertFalse(ledger.settle(stale, Donation.STATUS_COMPLETED, receipt='R2'))
        self.assertEqual(stale.status, Donation.STATUS_COMPLETED)
        self.assertEqual(self.total(), Decimal('500'))

    def test_settle_rejects_open_target(self):
        donation = self.start()
        with self.assertRaises(ValueError):
            self.services.ledger.settle(donation, Donation.STATUS_PROCESSING)

    def test_total_equals_sum_of_completed(self):
        ledger = self.services.ledger
        amounts = [(100, Donation.STATUS_COMPLETED), (250, Donation.STATUS_FAILED),
                   (75, Donation.STATUS_COMPLETED), (40, Donation.STATUS_EXPIRED)]
        for amount, status in amounts:
            ledger.settle(self.start(amount=amount), status)
        self.start(amount=999)
        self.assertEqual(self.total(), Decimal('175'))
        self.assertEqual(self.project.completed_total(), self.total())

        Project.objects.filter(pk=self.project.pk).update(current_amount=Decimal('1'))
        drifted = ledger.recompute_all()
        self.assertEqual(drifted, [(self.project.pk, Decimal('1.00'), Decimal('175'))])
        self.assertEqual(self.total(), Decimal('175'))

    def test_recompute_after_increment_stays_consistent(self):
        ledger = self.services.ledger
        ledger.settle(self.start(amount='120.25'), Donation.STATUS_COMPLETED)
        ledger.settle(self.start(amount=80), Donation.STATUS_COMPLETED)
        self.assertEqual(self.project.recompute_total(), Decimal('200.25'))
        self.assertEqual(self.total(), Decimal('200.25'))
        ledger.settle(self.start(amount=50), Donation.STATUS_COMPLETED)
        self.assertEqual(self.total(), Decimal('250.25'))
        self.assertEqual(self.project.recompute_total(), self.project.completed_total())

    def test_recompute_without_completed_donations_is_zero(self):
        self.start()
        Project.objects.filter(pk=self.project.pk).update(current_amount=Decimal('40'))
        self.assertEqual(self.project.recompute_total(), Decimal('0'))
        self.assertEqual(self.total(), Decimal('0'))


class DonationAdminTests(DonationFlowTestCase):
    def test_amount_and_project_are_read_only(self):
        donation = self.start()
        other = Project.objects.create(
            title='School Library', description='Books.', target_amount=Decimal('1000'), category='Education',
        )
        self.client.force_login(get_user_model().objects.create_superuser('root', 'root@example.com', 'pw'))
        url = reverse('admin:payments_donation_change', args=[donation.pk])
        resp = self.client.post(url, {'donor_name': 'Jane', 'amount': '9999', 'project': other.pk, '_save': 'Save'})
        self.assertEqual(resp.status_code, 302)
        donation.refresh_from_db()
        self.assertEqual(donation.amount, Decimal('500'))
        self.assertEqual(donation.project_id, self.project.pk)
        self.assertEqual(donation.donor_name, 'Jane')



class StaffEndpointTests(DonationFlowTestCase):
    def setUp(self):
        super().setUp()
        self.staff = get_user_model().objects.create_user('admin', 'admin@example.com', 'pw', is_staff=True)

    def manual(self, donation, status, transaction_id='MANUAL1'):
        return self.client.post(
            reverse('payments:donation_status'),
            data=json.dumps({'donation_id': donation.pk, 'status': status, 'transaction_id': transaction_id}),
            content_type='application/json',
        )

    def test_manual_update_requires_staff(self):
        donation = self.start()
        self.assertEqual(self.manual(donation, 'completed').status_code, 401)
        self.client.force_login(get_user_model().objects.create_user('bob', 'bob@example.com', 'pw'))
        self.assertEqual(self.manual(donation, 'completed').status_code, 403)

    def test_manual_update(self):
        donation = self.start()
        self.client.force_login(self.staff)
        resp = self.manual(donation, 'completed')
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()['success'])
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_COMPLETED)
        self.assertEqual(donation.receipt_number, 'MANUAL1')
        self.assertEqual(self.total(), Decimal('500'))
        # Already terminal
        self.assertEqual(self.manual(donation, 'failed').status_code, 409)
        self.assertEqual(self.total(), Decimal('500'))

    def test_manual_update_rejects_open_status(self):
        donation = self.start()
        self.client.force_login(self.staff)
        self.assertEqual(self.manual(donation, 'processing').status_code, 400)

    def test_manual_notification(self):
        donation = self.start()
        self.client.force_login(self.staff)
        resp = self.client.put(
            reverse('payments:notification'),
            data=json.dumps({'donation_id': donation.pk, 'transaction_id': 'QMANUAL9'}),
            content_type='application/json',
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['donation_id'], donation.pk)
        donation.refresh_from_db()
        self.assertEqual(donation.status, Donation.STATUS_COMPLETED)
        self.assertEqual(donation.receipt_number, 'QMANUAL9')

    def test_config_test(self):
        self.client.force_login(self.staff)
        resp = self.client.get(reverse('payments:config_test'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['config']['provider'], 'fake')

    def test_config_test_reports_provider_failure(self):
        self.client.force_login(self.staff)
        with mock.patch.object(self.provider, 'check_credentials', side_effect=ProviderError('bad key')):
            resp = self.client.get(reverse('payments:config_test'))
        self.assertEqual(resp.status_code, 502)
        self.assertFalse(resp.json()['success'])

    def test_donations_summary(self):
        self.services.ledger.settle(self.start(amount=300), Donation.STATUS_COMPLETED)
        self.start()
        self.client.force_login(self.staff)
        body = self.client.get(reverse('payments:donations_summary')).json()
        self.assertEqual(body['counts']['total'], 2)
        self.assertEqual(body['counts']['completed'], 1)
        self.assertEqual(body['counts']['pending'], 1)
        self.assertEqual(body['completed_amount'], 300.0)


__all__ = [
    'PhoneAndAmountTests',
    'CallbackVerifierTests',
    'LiveProviderTests',
    'SimulatedProviderTests',
    'InitiateDonationTests',
    'CallbackTests',
    'StatusReconciliationTests',
    'LedgerTests',
    'DonationAdminTests',
    'StaffEndpointTests',
]
