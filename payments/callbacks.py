"""Inbound M-Pesa STK callbacks.

Payload shape::

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...", "CheckoutRequestID": "...",
        "ResultCode": 0, "ResultDesc": "...",
        "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 500}, ...]}}}}

Daraja does not sign its callbacks, so the callback URL is expected to sit
behind a relay that adds ``X-Callback-Signature``: the hex HMAC-SHA256 of the
raw body keyed with ``MPESA_CALLBACK_SECRET``. Nothing is processed before
that signature is checked.
"""
import copy
import hashlib
import hmac
import json
from decimal import Decimal, InvalidOperation

import structlog

from .exceptions import SignatureError
from .models import Donation, ProviderCallback
from .mpesa import billable_amount, mask_phone

logger = structlog.get_logger(__name__)

ACK_OK = 'Callback processed successfully'
ACK_FAILED = 'Callback received but processing failed'


class CallbackVerifier:
    header = 'X-Callback-Signature'

    def __init__(self, secret, disabled=False):
        self.secret = secret or ''
        self.disabled = disabled

    def sign(self, body):
        if isinstance(body, str):
            body = body.encode('utf-8')
        return hmac.new(self.secret.encode('utf-8'), body, hashlib.sha256).hexdigest()

    def verify(self, body, signature):
        if self.disabled:
            return True
        if not self.secret or not signature:
            return False
        signature = signature.strip().lower()
        if signature.startswith('sha256='):
            signature = signature[len('sha256='):]
        return hmac.compare_digest(self.sign(body), signature)


def metadata_items(stk):
    """Flatten CallbackMetadata.Item into a {Name: Value} dict."""
    meta = stk.get('CallbackMetadata') or {}
    items = meta.get('Item') if isinstance(meta, dict) else None
    values = {}
    for item in items or []:
        if isinstance(item, dict) and item.get('Name'):
            values[item['Name']] = item.get('Value')
    return values


def masked_payload(payload):
    payload = copy.deepcopy(payload) if isinstance(payload, dict) else {}
    stk = (payload.get('Body') or {}).get('stkCallback') or {}
    items = (stk.get('CallbackMetadata') or {}).get('Item') if isinstance(stk, dict) else None
    for item in items or []:
        if isinstance(item, dict) and item.get('Name') == 'PhoneNumber':
            item['Value'] = mask_phone(item.get('Value'))
    return payload


class CallbackReceiver:

    def __init__(self, ledger, verifier):
        self.ledger = ledger
        self.verifier = verifier

    def _record(self, kind, payload, signature_valid, outcome, stk=None):
        stk = stk or {}
        result_code = stk.get('ResultCode')
        try:
            result_code = int(result_code) if result_code is not None else None
        except (TypeError, ValueError):
            result_code = None
        return ProviderCallback.objects.using(self.ledger.using).create(
            kind=kind,
            checkout_request_id=str(stk.get('CheckoutRequestID') or '')[:64],
            merchant_request_id=str(stk.get('MerchantRequestID') or '')[:64],
            result_code=result_code,
            result_desc=str(stk.get('ResultDesc') or '')[:255],
            payload=masked_payload(payload),
            signature_valid=signature_valid,
            outcome=outcome,
        )

    def _parse(self, body):
        try:
            payload = json.loads(body or b'{}')
        except ValueError:
            return {}, None
        if not isinstance(payload, dict):
            return {}, None
        stk = (payload.get('Body') or {}).get('stkCallback') if isinstance(payload.get('Body'), dict) else None
        return payload, stk if isinstance(stk, dict) else None

    def _verify(self, kind, body, signature):
        if self.verifier.verify(body, signature):
            return
        payload, stk = self._parse(body)
        self._record(kind, payload, False, ProviderCallback.OUTCOME_REJECTED, stk)
        logger.warning('mpesa_callback_rejected', kind=kind, reason='bad_signature')
        raise SignatureError('Signature verification failed')

    def _open_donation(self, checkout_request_id):
        return (
            self.ledger.donations()
            .select_related('project')
            .filter(checkout_request_id=checkout_request_id, status__in=Donation.OPEN_STATUSES)
            .first()
        )

    def _missing_outcome(self, checkout_request_id):
        if checkout_request_id and self.ledger.donations().filter(checkout_request_id=checkout_request_id).exists():
            return ProviderCallback.OUTCOME_DUPLICATE
        return ProviderCallback.OUTCOME_UNKNOWN

    def handle_result(self, body, signature=None):
        """Apply an STK result callback. Always returns the provider ack."""
        self._verify(ProviderCallback.KIND_RESULT, body, signature)
        try:
            payload, stk = self._parse(body)
            if stk is None:
                self._record(ProviderCallback.KIND_RESULT, payload, True, ProviderCallback.OUTCOME_INVALID)
                logger.error('mpesa_callback_invalid', reason='missing stkCallback')
                return {'ResultCode': 0, 'ResultDesc': 'Invalid callback format'}
            outcome = self._apply_result(stk)
            self._record(ProviderCallback.KIND_RESULT, payload, True, outcome, stk)
        except Exception:
            logger.exception('mpesa_callback_processing_failed')
            return {'ResultCode': 0, 'ResultDesc': ACK_FAILED}
        return {'ResultCode': 0, 'ResultDesc': ACK_OK}

    def _apply_result(self, stk):
        checkout_request_id = stk.get('CheckoutRequestID')
        result_code = stk.get('ResultCode')
        result_desc = stk.get('ResultDesc') or ''
        logger.info('mpesa_callback_received', checkout_request_id=checkout_request_id, result_code=result_code)

        donation = self._open_donation(checkout_request_id) if checkout_request_id else None
        if donation is None:
            outcome = self._missing_outcome(checkout_request_id)
            logger.info('mpesa_callback_no_open_donation', checkout_request_id=checkout_request_id, outcome=outcome)
            return outcome

        try:
            succeeded = int(result_code) == 0
        except (TypeError, ValueError):
            succeeded = False

        if not succeeded:
            won = self.ledger.settle(donation, Donation.STATUS_FAILED, reason=result_desc or f'ResultCode {result_code}')
            return ProviderCallback.OUTCOME_APPLIED if won else ProviderCallback.OUTCOME_DUPLICATE

        meta = metadata_items(stk)
        receipt = meta.get('MpesaReceiptNumber') or checkout_request_id
        paid = meta.get('Amount')
        if paid is not None:
            try:
                paid_amount = Decimal(str(paid))
            except (InvalidOperation, ValueError):
                paid_amount = None
            if paid_amount is None or paid_amount != billable_amount(donation.amount):
                logger.warning(
                    'mpesa_callback_amount_mismatch',
                    donation_id=donation.pk,
                    expected=str(donation.amount),
                    received=str(paid),
                )
                won = self.ledger.settle(donation, Donation.STATUS_FAILED, receipt=receipt, reason='amount_mismatch')
                return ProviderCallback.OUTCOME_APPLIED if won else ProviderCallback.OUTCOME_DUPLICATE

        won = self.ledger.settle(donation, Donation.STATUS_COMPLETED, receipt=receipt)
        if won:
            logger.info(
                'mpesa_payment_completed',
                donation_id=donation.pk,
                receipt=receipt,
                phone=mask_phone(meta.get('PhoneNumber')),
                transaction_date=meta.get('TransactionDate'),
            )
        return ProviderCallback.OUTCOME_APPLIED if won else ProviderCallback.OUTCOME_DUPLICATE

    def handle_timeout(self, body, signature=None):
        """Provider timeout notification: the payer never answered the prompt."""
        self._verify(ProviderCallback.KIND_TIMEOUT, body, signature)
        try:
            payload, stk = self._parse(body)
            checkout_request_id = (stk or {}).get('CheckoutRequestID')
            donation = self._open_donation(checkout_request_id) if checkout_request_id else None
            if donation is None:
                outcome = self._missing_outcome(checkout_request_id)
            else:
                won = self.ledger.settle(donation, Donation.STATUS_EXPIRED, reason='Provider timeout')
                outcome = ProviderCallback.OUTCOME_APPLIED if won else ProviderCallback.OUTCOME_DUPLICATE
                logger.info('mpesa_payment_timeout', donation_id=donation.pk, applied=won)
            self._record(ProviderCallback.KIND_TIMEOUT, payload, True, outcome, stk)
        except Exception:
            logger.exception('mpesa_timeout_processing_failed')
            return {'ResultCode': 0, 'ResultDesc': 'Timeout received but processing failed'}
        return {'ResultCode': 0, 'ResultDesc': 'Timeout processed successfully'}
