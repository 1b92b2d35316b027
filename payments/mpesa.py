"""M-Pesa (Daraja) STK push integration.

Two provider variants share one interface:

* ``LiveProvider`` talks to the Daraja REST API (OAuth, STK push, STK query).
* ``SimulatedProvider`` answers locally and settles a request once
  ``settle_after`` seconds have elapsed since initiation.

The variant is chosen once from ``settings.MPESA_PROVIDER`` (see
``build_provider``). A live failure is reported as a failure, it is never
replaced by a simulated success.
"""
import base64
import re
import secrets
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import requests
import structlog
from django.utils import timezone

from .exceptions import InvalidAmount, InvalidPhoneNumber, ProviderError

logger = structlog.get_logger(__name__)

PHONE_PATTERN = re.compile(r'^254[17]\d{8}$')

RESULT_SUCCESS = 0
RESULT_CANCELLED_BY_USER = 1032
# Daraja answers the STK query with this error while the payer has not acted yet
QUERY_IN_PROGRESS_ERROR = '500.001.1001'


def normalize_phone(phone):
    """Rewrite a Kenyan number to the 2547XXXXXXXX / 2541XXXXXXXX form."""
    digits = re.sub(r'\D', '', str(phone or ''))
    if digits.startswith('0'):
        return '254' + digits[1:]
    if digits.startswith('254'):
        return digits
    if len(digits) == 9:
        return '254' + digits
    return digits


def validate_phone(phone):
    return bool(PHONE_PATTERN.match(normalize_phone(phone)))


def clean_phone(phone):
    normalized = normalize_phone(phone)
    if not PHONE_PATTERN.match(normalized):
        raise InvalidPhoneNumber('Invalid phone number format. Use format: 254XXXXXXXXX or 07XXXXXXXX')
    return normalized


def mask_phone(phone):
    phone = str(phone or '')
    if len(phone) < 6:
        return '***'
    return phone[:5] + '*' * (len(phone) - 8) + phone[-3:]


def validate_amount(amount, ceiling, floor=None):
    """Return the amount as a Decimal, or raise InvalidAmount.

    The ceiling is inclusive.
    """
    if isinstance(amount, bool) or amount is None or amount == '':
        raise InvalidAmount('Amount must be a number')
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidAmount('Amount must be a number')
    if not value.is_finite():
        raise InvalidAmount('Amount must be a number')
    if value.as_tuple().exponent < -2:
        raise InvalidAmount('Amount must have at most 2 decimal places')
    ceiling = Decimal(str(ceiling))
    if value <= 0 or value > ceiling:
        raise InvalidAmount(f'Amount must be between 1 and {ceiling:,.0f} KES')
    if floor is not None and value < Decimal(str(floor)):
        raise InvalidAmount(f'Minimum donation is {Decimal(str(floor)):,.0f} KES')
    return value


def billable_amount(amount):
    """M-Pesa only bills whole shillings."""
    return int(Decimal(str(amount)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def outcome_for_result_code(code):
    """Map a provider ResultCode to a donation status."""
    try:
        code = int(code)
    except (TypeError, ValueError):
        return 'failed'
    if code == RESULT_SUCCESS:
        return 'completed'
    if code == RESULT_CANCELLED_BY_USER:
        return 'cancelled'
    return 'failed'


def mpesa_timestamp(now=None):
    return timezone.localtime(now or timezone.now()).strftime('%Y%m%d%H%M%S')


def stk_password(shortcode, passkey, timestamp):
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


@dataclass
class PushResponse:
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str = ''
    customer_message: str = ''
    raw: dict = field(default_factory=dict)

    @property
    def accepted(self):
        return self.response_code == '0'

    def as_dict(self):
        return {
            'MerchantRequestID': self.merchant_request_id,
            'CheckoutRequestID': self.checkout_request_id,
            'ResponseCode': self.response_code,
            'ResponseDescription': self.response_description,
            'CustomerMessage': self.customer_message,
        }


@dataclass
class QueryResult:
    status: str
    result_code: object = None
    result_desc: str = ''
    receipt_number: str = ''
    eta_seconds: object = None

    @property
    def is_final(self):
        return self.status != 'processing'


class PaymentProvider:
    name = 'base'

    def initiate(self, phone, amount, reference, description):
        raise NotImplementedError

    def query(self, checkout_request_id, initiated_at=None):
        raise NotImplementedError

    def check_credentials(self):
        raise NotImplementedError


class LiveProvider(PaymentProvider):
    name = 'live'

    def __init__(self, base_url, consumer_key, consumer_secret, shortcode, passkey,
                 callback_url, timeout=15, session=None):
        self.base_url = base_url.rstrip('/')
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _fetch_token(self):
        auth = base64.b64encode(f"{self.consumer_key}:{self.consumer_secret}".encode()).decode()
        url = f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials"
        try:
            resp = self.session.get(url, headers={'Authorization': f'Basic {auth}'}, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error('mpesa_oauth_failed', error=str(exc))
            raise ProviderError(f'Failed to authenticate with M-Pesa: {exc}') from exc
        if not data.get('access_token'):
            raise ProviderError('No access token received from M-Pesa API', data)
        return data

    def get_access_token(self):
        # Not cached: one token per provider call
        return self._fetch_token()['access_token']

    def _post(self, path, payload):
        token = self.get_access_token()
        try:
            resp = self.session.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={'Authorization': f'Bearer {token}'},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error('mpesa_request_failed', path=path, error=str(exc))
            raise ProviderError(f'M-Pesa request failed: {exc}') from exc
        try:
            data = resp.json()
        except ValueError:
            data = {}
        return resp, data

    def _signed_body(self):
        timestamp = mpesa_timestamp()
        return {
            'BusinessShortCode': self.shortcode,
            'Password': stk_password(self.shortcode, self.passkey, timestamp),
            'Timestamp': timestamp,
        }

    def initiate(self, phone, amount, reference, description):
        payload = self._signed_body()
        payload.update({
            'TransactionType': 'CustomerPayBillOnline',
            'Amount': billable_amount(amount),
            'PartyA': phone,
            'PartyB': self.shortcode,
            'PhoneNumber': phone,
            'CallBackURL': self.callback_url,
            'AccountReference': reference,
            'TransactionDesc': description,
        })
        resp, data = self._post('/mpesa/stkpush/v1/processrequest', payload)
        if not resp.ok:
            message = data.get('errorMessage') or data.get('errorCode') or f'HTTP {resp.status_code}'
            raise ProviderError(f'STK Push failed: {message}', data)
        if str(data.get('ResponseCode')) != '0':
            message = data.get('ResponseDescription') or data.get('errorMessage') or 'Unknown error'
            raise ProviderError(f'STK Push failed: {message}', data)
        return PushResponse(
            merchant_request_id=data.get('MerchantRequestID', ''),
            checkout_request_id=data.get('CheckoutRequestID', ''),
            response_code='0',
            response_description=data.get('ResponseDescription', ''),
            customer_message=data.get('CustomerMessage', ''),
            raw=data,
        )

    def query(self, checkout_request_id, initiated_at=None):
        payload = self._signed_body()
        payload['CheckoutRequestID'] = checkout_request_id
        resp, data = self._post('/mpesa/stkpushquery/v1/query', payload)
        if not resp.ok:
            if data.get('errorCode') == QUERY_IN_PROGRESS_ERROR:
                return QueryResult(status='processing', result_desc=data.get('errorMessage', ''))
            raise ProviderError(f"Query failed: {data.get('errorMessage') or resp.status_code}", data)
        code = data.get('ResultCode')
        return QueryResult(
            status=outcome_for_result_code(code),
            result_code=code,
            result_desc=data.get('ResultDesc', ''),
            receipt_number=data.get('MpesaReceiptNumber', ''),
        )

    def check_credentials(self):
        data = self._fetch_token()
        return {'ok': True, 'provider': self.name, 'expires_in': data.get('expires_in')}


class SimulatedProvider(PaymentProvider):
    name = 'simulated'

    def __init__(self, settle_after=30):
        self.settle_after = settle_after

    def initiate(self, phone, amount, reference, description):
        stamp = mpesa_timestamp()
        token = secrets.token_hex(4)
        logger.info('simulated_stk_push', reference=reference, amount=str(amount), phone=mask_phone(phone))
        message = 'Success. Request accepted for processing'
        return PushResponse(
            merchant_request_id=f'SIM-{stamp}-{token}',
            checkout_request_id=f'ws_CO_SIM_{stamp}_{token}',
            response_code='0',
            response_description=message,
            customer_message=message,
        )

    def query(self, checkout_request_id, initiated_at=None):
        initiated_at = initiated_at or timezone.now()
        elapsed = (timezone.now() - initiated_at).total_seconds()
        if elapsed < self.settle_after:
            return QueryResult(
                status='processing',
                result_desc='The transaction is being processed',
                eta_seconds=max(0, int(self.settle_after - elapsed)),
            )
        return QueryResult(
            status='completed',
            result_code='0',
            result_desc='The service request is processed successfully.',
            receipt_number='SIM' + secrets.token_hex(4).upper(),
        )

    def check_credentials(self):
        return {'ok': True, 'provider': self.name, 'expires_in': None}


def build_provider(conf):
    """Instantiate the provider named by ``conf.MPESA_PROVIDER``."""
    name = getattr(conf, 'MPESA_PROVIDER', 'simulated')
    if name == 'live':
        return LiveProvider(
            base_url=conf.MPESA_BASE_URL,
            consumer_key=conf.MPESA_CONSUMER_KEY,
            consumer_secret=conf.MPESA_CONSUMER_SECRET,
            shortcode=conf.MPESA_SHORTCODE,
            passkey=conf.MPESA_PASSKEY,
            callback_url=conf.MPESA_CALLBACK_URL,
            timeout=conf.MPESA_TIMEOUT,
        )
    if name == 'simulated':
        return SimulatedProvider(settle_after=conf.PAYMENT_SETTLE_AFTER)
    raise ValueError(f"Unknown MPESA_PROVIDER: {name!r}")
