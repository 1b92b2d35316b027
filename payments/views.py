from django.conf import settings
from django.db.models import Count, Sum
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from website.api import BadRequest, error, int_param, json_body, staff_required
from .exceptions import PaymentError, ProviderError
from .models import Donation
from .services import get_services


@csrf_exempt
@require_http_methods(['GET', 'POST'])
def donations(request):
    if request.method == 'POST':
        return _create_donation(request)
    try:
        project_id = int_param(request.GET.get('project_id'))
        limit = int_param(request.GET.get('limit'))
    except BadRequest as exc:
        return error(str(exc))
    qs = Donation.objects.select_related('project')
    if project_id is not None:
        qs = qs.filter(project_id=project_id)
    if limit:
        qs = qs[:limit]
    return JsonResponse([d.public_dict() for d in qs], safe=False)


def _create_donation(request):
    try:
        data = json_body(request)
    except BadRequest as exc:
        return error(str(exc))
    # donor_email is accepted for compatibility and dropped: contact data is never stored
    services = get_services()
    try:
        donation, push = services.initiator.start(
            project_id=data.get('project_id'),
            amount=data.get('amount'),
            phone_number=data.get('phone_number'),
            donor_name=data.get('donor_name') or '',
        )
    except ProviderError as exc:
        return error(
            'Failed to initiate payment. Please try again.',
            status=exc.status_code,
            donation_id=getattr(exc, 'donation_id', None),
        )
    except PaymentError as exc:
        return error(str(exc), status=exc.status_code)
    return JsonResponse({
        'donation_id': donation.pk,
        'status': donation.status,
        'checkout_request_id': push.checkout_request_id,
        'mpesa_response': push.as_dict(),
        'message': 'Payment initiated successfully. Please complete the payment on your phone.',
    }, status=201)


@require_http_methods(['GET', 'POST'])
def donation_status(request):
    if request.method == 'POST':
        return _manual_status_update(request)
    donation_id = request.GET.get('donation_id')
    if not donation_id:
        return error('Donation ID is required', success=False)
    try:
        report = get_services().reconciler.status(
            donation_id,
            checkout_request_id=request.GET.get('checkout_request_id') or None,
        )
    except PaymentError as exc:
        return error(str(exc), status=exc.status_code, success=False)
    return JsonResponse(report.as_dict())


@staff_required
def _manual_status_update(request):
    try:
        data = json_body(request)
    except BadRequest as exc:
        return error(str(exc), success=False)
    if not data.get('donation_id') or not data.get('status'):
        return error('Donation ID and status are required', success=False)
    try:
        get_services().reconciler.apply_manual(
            data['donation_id'],
            data['status'],
            transaction_id=data.get('transaction_id') or '',
            actor=request.user.get_username(),
        )
    except PaymentError as exc:
        return error(str(exc), status=exc.status_code, success=False)
    return JsonResponse({'success': True, 'message': 'Donation status updated successfully'})


def _signature(request):
    return request.headers.get('X-Callback-Signature')


@csrf_exempt
@require_http_methods(['POST', 'PUT'])
def mpesa_callback(request):
    callbacks = get_services().callbacks
    try:
        if request.method == 'PUT':
            ack = callbacks.handle_timeout(request.body, _signature(request))
        else:
            ack = callbacks.handle_result(request.body, _signature(request))
    except PaymentError as exc:
        return JsonResponse({'ResultCode': 1, 'ResultDesc': str(exc)}, status=exc.status_code)
    return JsonResponse(ack)


@require_http_methods(['PUT'])
@staff_required
def mpesa_notification(request):
    """Manual confirmation when the automatic notification never arrived."""
    try:
        data = json_body(request)
    except BadRequest as exc:
        return error(str(exc), success=False)
    if not data.get('donation_id') or not data.get('transaction_id'):
        return error('Missing required fields: donation_id, transaction_id', success=False)
    try:
        donation = get_services().reconciler.apply_manual(
            data['donation_id'],
            Donation.STATUS_COMPLETED,
            transaction_id=data['transaction_id'],
            actor=data.get('confirmed_by') or request.user.get_username(),
        )
    except PaymentError as exc:
        return error(str(exc), status=exc.status_code, success=False)
    return JsonResponse({
        'success': True,
        'message': 'Payment confirmed successfully',
        'donation_id': donation.pk,
    })


def _mask(value, show=6):
    if not value:
        return ''
    return value[:show] + '…' + value[-4:]


@require_http_methods(['GET'])
@staff_required
def mpesa_config_test(request):
    services = get_services()
    config = {
        'provider': services.provider.name,
        'environment': settings.MPESA_ENVIRONMENT,
        'base_url': settings.MPESA_BASE_URL,
        'shortcode': settings.MPESA_SHORTCODE,
        'consumer_key': _mask(settings.MPESA_CONSUMER_KEY),
        'callback_url': settings.MPESA_CALLBACK_URL,
        'callback_secret_set': bool(settings.MPESA_CALLBACK_SECRET),
        'callback_verify_disabled': settings.MPESA_CALLBACK_VERIFY_DISABLED,
    }
    try:
        result = services.provider.check_credentials()
    except ProviderError as exc:
        return JsonResponse({
            'success': False,
            'error': 'Failed to authenticate with M-Pesa',
            'details': str(exc),
            'config': config,
        }, status=exc.status_code)
    return JsonResponse({
        'success': True,
        'message': 'M-Pesa credentials are valid',
        'expires_in': result.get('expires_in'),
        'config': config,
    })


@require_http_methods(['GET'])
@staff_required
def donations_summary(request):
    counts = {row['status']: row['n'] for row in Donation.objects.values('status').annotate(n=Count('id'))}
    by_status = {code: counts.get(code, 0) for code, _ in Donation.STATUS_CHOICES}
    totals = Donation.objects.filter(status=Donation.STATUS_COMPLETED).aggregate(total=Sum('amount'))
    latest = Donation.objects.select_related('project')[:100]
    return JsonResponse({
        'counts': {'total': sum(by_status.values()), **by_status},
        'completed_amount': float(totals['total'] or 0),
        'donations': [
            {**d.public_dict(), 'checkout_request_id': d.checkout_request_id, 'receipt_number': d.receipt_number,
             'failure_reason': d.failure_reason}
            for d in latest
        ],
    })
