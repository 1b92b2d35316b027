from decimal import Decimal

from django.db.models import Count, Sum
from django.db.models.functions import Coalesce
from django.http import JsonResponse
from django.utils import timezone

from payments.models import Donation, ProviderCallback, ReconciliationTask
from .api import staff_required
from .models import Project


@staff_required
def dashboard(request):
    now = timezone.now()
    projects_by_status = dict(Project.objects.values_list('status').annotate(n=Count('id')).order_by())
    donations_by_status = dict(Donation.objects.values_list('status').annotate(n=Count('id')).order_by())
    raised = Donation.objects.filter(status=Donation.STATUS_COMPLETED).aggregate(
        total=Coalesce(Sum('amount'), Decimal('0'))
    )['total']
    queued = ReconciliationTask.objects.filter(state=ReconciliationTask.STATE_QUEUED)
    # Drift between the stored totals and the completed donations
    stored = Project.objects.aggregate(total=Coalesce(Sum('current_amount'), Decimal('0')))['total']
    latest_callbacks = ProviderCallback.objects.all()[:5]
    return JsonResponse({
        'projects': {code: projects_by_status.get(code, 0) for code, _ in Project.STATUS_CHOICES},
        'donations': {code: donations_by_status.get(code, 0) for code, _ in Donation.STATUS_CHOICES},
        'total_raised': float(raised),
        'totals_in_sync': stored == raised,
        'reconciliation': {
            'queued': queued.count(),
            'due': queued.filter(next_check_at__lte=now).count(),
            'past_deadline': queued.filter(deadline__lte=now).count(),
        },
        'latest_callbacks': [
            {
                'received_at': cb.received_at.isoformat(),
                'kind': cb.kind,
                'checkout_request_id': cb.checkout_request_id,
                'result_code': cb.result_code,
                'outcome': cb.outcome,
            }
            for cb in latest_callbacks
        ],
    })
