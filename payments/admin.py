import csv
from datetime import datetime

from django.contrib import admin, messages
from django.http import HttpResponse

from website.admin import RecentDateFilter
from .models import Donation, ProviderCallback, ReconciliationTask
from .services import get_services


class DonationRecentFilter(RecentDateFilter):
    date_field = 'created_at'


class CallbackRecentFilter(RecentDateFilter):
    date_field = 'received_at'


@admin.register(Donation)
class DonationAdmin(admin.ModelAdmin):
    list_display = ('id', 'project', 'amount', 'donor_name', 'status', 'receipt_number', 'created_at', 'settled_at')
    list_filter = ('status', DonationRecentFilter, 'project')
    search_fields = ('donor_name', 'checkout_request_id', 'merchant_request_id', 'receipt_number')
    date_hierarchy = 'created_at'
    list_select_related = ('project',)
    actions = ['confirm_completed', 'reconcile_now', 'export_csv']
    # Status only moves through the ledger (actions below)
    readonly_fields = (
        'project', 'amount', 'status', 'merchant_request_id', 'checkout_request_id', 'receipt_number',
        'failure_reason', 'created_at', 'updated_at', 'settled_at',
    )
    fieldsets = (
        (None, {'fields': ('project', 'amount', 'donor_name', 'status')}),
        ('M-Pesa', {'fields': ('merchant_request_id', 'checkout_request_id', 'receipt_number', 'failure_reason')}),
        ('Meta', {'fields': ('created_at', 'updated_at', 'settled_at')}),
    )

    def has_add_permission(self, request):
        # Donations only come from the payment flow
        return False

    @admin.action(description='Confirm selected donations as completed')
    def confirm_completed(self, request, queryset):
        ledger = get_services().ledger
        done = 0
        for donation in queryset.filter(status__in=Donation.OPEN_STATUSES):
            done += int(ledger.settle(donation, Donation.STATUS_COMPLETED, receipt=f'MANUAL-{donation.pk}'))
        self.message_user(request, f'{done} donation(s) confirmed.', messages.SUCCESS)

    @admin.action(description='Reconcile selected donations with the provider')
    def reconcile_now(self, request, queryset):
        reconciler = get_services().reconciler
        results = {}
        for donation in queryset.select_related('project'):
            report = reconciler.reconcile(donation)
            results[report.status] = results.get(report.status, 0) + 1
        summary = ', '.join(f'{k}: {v}' for k, v in sorted(results.items())) or 'nothing to do'
        self.message_user(request, f'Reconciliation done ({summary}).')

    @admin.action(description='Export selected donations as CSV')
    def export_csv(self, request, queryset):
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        response = HttpResponse(content_type='text/csv; charset=utf-8')
        response['Content-Disposition'] = f'attachment; filename="donations_{timestamp}.csv"'
        writer = csv.writer(response, delimiter=';')
        writer.writerow(['ID', 'Project', 'Amount', 'Donor', 'Status', 'Receipt', 'Created', 'Settled'])
        for d in queryset.select_related('project'):
            writer.writerow([
                d.pk,
                d.project.title,
                d.amount,
                d.display_name,
                d.get_status_display(),
                d.receipt_number,
                d.created_at.strftime('%Y-%m-%d %H:%M:%S'),
                d.settled_at.strftime('%Y-%m-%d %H:%M:%S') if d.settled_at else '',
            ])
        return response


@admin.register(ReconciliationTask)
class ReconciliationTaskAdmin(admin.ModelAdmin):
    list_display = ('donation', 'state', 'attempts', 'next_check_at', 'deadline', 'outcome', 'resolved_at')
    list_filter = ('state', 'outcome')
    readonly_fields = [f.name for f in ReconciliationTask._meta.fields]

    def has_add_permission(self, request):
        return False


@admin.register(ProviderCallback)
class ProviderCallbackAdmin(admin.ModelAdmin):
    list_display = ('received_at', 'kind', 'checkout_request_id', 'result_code', 'outcome', 'signature_valid')
    list_filter = ('kind', 'outcome', 'signature_valid', CallbackRecentFilter)
    search_fields = ('checkout_request_id', 'merchant_request_id', 'result_desc')
    readonly_fields = [f.name for f in ProviderCallback._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
