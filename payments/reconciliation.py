"""Resolve open donations to a terminal status by polling.

A status query, the ``reconcile_donations`` worker and manual confirmation
all end in ``DonationLedger.settle``; the provider callback does too (see
``payments.callbacks``). Only the first of them changes anything.

Timeline of an open donation::

    created ── (provider says processing) ── deadline (expire_after)
       │                                          │
       └── provider reports a result → settle     └── expire
"""
from dataclasses import dataclass

import structlog
from django.utils import timezone

from .exceptions import DonationAlreadySettled, PaymentError, ProviderError
from .models import Donation

logger = structlog.get_logger(__name__)

MESSAGES = {
    Donation.STATUS_COMPLETED: 'Payment completed successfully!',
    Donation.STATUS_FAILED: 'Payment failed. Please try again.',
    Donation.STATUS_CANCELLED: 'Payment was cancelled',
    Donation.STATUS_EXPIRED: 'Payment request has expired. Please try again.',
    Donation.STATUS_PROCESSING: 'Please complete the payment on your phone. Check your phone for the M-Pesa prompt.',
}

MANUAL_STATUSES = Donation.TERMINAL_STATUSES


@dataclass
class StatusReport:
    donation: Donation
    status: str
    message: str
    remaining_time: object = None

    @property
    def success(self):
        return self.status in (Donation.STATUS_COMPLETED, Donation.STATUS_PROCESSING)

    def as_dict(self):
        donation = self.donation
        body = {
            'id': donation.pk,
            'amount': float(donation.amount),
            'status': self.status,
            'project_title': donation.project.title,
            'project_id': donation.project_id,
            'created_at': donation.created_at.isoformat(),
        }
        if self.status == Donation.STATUS_COMPLETED:
            body['transaction_id'] = donation.receipt_number or donation.checkout_request_id
        data = {
            'success': self.success,
            'status': self.status,
            'message': self.message,
            'donation': body,
        }
        if self.remaining_time is not None:
            data['remaining_time'] = self.remaining_time
        return data


class StatusReconciler:

    def __init__(self, ledger, provider):
        self.ledger = ledger
        self.provider = provider

    def report(self, donation, remaining_time=None):
        status = donation.status
        if status in Donation.OPEN_STATUSES:
            # Open donations are always reported as processing
            status = Donation.STATUS_PROCESSING
        message = MESSAGES[status]
        if donation.status == Donation.STATUS_FAILED and donation.failure_reason:
            message = f"Payment failed: {donation.failure_reason}"
        return StatusReport(donation, status, message, remaining_time)

    def status(self, donation_id, checkout_request_id=None, now=None):
        donation = self.ledger.get_donation(donation_id)
        return self.reconcile(donation, checkout_request_id=checkout_request_id, now=now)

    def reconcile(self, donation, checkout_request_id=None, now=None):
        now = now or timezone.now()
        if donation.is_terminal:
            return self.report(donation)

        if checkout_request_id and donation.checkout_request_id and checkout_request_id != donation.checkout_request_id:
            raise PaymentError('checkout_request_id does not match this donation')

        deadline = self.ledger.deadline_for(donation)
        if now >= deadline:
            self.ledger.settle(donation, Donation.STATUS_EXPIRED, reason='No payment confirmation before the deadline')
            return self.report(donation)

        eta = None
        correlation = donation.checkout_request_id or checkout_request_id
        if correlation:
            try:
                result = self.provider.query(correlation, initiated_at=donation.created_at)
            except ProviderError as exc:
                # Stay open; the next poll retries
                logger.warning('payment_status_query_failed', donation_id=donation.pk, error=str(exc))
                result = None
            if result is not None and result.is_final:
                reason = '' if result.status == Donation.STATUS_COMPLETED else result.result_desc
                self.ledger.settle(
                    donation,
                    result.status,
                    receipt=result.receipt_number or correlation,
                    reason=reason,
                )
                return self.report(donation)
            if result is not None:
                self.ledger.mark_processing(donation)
                eta = result.eta_seconds

        self.ledger.reschedule(donation, now)
        if eta is None:
            eta = max(0, int((deadline - now).total_seconds()))
        return self.report(donation, remaining_time=eta)

    def reconcile_due(self, now=None, limit=100):
        """Worker pass over queued tasks whose next check is due."""
        now = now or timezone.now()
        summary = {}
        for task in self.ledger.due_tasks(now, limit=limit):
            try:
                report = self.reconcile(task.donation, now=now)
            except PaymentError as exc:
                logger.error('reconciliation_task_failed', donation_id=task.donation_id, error=str(exc))
                continue
            summary[report.status] = summary.get(report.status, 0) + 1
        if summary:
            logger.info('reconciliation_pass_completed', **summary)
        return summary

    def apply_manual(self, donation_id, status, transaction_id='', actor=''):
        """Staff override: move an open donation to a terminal status."""
        if status not in MANUAL_STATUSES:
            raise PaymentError('Invalid status. Must be one of: ' + ', '.join(MANUAL_STATUSES))
        donation = self.ledger.get_donation(donation_id)
        if donation.is_terminal:
            raise DonationAlreadySettled('Donation already processed')
        won = self.ledger.settle(
            donation,
            status,
            receipt=transaction_id,
            reason='' if status == Donation.STATUS_COMPLETED else f'Set manually by {actor or "staff"}',
        )
        if not won:
            raise DonationAlreadySettled('Donation already processed')
        logger.info('donation_manual_update', donation_id=donation.pk, status=status, actor=actor or 'system')
        return donation
