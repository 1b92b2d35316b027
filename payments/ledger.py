"""Donation ledger: the only writer of donation rows and project totals.

Every status change is a compare-and-set on the donation's open status, run
in the same transaction as the project increment and the resolution of the
donation's reconciliation task. Whoever loses a race (callback vs. poll vs.
worker) updates nothing.
"""
from datetime import timedelta

import structlog
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from website.models import Project
from .exceptions import DonationNotFound
from .models import Donation, ReconciliationTask

logger = structlog.get_logger(__name__)


class DonationLedger:

    def __init__(self, using='default', expire_after=120, poll_interval=10):
        self.using = using
        self.expire_after = expire_after
        self.poll_interval = poll_interval

    def donations(self):
        return Donation.objects.using(self.using)

    def get_donation(self, donation_id):
        try:
            return self.donations().select_related('project').get(pk=donation_id)
        except (Donation.DoesNotExist, ValueError, TypeError):
            raise DonationNotFound('Donation not found')

    def create_donation(self, project, amount, donor_name=''):
        with transaction.atomic(using=self.using):
            donation = self.donations().create(
                project=project,
                amount=amount,
                donor_name=(donor_name or '').strip()[:120],
                status=Donation.STATUS_PENDING,
            )
            ReconciliationTask.objects.using(self.using).create(
                donation=donation,
                deadline=donation.created_at + timedelta(seconds=self.expire_after),
                next_check_at=donation.created_at + timedelta(seconds=self.poll_interval),
            )
        logger.info('donation_created', donation_id=donation.pk, project_id=project.pk, amount=str(amount))
        return donation

    def attach_correlation(self, donation, push):
        now = timezone.now()
        self.donations().filter(pk=donation.pk).update(
            merchant_request_id=push.merchant_request_id,
            checkout_request_id=push.checkout_request_id,
            updated_at=now,
        )
        donation.merchant_request_id = push.merchant_request_id
        donation.checkout_request_id = push.checkout_request_id
        donation.updated_at = now

    def mark_processing(self, donation):
        updated = self.donations().filter(pk=donation.pk, status=Donation.STATUS_PENDING).update(
            status=Donation.STATUS_PROCESSING, updated_at=timezone.now()
        )
        if updated:
            donation.status = Donation.STATUS_PROCESSING
        return bool(updated)

    def settle(self, donation, status, receipt='', reason=''):
        """Move an open donation to a terminal status.

        Returns True when this call performed the transition. On completion
        the owning project's total is incremented by the donation amount.
        """
        if status not in Donation.TERMINAL_STATUSES:
            raise ValueError(f"{status!r} is not a terminal status")
        now = timezone.now()
        fields = {'status': status, 'settled_at': now, 'updated_at': now}
        if receipt:
            fields['receipt_number'] = str(receipt)[:64]
        if reason:
            fields['failure_reason'] = str(reason)[:255]

        with transaction.atomic(using=self.using):
            won = self.donations().filter(
                pk=donation.pk, status__in=Donation.OPEN_STATUSES
            ).update(**fields)
            if not won:
                logger.info('donation_settle_skipped', donation_id=donation.pk, wanted=status)
                donation.refresh_from_db(using=self.using)
                return False
            if status == Donation.STATUS_COMPLETED:
                Project.objects.using(self.using).filter(pk=donation.project_id).update(
                    current_amount=F('current_amount') + donation.amount
                )
            ReconciliationTask.objects.using(self.using).filter(
                donation_id=donation.pk, state=ReconciliationTask.STATE_QUEUED
            ).update(state=ReconciliationTask.STATE_RESOLVED, outcome=status, resolved_at=now)

        for name, value in fields.items():
            setattr(donation, name, value)
        logger.info(
            'donation_settled',
            donation_id=donation.pk,
            project_id=donation.project_id,
            status=status,
            amount=str(donation.amount),
            receipt=fields.get('receipt_number', ''),
        )
        return True

    def deadline_for(self, donation):
        task = ReconciliationTask.objects.using(self.using).filter(donation_id=donation.pk).first()
        if task is not None:
            return task.deadline
        return donation.created_at + timedelta(seconds=self.expire_after)

    def reschedule(self, donation, now=None):
        now = now or timezone.now()
        ReconciliationTask.objects.using(self.using).filter(
            donation_id=donation.pk, state=ReconciliationTask.STATE_QUEUED
        ).update(attempts=F('attempts') + 1, next_check_at=now + timedelta(seconds=self.poll_interval))

    def due_tasks(self, now=None, limit=100):
        now = now or timezone.now()
        return list(
            ReconciliationTask.objects.using(self.using)
            .select_related('donation', 'donation__project')
            .filter(state=ReconciliationTask.STATE_QUEUED, next_check_at__lte=now)
            .order_by('next_check_at')[:limit]
        )

    def recompute_project_total(self, project):
        return project.recompute_total()

    def recompute_all(self):
        """Re-derive every project total. Returns the projects that had drifted."""
        drifted = []
        for project in Project.objects.using(self.using).all():
            before = project.current_amount
            after = project.recompute_total()
            if before != after:
                drifted.append((project.pk, before, after))
                logger.warning('project_total_drift', project_id=project.pk, stored=str(before), computed=str(after))
        return drifted
