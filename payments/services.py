from dataclasses import dataclass

import structlog
from django.apps import apps
from django.conf import settings

from website.models import Project, SiteSetting
from .callbacks import CallbackReceiver, CallbackVerifier
from .exceptions import PaymentError, ProjectNotFound, ProviderError
from .ledger import DonationLedger
from .models import Donation
from .mpesa import build_provider, clean_phone, mask_phone, validate_amount
from .reconciliation import StatusReconciler

logger = structlog.get_logger(__name__)


class PaymentInitiator:
    """Create a pending donation and ask the provider for an STK push."""

    def __init__(self, ledger, provider, max_amount=None):
        self.ledger = ledger
        self.provider = provider
        self.max_amount = max_amount

    def amount_bounds(self):
        ceiling = SiteSetting.get('maximum_donation', self.max_amount or settings.DONATION_MAX_AMOUNT,
                                 using=self.ledger.using)
        floor = SiteSetting.get('minimum_donation', None, using=self.ledger.using)
        return ceiling, floor

    def start(self, project_id, amount, phone_number, donor_name=''):
        if not project_id or amount in (None, '') or not phone_number:
            raise PaymentError('Missing required fields: project_id, amount, phone_number')
        ceiling, floor = self.amount_bounds()
        amount = validate_amount(amount, ceiling, floor)
        phone = clean_phone(phone_number)

        try:
            project = Project.objects.using(self.ledger.using).get(pk=project_id, status=Project.STATUS_ACTIVE)
        except (Project.DoesNotExist, ValueError, TypeError):
            raise ProjectNotFound('Project not found or not active')

        donation = self.ledger.create_donation(project, amount, donor_name)
        try:
            push = self.provider.initiate(
                phone,
                amount,
                donation.account_reference,
                f"Donation to {project.title}",
            )
        except ProviderError as exc:
            self.ledger.settle(donation, Donation.STATUS_FAILED, reason=str(exc))
            logger.error('stk_push_failed', donation_id=donation.pk, provider=self.provider.name, error=str(exc))
            exc.donation_id = donation.pk
            raise

        self.ledger.attach_correlation(donation, push)
        logger.info(
            'stk_push_accepted',
            donation_id=donation.pk,
            provider=self.provider.name,
            checkout_request_id=push.checkout_request_id,
            phone=mask_phone(phone),
        )
        return donation, push


@dataclass
class PaymentServices:
    provider: object
    ledger: DonationLedger
    initiator: PaymentInitiator
    reconciler: StatusReconciler
    callbacks: CallbackReceiver

    @classmethod
    def build(cls, provider, conf=settings, using='default'):
        ledger = DonationLedger(
            using=using,
            expire_after=conf.PAYMENT_EXPIRE_AFTER,
            poll_interval=conf.PAYMENT_POLL_INTERVAL,
        )
        verifier = CallbackVerifier(conf.MPESA_CALLBACK_SECRET, disabled=conf.MPESA_CALLBACK_VERIFY_DISABLED)
        return cls(
            provider=provider,
            ledger=ledger,
            initiator=PaymentInitiator(ledger, provider, max_amount=conf.DONATION_MAX_AMOUNT),
            reconciler=StatusReconciler(ledger, provider),
            callbacks=CallbackReceiver(ledger, verifier),
        )

    @classmethod
    def from_settings(cls, conf=settings, using='default'):
        return cls.build(build_provider(conf), conf=conf, using=using)


def get_services():
    return apps.get_app_config('payments').services
