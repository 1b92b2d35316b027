from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'payments'
    verbose_name = 'Payments'

    services = None

    def ready(self):
        from django.conf import settings
        from .services import PaymentServices
        # Provider selected once for the life of the process
        self.services = PaymentServices.from_settings(settings)
