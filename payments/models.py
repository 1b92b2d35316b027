from django.db import models


class Donation(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_PROCESSING = 'processing'
    STATUS_COMPLETED = 'completed'
    STATUS_FAILED = 'failed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_EXPIRED = 'expired'
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_PROCESSING, "Processing"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_FAILED, "Failed"),
        (STATUS_CANCELLED, "Cancelled"),
        (STATUS_EXPIRED, "Expired"),
    ]
    OPEN_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)
    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED, STATUS_EXPIRED)

    # Allowed moves; a terminal donation is never reopened
    TRANSITIONS = {
        STATUS_PENDING: (STATUS_PROCESSING,) + TERMINAL_STATUSES,
        STATUS_PROCESSING: TERMINAL_STATUSES,
    }

    project = models.ForeignKey('website.Project', on_delete=models.CASCADE, related_name='donations')
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    # Display only. E-mail and phone are never stored.
    donor_name = models.CharField(max_length=120, blank=True)
    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    merchant_request_id = models.CharField(max_length=64, blank=True)
    checkout_request_id = models.CharField(max_length=64, unique=True, blank=True, null=True)
    receipt_number = models.CharField(max_length=64, blank=True)
    failure_reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    settled_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ('-created_at',)
        verbose_name = 'Donation'
        verbose_name_plural = 'Donations'

    def __str__(self):
        return f"Donation #{self.pk} - {self.amount} KES - {self.status}"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def account_reference(self):
        return f"DONATION-{self.pk}"

    @property
    def display_name(self):
        return self.donor_name or 'Anonymous'

    @classmethod
    def can_transition(cls, current, target):
        return target in cls.TRANSITIONS.get(current, ())

    def public_dict(self):
        """Representation safe for the public API."""
        return {
            'id': self.pk,
            'project_id': self.project_id,
            'project_title': self.project.title,
            'amount': float(self.amount),
            'donor_name': self.display_name,
            'donor_email': None,
            'phone_number': None,
            # Correlation ids stay internal
            'mpesa_transaction_id': self.status.upper(),
            'status': self.status,
            'created_at': self.created_at.isoformat(),
        }


class ReconciliationTask(models.Model):
    """Outbox row: one open reconciliation per donation, resolved once."""
    STATE_QUEUED = 'queued'
    STATE_RESOLVED = 'resolved'
    STATE_CHOICES = [
        (STATE_QUEUED, 'Queued'),
        (STATE_RESOLVED, 'Resolved'),
    ]

    donation = models.OneToOneField(Donation, on_delete=models.CASCADE, related_name='reconciliation')
    state = models.CharField(max_length=10, choices=STATE_CHOICES, default=STATE_QUEUED, db_index=True)
    deadline = models.DateTimeField()
    next_check_at = models.DateTimeField(db_index=True)
    attempts = models.PositiveIntegerField(default=0)
    outcome = models.CharField(max_length=12, blank=True)
    resolved_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ('next_check_at',)
        verbose_name = 'Reconciliation task'
        verbose_name_plural = 'Reconciliation tasks'

    def __str__(self):
        return f"Reconciliation of donation #{self.donation_id} ({self.state})"


class ProviderCallback(models.Model):
    OUTCOME_APPLIED = 'applied'
    OUTCOME_DUPLICATE = 'duplicate'
    OUTCOME_UNKNOWN = 'unknown'
    OUTCOME_REJECTED = 'rejected'
    OUTCOME_INVALID = 'invalid'
    OUTCOME_ERROR = 'error'
    OUTCOME_CHOICES = [
        (OUTCOME_APPLIED, 'Applied'),
        (OUTCOME_DUPLICATE, 'Duplicate'),
        (OUTCOME_UNKNOWN, 'Unknown donation'),
        (OUTCOME_REJECTED, 'Signature rejected'),
        (OUTCOME_INVALID, 'Invalid payload'),
        (OUTCOME_ERROR, 'Processing error'),
    ]

    KIND_RESULT = 'result'
    KIND_TIMEOUT = 'timeout'

    kind = models.CharField(max_length=10, default=KIND_RESULT)
    checkout_request_id = models.CharField(max_length=64, blank=True, db_index=True)
    merchant_request_id = models.CharField(max_length=64, blank=True)
    result_code = models.IntegerField(blank=True, null=True)
    result_desc = models.CharField(max_length=255, blank=True)
    payload = models.JSONField(default=dict, blank=True)
    signature_valid = models.BooleanField(default=False)
    outcome = models.CharField(max_length=10, choices=OUTCOME_CHOICES, blank=True)
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ('-received_at',)
        verbose_name = 'Provider callback'
        verbose_name_plural = 'Provider callbacks'

    def __str__(self):
        return f"Callback {self.checkout_request_id or '?'} ({self.outcome or 'pending'})"
