from decimal import Decimal
from io import BytesIO

import structlog
from PIL import Image
from django.core.exceptions import ValidationError
from django.core.files.base import ContentFile
from django.db import models
from django.db.models import OuterRef, Subquery, Sum
from django.db.models.functions import Coalesce
from django.conf import settings

logger = structlog.get_logger(__name__)


def optimize_image(fileobj, max_width=None):
    """Resize to max_width and re-encode. Returns (bytes, extension)."""
    max_width = max_width or settings.UPLOAD_MAX_WIDTH
    with Image.open(fileobj) as im:
        im_format = (im.format or '').upper()
        if im.width > max_width:
            ratio = max_width / float(im.width)
            im = im.resize((max_width, int(im.height * ratio)), Image.LANCZOS)
        save_format = 'JPEG'
        save_kwargs = {'quality': 85, 'optimize': True, 'progressive': True}
        if im_format in ('PNG', 'WEBP', 'GIF') and (
            im.mode in ('RGBA', 'LA') or (im.mode == 'P' and 'transparency' in im.info)
        ):
            # Keep transparency
            save_format = 'PNG'
            save_kwargs = {'optimize': True}
        elif im.mode != 'RGB':
            im = im.convert('RGB')
        buffer = BytesIO()
        im.save(buffer, save_format, **save_kwargs)
    return buffer.getvalue(), ('jpg' if save_format == 'JPEG' else 'png')


class Project(models.Model):
    STATUS_ACTIVE = 'active'
    STATUS_COMPLETED = 'completed'
    STATUS_PAUSED = 'paused'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_PAUSED, 'Paused'),
    )

    title = models.CharField(max_length=200)
    description = models.TextField()
    target_amount = models.DecimalField(max_digits=12, decimal_places=2)
    # Denormalized: sum of completed donations, kept by the donation ledger
    current_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0'))
    image = models.ImageField(upload_to='projects/', blank=True, null=True)
    # External URL or a path returned by the upload endpoint
    image_url = models.CharField(max_length=500, blank=True)
    category = models.CharField(max_length=100)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_ACTIVE, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ('-created_at',)
        verbose_name = 'Project'
        verbose_name_plural = 'Projects'

    def __str__(self):
        return self.title

    def clean(self):
        if self.target_amount is not None and self.target_amount <= 0:
            raise ValidationError({'target_amount': 'Target amount must be greater than 0.'})

    def save(self, *args, **kwargs):
        # Optimize only a freshly assigned file
        if self.image and not self.image._committed:
            try:
                data, ext = optimize_image(self.image.file)
                base = self.image.name.rsplit('/', 1)[-1].rsplit('.', 1)[0]
                self.image.save(f"{base}.{ext}", ContentFile(data), save=False)
            except (OSError, ValueError) as exc:
                # The original upload is kept as-is
                logger.warning('project_image_optimize_failed', project_id=self.pk, error=str(exc))
        super().save(*args, **kwargs)

    @property
    def progress_percent(self):
        if not self.target_amount:
            return 0
        return min(100, round(float(self.current_amount) * 100 / float(self.target_amount), 1))

    @property
    def cover_url(self):
        if self.image:
            return self.image.url
        return self.image_url or None

    def completed_total(self):
        return self.donations.filter(status='completed').aggregate(
            total=Coalesce(Sum('amount'), Decimal('0'))
        )['total']

    def recompute_total(self):
        """Re-derive current_amount from the completed donations in one UPDATE."""
        db = self._state.db or 'default'
        completed = (
            self.donations.model.objects.using(db)
            .filter(project=OuterRef('pk'), status='completed')
            .order_by()
            .values('project')
            .annotate(total=Sum('amount'))
            .values('total')
        )
        rows = Project.objects.using(db).filter(pk=self.pk)
        rows.update(current_amount=Coalesce(
            Subquery(completed, output_field=models.DecimalField(max_digits=12, decimal_places=2)),
            Decimal('0'),
        ))
        self.current_amount = rows.values_list('current_amount', flat=True).get()
        return self.current_amount


class SiteSetting(models.Model):
    TYPE_STRING = 'string'
    TYPE_NUMBER = 'number'
    TYPE_BOOLEAN = 'boolean'
    TYPE_CHOICES = (
        (TYPE_STRING, 'String'),
        (TYPE_NUMBER, 'Number'),
        (TYPE_BOOLEAN, 'Boolean'),
    )

    DEFAULTS = (
        ('platform_name', 'DonateAnon', TYPE_STRING, 'Platform name displayed across the site'),
        ('platform_description', 'Anonymous donation platform for social projects', TYPE_STRING,
         'Platform description for meta tags and about sections'),
        ('contact_email', 'admin@donateanon.com', TYPE_STRING, 'Contact email displayed on the site'),
        ('mpesa_business_code', '174379', TYPE_STRING, 'M-Pesa business shortcode shown to donors'),
        ('mpesa_environment', 'sandbox', TYPE_STRING, 'M-Pesa environment (sandbox/production)'),
        ('enable_notifications', 'true', TYPE_BOOLEAN, 'Enable email notifications for events'),
        ('auto_approve_projects', 'false', TYPE_BOOLEAN, 'Automatically approve new project submissions'),
        ('minimum_donation', '1', TYPE_NUMBER, 'Minimum donation amount in KES'),
        ('maximum_donation', '1000000', TYPE_NUMBER, 'Maximum donation amount in KES'),
        ('featured_projects_limit', '3', TYPE_NUMBER, 'Number of featured projects to display on homepage'),
    )

    key = models.CharField(max_length=100, unique=True)
    value = models.TextField()
    type = models.CharField(max_length=10, choices=TYPE_CHOICES, default=TYPE_STRING)
    description = models.CharField(max_length=255, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ('key',)
        verbose_name = 'Site setting'
        verbose_name_plural = 'Site settings'

    def __str__(self):
        return self.key

    @staticmethod
    def to_storage(value):
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)

    @property
    def typed_value(self):
        if self.type == self.TYPE_BOOLEAN:
            return self.value.strip().lower() == 'true'
        if self.type == self.TYPE_NUMBER:
            try:
                number = float(self.value)
            except ValueError:
                return None
            return int(number) if number.is_integer() else number
        return self.value

    @classmethod
    def get(cls, key, default=None, using='default'):
        # No caching: every read hits the database
        row = cls.objects.using(using).filter(key=key).first()
        if row is None:
            return default
        value = row.typed_value
        return default if value is None else value

    @classmethod
    def as_dict(cls):
        return {row.key: row.typed_value for row in cls.objects.all()}

    @classmethod
    def install_defaults(cls):
        created = 0
        for key, value, type_, description in cls.DEFAULTS:
            _, was_created = cls.objects.get_or_create(
                key=key, defaults={'value': value, 'type': type_, 'description': description}
            )
            created += int(was_created)
        return created

    @classmethod
    def reset_defaults(cls):
        cls.objects.all().delete()
        return cls.install_defaults()
