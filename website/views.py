import secrets
import time
from datetime import timedelta
from decimal import Decimal
from pathlib import PurePosixPath

import structlog
from django.conf import settings
from django.contrib.auth import authenticate, login
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.db import transaction
from django.db.models import Count, Q, Sum
from django.db.models.functions import Coalesce, TruncMonth
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from payments.models import Donation
from .api import BadRequest, error, int_param, json_body, staff_required
from .forms import ProjectForm
from .models import Project, SiteSetting, optimize_image

logger = structlog.get_logger(__name__)

UPLOAD_DIR = 'projects/uploads'
ALLOWED_IMAGE_TYPES = ('image/jpeg', 'image/jpg', 'image/png', 'image/gif', 'image/webp')

COMPLETED = Q(donations__status=Donation.STATUS_COMPLETED)


def project_dict(project, current_amount=None, donation_count=None):
    data = {
        'id': project.pk,
        'title': project.title,
        'description': project.description,
        'target_amount': float(project.target_amount),
        'current_amount': float(project.current_amount if current_amount is None else current_amount),
        'image_url': project.cover_url,
        'category': project.category,
        'status': project.status,
        'progress_percent': project.progress_percent,
        'created_at': project.created_at.isoformat(),
        'updated_at': project.updated_at.isoformat(),
    }
    if donation_count is not None:
        data['donation_count'] = donation_count
    return data


def _with_totals(qs):
    return qs.annotate(
        completed_sum=Coalesce(Sum('donations__amount', filter=COMPLETED), Decimal('0')),
        completed_n=Count('donations', filter=COMPLETED),
    )


def _anonymized(donations):
    return [
        {
            'amount': float(d.amount),
            'donor_name': d.display_name,
            'created_at': d.created_at.isoformat(),
            'project_title': d.project.title,
        }
        for d in donations
    ]


@require_http_methods(['GET', 'POST'])
def projects(request):
    if request.method == 'POST':
        return _create_project(request)
    status = request.GET.get('status') or Project.STATUS_ACTIVE
    category = request.GET.get('category')
    try:
        limit = int_param(request.GET.get('limit'))
    except BadRequest as exc:
        return error(str(exc))
    qs = Project.objects.all()
    if status != 'all':
        qs = qs.filter(status=status)
    if category:
        qs = qs.filter(category=category)
    qs = _with_totals(qs).order_by('-created_at')
    if limit:
        qs = qs[:limit]
    data = []
    for project in qs:
        total = project.completed_sum
        if total != project.current_amount:
            # Stored total drifted from the donations: repair on read
            logger.warning('project_total_drift', project_id=project.pk,
                           stored=str(project.current_amount), computed=str(total))
            total = project.recompute_total()
        data.append(project_dict(project, total, project.completed_n))
    return JsonResponse(data, safe=False)


@staff_required
def _create_project(request):
    try:
        data = json_body(request)
    except BadRequest as exc:
        return error(str(exc))
    form = ProjectForm(data)
    if not form.is_valid():
        return error(form.first_error())
    project = form.save()
    logger.info('project_created', project_id=project.pk, actor=request.user.get_username())
    return JsonResponse(project_dict(project, donation_count=0), status=201)


@require_http_methods(['GET', 'PUT', 'DELETE'])
def project_detail(request, pk):
    project = Project.objects.filter(pk=pk).first()
    if project is None:
        return error('Project not found', status=404)
    if request.method == 'PUT':
        return _update_project(request, project)
    if request.method == 'DELETE':
        return _delete_project(request, project)
    project.recompute_total()
    recent = project.donations.filter(status=Donation.STATUS_COMPLETED).select_related('project')[:10]
    data = project_dict(project, donation_count=project.donations.filter(status=Donation.STATUS_COMPLETED).count())
    data['recent_donations'] = [
        {k: v for k, v in row.items() if k != 'project_title'} for row in _anonymized(recent)
    ]
    return JsonResponse(data)


@staff_required
def _update_project(request, project):
    try:
        data = json_body(request)
    except BadRequest as exc:
        return error(str(exc))
    form = ProjectForm(data, instance=project)
    if not form.is_valid():
        return error(form.first_error())
    project = form.save(commit=False)
    # current_amount is only written by the donation ledger
    project.save(update_fields=ProjectForm.Meta.fields + ['updated_at'])
    logger.info('project_updated', project_id=project.pk, actor=request.user.get_username())
    return JsonResponse(project_dict(project))


@staff_required
def _delete_project(request, project):
    pk = project.pk
    project.delete()
    logger.info('project_deleted', project_id=pk, actor=request.user.get_username())
    return JsonResponse({'message': 'Project deleted successfully'})


@require_http_methods(['GET'])
def stats(request):
    completed = Donation.objects.filter(status=Donation.STATUS_COMPLETED)
    totals = completed.aggregate(count=Count('id'), amount=Coalesce(Sum('amount'), Decimal('0')))
    recent = completed.select_related('project').order_by('-created_at')[:10]
    by_category = (
        Project.objects.values('category')
        .annotate(
            donation_count=Count('donations', filter=COMPLETED),
            total_amount=Coalesce(Sum('donations__amount', filter=COMPLETED), Decimal('0')),
        )
        .order_by('-total_amount')
    )
    since = timezone.now() - timedelta(days=183)
    monthly = (
        completed.filter(created_at__gte=since)
        .annotate(month=TruncMonth('created_at'))
        .values('month')
        .annotate(donation_count=Count('id'), total_amount=Sum('amount'))
        .order_by('-month')
    )
    return JsonResponse({
        'total_projects': Project.objects.count(),
        'active_projects': Project.objects.filter(status=Project.STATUS_ACTIVE).count(),
        'total_donations': totals['count'],
        'total_amount_raised': float(totals['amount']),
        'recent_donations': _anonymized(recent),
        'donations_by_category': [
            {'category': row['category'], 'donation_count': row['donation_count'],
             'total_amount': float(row['total_amount'])}
            for row in by_category
        ],
        'monthly_trends': [
            {'month': row['month'].strftime('%Y-%m'), 'donation_count': row['donation_count'],
             'total_amount': float(row['total_amount'] or 0)}
            for row in monthly
        ],
    })


@csrf_exempt
@require_http_methods(['POST'])
def admin_login(request):
    if request.login_locked:
        return error(
            'Too many failed attempts. Try again later.',
            status=429,
            retry_after=request.login_lock_remaining,
        )
    try:
        data = json_body(request)
    except BadRequest as exc:
        return error(str(exc))
    username, password = data.get('username'), data.get('password')
    if not username or not password:
        return error('Username and password are required')
    # Passing the request lets the login signals track failures in the session
    user = authenticate(request, username=username, password=password)
    if user is None or not user.is_staff:
        return error('Invalid username or password', status=401)
    login(request, user)
    return JsonResponse({
        'success': True,
        'user': {'id': user.pk, 'username': user.get_username(), 'email': user.email},
    })


@require_http_methods(['GET', 'PUT', 'POST'])
@staff_required
def admin_settings(request):
    if request.method == 'GET':
        return JsonResponse({'success': True, 'settings': SiteSetting.as_dict()})
    if request.method == 'POST':
        SiteSetting.reset_defaults()
        logger.info('site_settings_reset', actor=request.user.get_username())
        return JsonResponse({'success': True, 'message': 'Settings reset to defaults successfully'})

    try:
        data = json_body(request)
    except BadRequest as exc:
        return error(str(exc), success=False)
    values = data.get('settings')
    if not isinstance(values, dict) or not values:
        return error('Invalid settings data', success=False)
    with transaction.atomic():
        # Unknown keys are ignored
        for key, value in values.items():
            SiteSetting.objects.filter(key=key).update(
                value=SiteSetting.to_storage(value), updated_at=timezone.now()
            )
    logger.info('site_settings_updated', keys=sorted(values), actor=request.user.get_username())
    return JsonResponse({'success': True, 'message': 'Settings updated successfully'})


@require_http_methods(['POST', 'DELETE'])
@staff_required
def upload_image(request):
    if request.method == 'DELETE':
        return _delete_image(request)
    upload = request.FILES.get('image')
    if upload is None:
        return error('No image file provided')
    if upload.content_type not in ALLOWED_IMAGE_TYPES:
        return error('Invalid file type. Only JPEG, PNG, GIF, and WebP images are allowed.')
    if upload.size > settings.UPLOAD_MAX_BYTES:
        return error('File size too large. Maximum size is 5MB.')
    try:
        data, ext = optimize_image(upload)
    except (OSError, ValueError):
        return error('Invalid image file')
    filename = f"project_{int(time.time() * 1000)}_{secrets.token_hex(6)}.{ext}"
    name = default_storage.save(f"{UPLOAD_DIR}/{filename}", ContentFile(data))
    logger.info('project_image_uploaded', filename=filename, size=len(data), original_size=upload.size)
    return JsonResponse({
        'success': True,
        'imageUrl': default_storage.url(name),
        'filename': PurePosixPath(name).name,
        'size': len(data),
        'type': 'image/jpeg' if ext == 'jpg' else 'image/png',
    })


def _delete_image(request):
    filename = request.GET.get('filename')
    if not filename:
        return error('Filename is required')
    if '..' in filename or '/' in filename or '\\' in filename:
        return error('Invalid filename')
    name = f"{UPLOAD_DIR}/{filename}"
    if not default_storage.exists(name):
        return error('Image not found', status=404)
    default_storage.delete(name)
    logger.info('project_image_deleted', filename=filename)
    return JsonResponse({'success': True, 'message': 'Image deleted successfully'})
