import json
from functools import wraps

from django.http import JsonResponse


class BadRequest(Exception):
    pass


def json_body(request):
    try:
        data = json.loads(request.body.decode('utf-8') or '{}')
    except (UnicodeDecodeError, ValueError):
        raise BadRequest('Invalid JSON payload')
    if not isinstance(data, dict):
        raise BadRequest('Invalid JSON payload')
    return data


def error(message, status=400, **extra):
    return JsonResponse({'error': message, **extra}, status=status)


def int_param(value, default=None):
    if value in (None, ''):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise BadRequest(f'Invalid integer: {value}')
    if number < 0:
        raise BadRequest(f'Must not be negative: {value}')
    return number


def staff_required(view):
    """JSON counterpart of staff_member_required: 401/403 instead of a redirect."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return error('Authentication required', status=401)
        if not request.user.is_staff:
            return error('Staff access required', status=403)
        return view(request, *args, **kwargs)
    return wrapper
