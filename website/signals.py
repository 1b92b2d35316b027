import structlog
from django.conf import settings
from django.contrib.auth.signals import user_login_failed, user_logged_in
from django.dispatch import receiver
from django.utils import timezone

logger = structlog.get_logger(__name__)

FAIL_KEY = 'admin_login_fail_count'
LOCK_UNTIL_KEY = 'admin_login_lock_until'


def lock_remaining(session):
    """Seconds left on the session's login lock, 0 when unlocked."""
    lock_until = session.get(LOCK_UNTIL_KEY)
    if not lock_until:
        return 0
    try:
        remaining = (timezone.datetime.fromisoformat(lock_until) - timezone.now()).total_seconds()
    except (TypeError, ValueError):
        session.pop(LOCK_UNTIL_KEY, None)
        return 0
    return max(0, int(remaining))


@receiver(user_login_failed)
def login_failed(sender, credentials, request=None, **kwargs):
    if request is None:
        return
    # Already locked: the attempt does not count
    if lock_remaining(request.session):
        return
    count = request.session.get(FAIL_KEY, 0) + 1
    request.session[FAIL_KEY] = count
    logger.warning('admin_login_failed', username=credentials.get('username'), attempts=count)
    if count >= settings.ADMIN_LOGIN_FAIL_THRESHOLD:
        lock_time = timezone.now() + timezone.timedelta(minutes=settings.ADMIN_LOGIN_LOCK_MINUTES)
        request.session[LOCK_UNTIL_KEY] = lock_time.isoformat()
        logger.warning('admin_login_locked', until=lock_time.isoformat())


@receiver(user_logged_in)
def login_success(sender, request, user, **kwargs):
    if request is None:
        return
    for key in (FAIL_KEY, LOCK_UNTIL_KEY):
        request.session.pop(key, None)
    logger.info('admin_login_succeeded', username=user.get_username())
