from django.utils.deprecation import MiddlewareMixin

from .signals import FAIL_KEY, LOCK_UNTIL_KEY, lock_remaining


class LoginAttemptMiddleware(MiddlewareMixin):
    """Expose the failed-login counter and lock state on the request."""

    def process_request(self, request):
        fail_count = request.session.get(FAIL_KEY, 0)
        remaining = lock_remaining(request.session)
        if not remaining and LOCK_UNTIL_KEY in request.session:
            # Lock expired: reset
            request.session.pop(LOCK_UNTIL_KEY, None)
            request.session[FAIL_KEY] = 0
            fail_count = 0
        request.login_fail_count = fail_count
        request.login_locked = remaining > 0
        request.login_lock_remaining = remaining
