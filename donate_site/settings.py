import os
from pathlib import Path

import structlog

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes')


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY') or 'replace-this-with-a-secure-secret-in-production'

DEBUG = env_bool('DJANGO_DEBUG', True)

ALLOWED_HOSTS = [h.strip() for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',') if h.strip()]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'website',
    'payments',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'website.middleware.LoginAttemptMiddleware',
]

ROOT_URLCONF = 'donate_site.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'donate_site.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('DATABASE_PATH') or BASE_DIR / ('donations.db' if DEBUG else 'donations_prod.db'),
    }
}

AUTH_PASSWORD_VALIDATORS = []

LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'Africa/Nairobi'

USE_I18N = True

USE_TZ = True

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

MEDIA_URL = '/media/'
MEDIA_ROOT = Path(os.environ.get('MEDIA_ROOT') or BASE_DIR / 'media')

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

CSRF_TRUSTED_ORIGINS = [
    'http://localhost:8000',
    'http://127.0.0.1:8000',
]
CSRF_COOKIE_HTTPONLY = True

# === Admin login lockout ===
ADMIN_LOGIN_FAIL_THRESHOLD = 3
ADMIN_LOGIN_LOCK_MINUTES = 2

# === Donations ===
DONATION_CURRENCY = 'KES'
DONATION_MAX_AMOUNT = int(os.environ.get('DONATION_MAX_AMOUNT', '1000000'))

# Seconds. The simulated provider settles after PAYMENT_SETTLE_AFTER; an open
# donation is expired once PAYMENT_EXPIRE_AFTER has elapsed.
PAYMENT_SETTLE_AFTER = int(os.environ.get('PAYMENT_SETTLE_AFTER', '30'))
PAYMENT_EXPIRE_AFTER = int(os.environ.get('PAYMENT_EXPIRE_AFTER', '120'))
PAYMENT_POLL_INTERVAL = int(os.environ.get('PAYMENT_POLL_INTERVAL', '10'))

# === M-Pesa (Daraja) ===
# 'simulated' or 'live'. Chosen once at startup, never switched per request.
MPESA_PROVIDER = os.environ.get('MPESA_PROVIDER', 'simulated')
MPESA_ENVIRONMENT = os.environ.get('MPESA_ENVIRONMENT', 'sandbox')
MPESA_BASE_URL = os.environ.get('MPESA_BASE_URL') or (
    'https://api.safaricom.co.ke' if MPESA_ENVIRONMENT == 'production' else 'https://sandbox.safaricom.co.ke'
)
MPESA_CONSUMER_KEY = os.environ.get('MPESA_CONSUMER_KEY', '')
MPESA_CONSUMER_SECRET = os.environ.get('MPESA_CONSUMER_SECRET', '')
MPESA_SHORTCODE = os.environ.get('MPESA_SHORTCODE', '174379')
MPESA_PASSKEY = os.environ.get('MPESA_PASSKEY', '')
MPESA_CALLBACK_URL = os.environ.get('MPESA_CALLBACK_URL', 'https://example.com/api/mpesa/callback')
MPESA_TIMEOUT = float(os.environ.get('MPESA_TIMEOUT', '15'))
# Shared secret for the X-Callback-Signature HMAC on inbound callbacks
MPESA_CALLBACK_SECRET = os.environ.get('MPESA_CALLBACK_SECRET', '')
# Dev only (1/true/yes)
MPESA_CALLBACK_VERIFY_DISABLED = env_bool('MPESA_CALLBACK_VERIFY_DISABLED', False)

# === Uploads ===
UPLOAD_MAX_BYTES = 5 * 1024 * 1024
UPLOAD_MAX_WIDTH = 1600

# === Logging (structlog) ===
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
LOG_JSON = env_bool('LOG_JSON', not DEBUG)

_shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt='iso'),
    structlog.processors.StackInfoRenderer(),
]

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'structured': {
            '()': structlog.stdlib.ProcessorFormatter,
            'processors': [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer() if LOG_JSON else structlog.dev.ConsoleRenderer(colors=False),
            ],
            'foreign_pre_chain': _shared_processors,
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'structured',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
    'loggers': {
        'django.request': {'level': 'ERROR'},
    },
}

structlog.configure(
    processors=_shared_processors + [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.UnicodeDecoder(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)
