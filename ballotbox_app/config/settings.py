from pathlib import Path
import os
import sys

import environ
from django.core.exceptions import ImproperlyConfigured

BASE_DIR = Path(__file__).resolve().parent.parent

env = environ.Env(
    DEBUG=(bool, False),
)

# Optional local env file support (deployments usually set env vars directly).
environ.Env.read_env(os.path.join(BASE_DIR, ".env"))

DEBUG = env.bool("DEBUG", default=False)

# Management commands (migrate, import_voters, ...) and the test runner must not
# require web runtime secrets.
_RUNNING_MANAGEMENT_COMMAND = (
    Path(sys.argv[0]).name == "manage.py" and len(sys.argv) > 1 and sys.argv[1] != "runserver"
)
_RUNNING_TESTS = "pytest" in sys.modules or sys.argv[1:2] == ["test"]
_RELAX_RUNTIME_REQUIREMENTS = _RUNNING_MANAGEMENT_COMMAND or _RUNNING_TESTS

SECRET_KEY = env(
    "SECRET_KEY",
    default="django-insecure-dev-only-change-me",
)
if not DEBUG and not _RELAX_RUNTIME_REQUIREMENTS and SECRET_KEY.startswith("django-insecure-dev-only"):
    raise ImproperlyConfigured("SECRET_KEY must be set in production.")

_dev_allowed_hosts = ["localhost", "127.0.0.1", "[::1]"]
ALLOWED_HOSTS = env.list(
    "ALLOWED_HOSTS",
    default=_dev_allowed_hosts if DEBUG or _RELAX_RUNTIME_REQUIREMENTS else [],
)
if not DEBUG and not _RELAX_RUNTIME_REQUIREMENTS and not ALLOWED_HOSTS:
    raise ImproperlyConfigured("ALLOWED_HOSTS must be set in production.")

INSTALLED_APPS = [
    'jazzmin',
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'voting',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

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

WSGI_APPLICATION = 'config.wsgi.application'

# Database
# https://docs.djangoproject.com/en/5.1/ref/settings/#databases
# Token redemption relies on a single conditional UPDATE; any backend Django
# supports gives that statement row-level atomicity.
DATABASES = {
    'default': {
        **env.db(
            'DATABASE_URL',
            default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}",
        ),
    }
}

JAZZMIN_SETTINGS = {
    "site_title": "Ballotbox",
    "site_header": "Ballotbox",
    "welcome_sign": "Election administration",
}

# Password validation
# https://docs.djangoproject.com/en/5.1/ref/settings/#auth-password-validators
AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Security
# Keep these production-oriented but configurable; many deployments sit behind
# a TLS-terminating proxy/load balancer.
if not DEBUG:
    if env.bool("SECURE_PROXY_SSL", default=True):
        SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

    SECURE_SSL_REDIRECT = env.bool("SECURE_SSL_REDIRECT", default=False)
    SESSION_COOKIE_SECURE = env.bool("SESSION_COOKIE_SECURE", default=True)
    CSRF_COOKIE_SECURE = env.bool("CSRF_COOKIE_SECURE", default=True)
    SECURE_CONTENT_TYPE_NOSNIFF = True
    SECURE_REFERRER_POLICY = env("SECURE_REFERRER_POLICY", default="same-origin")
    CSRF_TRUSTED_ORIGINS = env.list("CSRF_TRUSTED_ORIGINS", default=[])

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Voting
# Hours until a freshly issued voter token expires. Unset means tokens never expire.
VOTING_DEFAULT_TOKEN_EXPIRY_HOURS = env.int("VOTING_DEFAULT_TOKEN_EXPIRY_HOURS", default=None)

# Submission IP/user-agent kept next to each vote for abuse analysis. Disable for
# deployments that want vote rows to carry selections only.
VOTING_RECORD_SUBMISSION_METADATA = env.bool("VOTING_RECORD_SUBMISSION_METADATA", default=True)

# When enabled, redeeming a voter token and writing every vote row of the
# submission commit in one transaction. When disabled, redemption commits first
# and a failed vote write leaves the token consumed (reported as a fatal error).
VOTING_ATOMIC_VOTE_WRITES = env.bool("VOTING_ATOMIC_VOTE_WRITES", default=True)

# Upper bound on data rows accepted by the voter CSV import endpoint.
VOTING_IMPORT_MAX_ROWS = env.int("VOTING_IMPORT_MAX_ROWS", default=10_000)

# Logging
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'filters': {
        'redact_voter_tokens': {
            '()': 'voting.logging_filters.RedactVoterTokenFilter',
        },
    },
    'formatters': {
        'console': {
            'format': '[{asctime}] {levelname} {name}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'console',
            'filters': ['redact_voter_tokens'],
        },
    },
    'loggers': {
        'voting': {
            'handlers': ['console'],
            'level': 'DEBUG' if DEBUG else 'INFO',
            'propagate': False,
        },
        'django.request': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'django.server': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
