"""
Django settings for the pixelpoints project.

Values are read from the process environment; a ``.env`` file at the repository
root is loaded first so local development needs no exported variables.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

#load .env
env_path = BASE_DIR.parent / '.env'
load_dotenv(env_path)


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-local-development-key')

DEBUG = _env_bool('DJANGO_DEBUG', False)

ALLOWED_HOSTS = [host for host in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',') if host]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'rest_framework.authtoken',
    'django_filters',
    'billing',
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

ROOT_URLCONF = 'pixelpoints.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'pixelpoints.wsgi.application'

DB_ENGINE = os.environ.get('DB_ENGINE', 'django.db.backends.sqlite3')
if DB_ENGINE.endswith('sqlite3'):
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': os.environ.get('DB_NAME', str(BASE_DIR / 'db.sqlite3')),
            # Writers queue on the database lock instead of failing to upgrade a read lock.
            'OPTIONS': {
                'timeout': 20,
                'transaction_mode': 'IMMEDIATE',
            },
            # File-backed so threads in transactional tests share one database.
            'TEST': {
                'NAME': str(BASE_DIR / 'test_db.sqlite3'),
            },
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': os.environ.get('DB_NAME', 'pixelpoints'),
            'USER': os.environ.get('DB_USER', ''),
            'PASSWORD': os.environ.get('DB_PASSWORD', ''),
            'HOST': os.environ.get('DB_HOST', 'localhost'),
            'PORT': os.environ.get('DB_PORT', '5432'),
            'ATOMIC_REQUESTS': False,
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

ADMINS = [
    tuple(entry.split(':', 1))
    for entry in os.environ.get('DJANGO_ADMINS', '').split(',')
    if ':' in entry
]
EMAIL_BACKEND = os.environ.get('EMAIL_BACKEND', 'django.core.mail.backends.console.EmailBackend')
DEFAULT_FROM_EMAIL = os.environ.get('DEFAULT_FROM_EMAIL', 'billing@pixelpoints.local')
SERVER_EMAIL = DEFAULT_FROM_EMAIL

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.TokenAuthentication',
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_FILTER_BACKENDS': [
        'django_filters.rest_framework.DjangoFilterBackend',
        'rest_framework.filters.OrderingFilter',
    ],
}

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/1')
CELERY_TASK_ALWAYS_EAGER = _env_bool('CELERY_TASK_ALWAYS_EAGER', False)

# Stripe
STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET', '')
STRIPE_API_VERSION = os.environ.get('STRIPE_API_VERSION', '')
STRIPE_CURRENCY = os.environ.get('STRIPE_CURRENCY', 'usd')
STRIPE_SUCCESS_URL = os.environ.get('STRIPE_SUCCESS_URL', '')
STRIPE_CANCEL_URL = os.environ.get('STRIPE_CANCEL_URL', '')
BILLING_PUBLIC_BASE_URL = os.environ.get('BILLING_PUBLIC_BASE_URL', 'http://localhost:3000/')

# Points and quota policy
BILLING_DAILY_FREE_USES = _env_int('BILLING_DAILY_FREE_USES', 10)
BILLING_GENERATION_COST = _env_int('BILLING_GENERATION_COST', 10)
BILLING_PACKAGE_VALIDITY_DAYS = _env_int('BILLING_PACKAGE_VALIDITY_DAYS', 60)
BILLING_EXPIRY_WARNING_DAYS = _env_int('BILLING_EXPIRY_WARNING_DAYS', 7)
BILLING_ALLOW_LEGACY_PRICE_FALLBACK = _env_bool('BILLING_ALLOW_LEGACY_PRICE_FALLBACK', False)
BILLING_SWEEP_EXPIRED_PACKAGE_POINTS = _env_bool('BILLING_SWEEP_EXPIRED_PACKAGE_POINTS', False)

# Seed catalog; Stripe product ids are optional and only used for reporting
BILLING_SUBSCRIPTION_PLANS = {
    "monthly": {
        "name": "Monthly",
        "price": "16.90",
        "duration_unit": "month",
        "points": 680,
        "stripe_product_id": os.environ.get('STRIPE_PRODUCT_MONTHLY', ''),
        "sort_order": 1,
    },
    "yearly": {
        "name": "Yearly",
        "price": "118.80",
        "duration_unit": "year",
        "points": 8000,
        "stripe_product_id": os.environ.get('STRIPE_PRODUCT_YEARLY', ''),
        "sort_order": 2,
    },
}

BILLING_POINTS_PACKAGES = {
    "points_500": {"name": "500 Points", "price": "4.90", "points": 500, "bonus_points": 0, "sort_order": 1},
    "points_1200": {"name": "1200 Points", "price": "9.90", "points": 1100, "bonus_points": 100, "sort_order": 2},
    "points_3000": {"name": "3000 Points", "price": "19.90", "points": 2600, "bonus_points": 400, "sort_order": 3},
}

BILLING_LEGACY_PRICE_POINTS = {
    "16.90": 680,
    "118.80": 8000,
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': os.environ.get('DJANGO_LOG_LEVEL', 'INFO'),
    },
    'loggers': {
        'billing': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'billing.alerts': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
    },
}
