"""
Django settings for the run_engine project.

Everything environment-specific is read from environment variables so the same
module serves the API process, the Celery workers and the test suite.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('SECRET_KEY', 'run-engine-insecure-dev-key')
DEBUG = os.environ.get('DEBUG', 'false').lower() in ('1', 'true', 'yes')
ALLOWED_HOSTS = [h for h in os.environ.get('ALLOWED_HOSTS', '*').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'patients',
    'dialer',
    'events',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
]

ROOT_URLCONF = 'run_engine.urls'

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

# ============================================================================
# DATABASE
# ============================================================================

DB_ENGINE = os.environ.get('DB_ENGINE', 'django.db.backends.sqlite3')

if DB_ENGINE.endswith('sqlite3'):
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': os.environ.get('DB_NAME', str(BASE_DIR / 'db.sqlite3')),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': os.environ.get('DB_NAME', 'run_engine'),
            'USER': os.environ.get('DB_USER', ''),
            'PASSWORD': os.environ.get('DB_PASSWORD', ''),
            'HOST': os.environ.get('DB_HOST', 'localhost'),
            'PORT': os.environ.get('DB_PORT', '5432'),
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

USE_TZ = True
TIME_ZONE = 'UTC'
STATIC_URL = 'static/'

# ============================================================================
# REDIS / CELERY
# ============================================================================

REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')

CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', REDIS_URL)
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', REDIS_URL)
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = TIME_ZONE

CELERY_BEAT_SCHEDULE = {
    'check-scheduled-runs': {
        'task': 'dialer.tasks.check_scheduled_runs',
        'schedule': 60.0,
    },
    'sweep-running-runs': {
        'task': 'dialer.tasks.sweep_running_runs',
        'schedule': 60.0,
    },
}

# ============================================================================
# CALL PROVIDER
# ============================================================================

RETELL_API_KEY = os.environ.get('RETELL_API_KEY', '')
RETELL_BASE_URL = os.environ.get('RETELL_BASE_URL', 'https://api.retellai.com')
RETELL_TIMEOUT_SECONDS = float(os.environ.get('RETELL_TIMEOUT_SECONDS', '30'))

# ============================================================================
# RUN ENGINE
# ============================================================================

DEFAULT_TIMEZONE = os.environ.get('DEFAULT_TIMEZONE', 'America/New_York')

# Two-digit birth years implying an age above this are read as last century.
INGESTION_TWO_DIGIT_YEAR_MAX_AGE = int(os.environ.get('INGESTION_TWO_DIGIT_YEAR_MAX_AGE', '80'))

METRIC_DEBOUNCE_SECONDS = float(os.environ.get('METRIC_DEBOUNCE_SECONDS', '0.5'))

# ============================================================================
# LOGGING
# ============================================================================

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
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
        'level': 'WARNING',
    },
    'loggers': {
        'dialer': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'events': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'ingestion': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'patients': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'run_engine': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
    },
}
