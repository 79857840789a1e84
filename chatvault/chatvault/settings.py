"""
Django settings for the chatvault project.

The project runs headless: no views, templates or middleware. Every value that
differs between machines can be overridden from the environment.
"""

import os
from pathlib import Path

from django.core.exceptions import ImproperlyConfigured

BASE_DIR = Path(__file__).resolve().parent.parent


def env_int(name, default):
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ImproperlyConfigured(f'{name} must be an integer') from exc


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'chatvault-local-only')
DEBUG = os.environ.get('DJANGO_DEBUG', 'false').lower() == 'true'
ALLOWED_HOSTS = []

INSTALLED_APPS = [
    'core',
    'vault',
    'accounts',
    'chats',
    'assistant',
]

# Document directory holding data.json, data.json.bak and the SQLite database
CHATVAULT_DOCUMENT_DIR = Path(os.environ.get('CHATVAULT_DOCUMENT_DIR', BASE_DIR / 'var'))

# flatfile | relational | auto
CHATVAULT_STORAGE_BACKEND = os.environ.get('CHATVAULT_STORAGE_BACKEND', 'auto')

# file | memory
CHATVAULT_KEYSTORE_BACKEND = os.environ.get('CHATVAULT_KEYSTORE_BACKEND', 'file')
CHATVAULT_KEYSTORE_PATH = Path(
    os.environ.get('CHATVAULT_KEYSTORE_PATH', CHATVAULT_DOCUMENT_DIR / 'keystore.json')
)

CHATVAULT_HISTORY_WINDOW = env_int('CHATVAULT_HISTORY_WINDOW', 10)

CHATVAULT_OPENROUTER_URL = os.environ.get('CHATVAULT_OPENROUTER_URL', 'https://openrouter.ai/api/v1')
CHATVAULT_GEMINI_URL = os.environ.get(
    'CHATVAULT_GEMINI_URL', 'https://generativelanguage.googleapis.com/v1beta'
)
CHATVAULT_PROVIDER_TIMEOUT = env_int('CHATVAULT_PROVIDER_TIMEOUT', 60)
CHATVAULT_APP_TITLE = os.environ.get('CHATVAULT_APP_TITLE', 'ChatVault')

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': CHATVAULT_DOCUMENT_DIR / 'SQLite' / 'chatvault.db',
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

USE_TZ = True
TIME_ZONE = 'UTC'

# Logging
CHATVAULT_LOG_LEVEL = os.environ.get('CHATVAULT_LOG_LEVEL', 'INFO').upper()
CHATVAULT_LOG_FORMAT = os.environ.get('CHATVAULT_LOG_FORMAT', 'verbose')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {name} {message}',
            'style': '{',
        },
        'json': {
            '()': 'core.logging_formatters.StructuredJSONFormatter',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': CHATVAULT_LOG_FORMAT,
        },
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'chatvault.security': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'alerts': {
            'handlers': ['console'],
            'level': 'ERROR',
            'propagate': False,
        },
        **{
            name: {
                'handlers': ['console'],
                'level': CHATVAULT_LOG_LEVEL,
                'propagate': False,
            }
            for name in ('core', 'vault', 'accounts', 'chats', 'assistant')
        },
    },
}
