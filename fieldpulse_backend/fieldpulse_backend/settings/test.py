from .base import *  # noqa: F401,F403

DEBUG = False
SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'

ANALYSIS_PROVIDER = 'apps.analysis.services.imagery_providers.StaticImageryProvider'
ANALYSIS_PROVIDER_TIMEOUT_SECONDS = 5
GEE_SERVICE_ACCOUNT = None
GEE_PRIVATE_KEY = None

LOGGING['loggers']['apps']['level'] = 'CRITICAL'  # noqa: F405
