"""
Django settings for the AgentChat backend.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv('DEBUG', 'False').lower() in ('true', '1', 'yes')

ALLOWED_HOSTS = [
    h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',')
]

# Application definition
INSTALLED_APPS = [
    'daphne',  # ASGI server for Channels
    'django.contrib.contenttypes',
    'channels',
    'apps.authn',
    'apps.filesearch',
    'apps.conversations',
    'apps.docs',
    'apps.rag',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
    'apps.authn.middleware.CallerIdentityMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = []

ASGI_APPLICATION = 'config.asgi.application'

# Database
# Using environment variable for database URL
DATABASE_URL = os.getenv('DATABASE_URL', '')
if DATABASE_URL:
    import re
    match = re.match(
        r'postgres(?:ql)?://(?P<user>[^:]+):(?P<password>[^@]+)@(?P<host>[^:]+):(?P<port>\d+)/(?P<name>.+)',
        DATABASE_URL
    )
    if match:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.postgresql',
                'NAME': match.group('name'),
                'USER': match.group('user'),
                'PASSWORD': match.group('password'),
                'HOST': match.group('host'),
                'PORT': match.group('port'),
            }
        }
    else:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.sqlite3',
                'NAME': BASE_DIR / 'db.sqlite3',
            }
        }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =============================================================================
# Caller identity
# =============================================================================
# Sessions are issued by the upstream auth layer, which forwards the
# authenticated user id in this header. Never expose the backend directly.
TRUSTED_USER_HEADER = os.getenv('TRUSTED_USER_HEADER', 'X-User-Id')

# =============================================================================
# Redis / Channels
# =============================================================================
REDIS_URL = os.getenv('REDIS_URL', '')

if REDIS_URL:
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels_redis.core.RedisChannelLayer',
            'CONFIG': {
                'hosts': [REDIS_URL],
            },
        },
    }
else:
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels.layers.InMemoryChannelLayer',
        },
    }

# =============================================================================
# Rate limiting
# =============================================================================
# Shared (Redis) sliding window when a URL is configured, in-process otherwise.
RATE_LIMIT_REDIS_URL = os.getenv('RATE_LIMIT_REDIS_URL', REDIS_URL)

# Seconds to wait on the shared store before falling back to local counters
RATE_LIMIT_TIMEOUT = float(os.getenv('RATE_LIMIT_TIMEOUT', '0.5'))

# How often expired in-process records are swept (seconds)
RATE_LIMIT_SWEEP_INTERVAL = float(os.getenv('RATE_LIMIT_SWEEP_INTERVAL', '60'))

# =============================================================================
# Gemini
# =============================================================================
GEMINI_API_KEY = os.getenv('GEMINI_API_KEY', '')
GEMINI_MODEL = os.getenv('GEMINI_MODEL', 'gemini-2.5-flash')
GEMINI_BASE_URL = os.getenv('GEMINI_BASE_URL', 'https://generativelanguage.googleapis.com')
GEMINI_TIMEOUT = int(os.getenv('GEMINI_TIMEOUT', '120'))

# File Search store lookups are cached in-process for this many seconds
FILE_SEARCH_CACHE_TTL = int(os.getenv('FILE_SEARCH_CACHE_TTL', '3600'))

# Seconds to wait for a File Search import before reporting 'processing'
FILE_SEARCH_IMPORT_TIMEOUT = float(os.getenv('FILE_SEARCH_IMPORT_TIMEOUT', '60'))

# When True, chat continues without retrieval if the agent's store
# cannot be resolved. Default is to fail the request with 503.
CHAT_ALLOW_UNGROUNDED = os.getenv('CHAT_ALLOW_UNGROUNDED', 'False').lower() in ('true', '1', 'yes')

# =============================================================================
# File Upload Configuration
# =============================================================================
# Maximum file size in bytes (100MB, the File Search limit)
MAX_UPLOAD_SIZE = int(os.getenv('MAX_UPLOAD_SIZE', 100 * 1024 * 1024))

# Allowed MIME types for upload
ALLOWED_CONTENT_TYPES = [
    # Documents
    'application/pdf',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'application/msword',
    'text/plain',
    'text/markdown',
    'text/csv',
    # Data files
    'application/json',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'application/vnd.ms-excel',
    # Code files
    'text/javascript',
    'application/javascript',
    'text/typescript',
    'application/typescript',
    'text/x-python',
    'application/x-python',
    'text/html',
    'text/css',
    'application/xml',
    'text/xml',
]

# Code files often arrive as application/octet-stream
ALLOWED_CODE_EXTENSIONS = [
    '.js', '.jsx', '.ts', '.tsx', '.py', '.java', '.cpp', '.c', '.h',
    '.cs', '.go', '.rs', '.rb', '.php', '.swift', '.kt', '.scala',
    '.sh', '.bash', '.yml', '.yaml', '.json', '.xml', '.sql',
]

# =============================================================================
# Logging
# =============================================================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
        'json': {
            'format': '%(message)s',  # Audit logs are already JSON
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'audit': {
            'class': 'logging.StreamHandler',
            'formatter': 'json',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'audit': {
            'handlers': ['audit'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
