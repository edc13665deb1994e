"""
Django settings for the UJANI WhatsApp shop.
Mauzo kupitia WhatsApp - Dar es Salaam

Configuration for:
- WhatsApp Cloud API webhook (Meta)
- Redis/Celery (outbound messages, USSD push)
- Delivery fee quoting from the Dar es Salaam location table
"""

from pathlib import Path
from decouple import config, Csv

# ===========================================
# BASE CONFIGURATION
# ===========================================
BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config('SECRET_KEY', default='dev-secret-key-change-in-production')
DEBUG = config('DEBUG', default=True, cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1,0.0.0.0', cast=Csv())

# ===========================================
# APPLICATION DEFINITION
# ===========================================
INSTALLED_APPS = [
    # Django Core
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Third Party
    'rest_framework',

    # UJANI Apps
    'core.apps.CoreConfig',
    'logistics.apps.LogisticsConfig',
    'finance.apps.FinanceConfig',
    'bot.apps.BotConfig',
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

ROOT_URLCONF = 'ujani_core.urls'

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

WSGI_APPLICATION = 'ujani_core.wsgi.application'

# ===========================================
# DATABASE
# ===========================================
DB_ENGINE = config('DB_ENGINE', default='django.db.backends.sqlite3')

if DB_ENGINE.endswith('sqlite3'):
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': config('DB_NAME', default=str(BASE_DIR / 'db.sqlite3')),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': config('DB_NAME', default='ujani_db'),
            'USER': config('DB_USER', default='ujani_user'),
            'PASSWORD': config('DB_PASSWORD', default=''),
            'HOST': config('DB_HOST', default='db'),
            'PORT': config('DB_PORT', default='5432'),
        }
    }

# ===========================================
# PASSWORD VALIDATION
# ===========================================
AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

# ===========================================
# INTERNATIONALIZATION (Tanzania)
# ===========================================
LANGUAGE_CODE = 'sw'
TIME_ZONE = 'Africa/Dar_es_Salaam'
USE_I18N = True
USE_TZ = True

# ===========================================
# STATIC FILES
# ===========================================
STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# ===========================================
# DEFAULT PRIMARY KEY
# ===========================================
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ===========================================
# DJANGO REST FRAMEWORK
# ===========================================
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAdminUser',
    ],
}

# ===========================================
# REDIS & CELERY CONFIGURATION
# ===========================================
REDIS_URL = config('REDIS_URL', default='')

# Cache (message-id de-duplication); Redis when configured
if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': REDIS_URL,
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'ujani-local',
        }
    }

# Celery
CELERY_BROKER_URL = config('CELERY_BROKER_URL', default='redis://redis:6379/0')
CELERY_RESULT_BACKEND = config('CELERY_RESULT_BACKEND', default='redis://redis:6379/0')
CELERY_TASK_ALWAYS_EAGER = config('CELERY_TASK_ALWAYS_EAGER', default=False, cast=bool)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE

# ===========================================
# WHATSAPP (META CLOUD API)
# ===========================================
META_API_URL = config('META_API_URL', default='https://graph.facebook.com/v20.0')
META_API_TOKEN = config('META_API_TOKEN', default='')
META_PHONE_NUMBER_ID = config('META_PHONE_NUMBER_ID', default='')
META_VERIFY_TOKEN = config('META_VERIFY_TOKEN', default='ujani-webhook-verify-token')
META_APP_SECRET = config('META_APP_SECRET', default='')

# Receives payment proofs and agent hand-offs
ADMIN_WA_NUMBER = config('ADMIN_WA_NUMBER', default='')

# ===========================================
# CONVERSATION & ORDERS
# ===========================================
# 'memory' keeps everything in-process, 'django' uses the ORM models
UJANI_STORE_BACKEND = config('UJANI_STORE_BACKEND', default='memory')
SESSION_TTL_MINUTES = config('SESSION_TTL_MINUTES', default=240, cast=int)
MESSAGE_DEDUPE_SECONDS = config('MESSAGE_DEDUPE_SECONDS', default=86400, cast=int)
ORDER_ID_PREFIX = config('ORDER_ID_PREFIX', default='UJANI')

# ===========================================
# BUSINESS RULES - DELIVERY FEES
# ===========================================
# Keko Magurumbasi
BUSINESS_ORIGIN_LAT = config('BUSINESS_ORIGIN_LAT', default=-6.8357, cast=float)
BUSINESS_ORIGIN_LON = config('BUSINESS_ORIGIN_LON', default=39.2724, cast=float)

DATA_LOCATION_PATH = config('DATA_LOCATION_PATH', default=str(BASE_DIR / 'logistics' / 'data' / 'dar_location.json'))
DEFAULT_DISTANCE_KM = config('DEFAULT_DISTANCE_KM', default=8, cast=float)
LOCATION_PAGE_SIZE = config('LOCATION_PAGE_SIZE', default=8, cast=int)

DELIVERY_TARIFF = config('DELIVERY_TARIFF', default='linear')                       # linear | affordable_v1
DELIVERY_RATE_PER_KM = config('DELIVERY_RATE_PER_KM', default=1000, cast=int)       # TZS/km
DELIVERY_ROUND_TO = config('DELIVERY_ROUND_TO', default=500, cast=int)             # TZS
DELIVERY_MINIMUM_FEE = config('DELIVERY_MINIMUM_FEE', default=0, cast=int)          # TZS
DELIVERY_RELIEF = config('DELIVERY_RELIEF', default='', cast=Csv())                # "10:0.8,20:0.6"
SERVICE_RADIUS_KM = config('SERVICE_RADIUS_KM', default=0, cast=float)              # 0 = unlimited
# Flat fee outside Dar es Salaam and beyond SERVICE_RADIUS_KM (0 = no delivery there)
OUTSIDE_DAR_FLAT_FEE = config('OUTSIDE_DAR_FLAT_FEE', default=10000, cast=int)    # TZS

# ===========================================
# PAYMENTS
# ===========================================
LIPA_NAMBA_TILL = config('LIPA_NAMBA_TILL', default='')
LIPA_NAMBA_NAME = config('LIPA_NAMBA_NAME', default='UJANI HERBAL')
VODA_LNM_TILL = config('VODA_LNM_TILL', default='')
VODA_LNM_NAME = config('VODA_LNM_NAME', default='UJANI HERBAL')
VODA_P2P_MSISDN = config('VODA_P2P_MSISDN', default='')
VODA_P2P_NAME = config('VODA_P2P_NAME', default='UJANI')

# -------------------------------------------
# CLICKPESA (USSD push, hosted checkout)
# -------------------------------------------
CLICKPESA_BASE_URL = config('CLICKPESA_BASE_URL', default='https://api.clickpesa.com/third-parties')
CLICKPESA_CLIENT_ID = config('CLICKPESA_CLIENT_ID', default='')
CLICKPESA_API_KEY = config('CLICKPESA_API_KEY', default='')
CLICKPESA_CHECKSUM_SECRET = config('CLICKPESA_CHECKSUM_SECRET', default='')
# Hosted checkout return page sends the customer back to this WhatsApp number
BUSINESS_WA_NUMBER = config('BUSINESS_WA_NUMBER', default='')

# ===========================================
# LOGGING CONFIGURATION
# ===========================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {process:d} {thread:d} {message}',
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
        'level': 'INFO',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': config('DJANGO_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
