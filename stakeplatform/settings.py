"""Django settings for the staking settlement engine.


The engine runs three converging flows:
- Stake creation (ledger debit + stake row) → daily accrual → completion
- Deposit request → gateway polling / IPN callback → ledger credit
- Payout → single-level referral commission


Business knobs below are read from the environment; runtime-editable ones
(referral_bonus_percent) live in core.SiteSetting.
"""

import os
from pathlib import Path
from decimal import Decimal


BASE_DIR = Path(__file__).resolve().parent.parent
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = os.getenv("DEBUG", "1") in ("1", "true", "True", "yes")
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(",")
CSRF_TRUSTED_ORIGINS = os.getenv("CSRF_TRUSTED_ORIGINS", "").split(",") if os.getenv("CSRF_TRUSTED_ORIGINS") else []

def env_bool(name, default=""):
    v = os.getenv(name, default)
    return v.lower() in ("1", "true", "yes", "on")

def env_int(name, default):
    v = os.getenv(name)
    return int(v) if v not in (None, "") else default

#######################
# Bearer token for operator endpoints (scheduler trigger, manual confirmations)
CRON_SECRET = os.getenv("CRON_SECRET", "dev-cron-secret-change-me")

# Staking
REFERRAL_BONUS_PERCENT = Decimal(os.getenv("REFERRAL_BONUS_PERCENT", "5"))
STAKE_ACTIVATION_DELAY_SECONDS = env_int("STAKE_ACTIVATION_DELAY_SECONDS", 0)

# Deposits
DEPOSIT_REQUEST_TTL_MINUTES = env_int("DEPOSIT_REQUEST_TTL_MINUTES", 60)
DEPOSIT_POLL_INTERVAL_SECONDS = env_int("DEPOSIT_POLL_INTERVAL_SECONDS", 60)
# Late confirmations arriving within this window after expiry are still credited.
DEPOSIT_CONFIRMATION_GRACE_SECONDS = env_int("DEPOSIT_CONFIRMATION_GRACE_SECONDS", 0)

# Payment gateway
PAYMENT_GATEWAY_ADAPTER = os.getenv(
    "PAYMENT_GATEWAY_ADAPTER", "core.adapters.gateway_adapter.StubGatewayAdapter"
)
NOWPAYMENTS_BASE_URL = os.getenv("NOWPAYMENTS_BASE_URL", "https://api.nowpayments.io/v1")
NOWPAYMENTS_API_KEY = os.getenv("NOWPAYMENTS_API_KEY", "")
NOWPAYMENTS_IPN_SECRET = os.getenv("NOWPAYMENTS_IPN_SECRET", "")
NOWPAYMENTS_TIMEOUT_SECONDS = env_int("NOWPAYMENTS_TIMEOUT_SECONDS", 10)
APP_URL = os.getenv("APP_URL", "")
#######################


INSTALLED_APPS = [
	"django.contrib.admin",
	"django.contrib.auth",
	"django.contrib.contenttypes",
	"django.contrib.sessions",
	"django.contrib.messages",
	"django.contrib.staticfiles",
	# local apps
	"core",
	"api",
	"gateway_stub",
]


MIDDLEWARE = [
	"django.middleware.security.SecurityMiddleware",
	"django.contrib.sessions.middleware.SessionMiddleware",
	"django.middleware.common.CommonMiddleware",
	"django.middleware.csrf.CsrfViewMiddleware",
	"django.contrib.auth.middleware.AuthenticationMiddleware",
	"django.contrib.messages.middleware.MessageMiddleware",
]


ROOT_URLCONF = "stakeplatform.urls"
TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]


WSGI_APPLICATION = "stakeplatform.wsgi.application"


DB_ENGINE = os.getenv("DB_ENGINE", "sqlite")
if DB_ENGINE == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB", "stakeplatform"),
            "USER": os.getenv("POSTGRES_USER", "stakeplatform"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", "stakeplatform"),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }


CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
    }
}
if os.getenv("REDIS_CACHE_URL"):
    CACHES["default"] = {
        "BACKEND": "django.core.cache.backends.redis.RedisCache",
        "LOCATION": os.getenv("REDIS_CACHE_URL"),
    }


# Celery (keys are read with the CELERY_ namespace, see stakeplatform/celery.py)
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", None)
CELERY_TASK_ALWAYS_EAGER = env_bool("CELERY_TASK_ALWAYS_EAGER")
CELERY_TIMEZONE = "UTC"


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django.db.backends": {
            "level": "WARNING",
        },
    },
}


AUTH_PASSWORD_VALIDATORS = []


LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True


STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
