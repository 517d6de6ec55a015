"""Django settings for the ODF fulfillment service.

Values are read from the environment with development defaults so the
project runs locally (sqlite, stub adapters) without any configuration.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = _env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.odf",
]

MIDDLEWARE = [
    "gateway.middleware.ApiSizeLimitMiddleware",
    "gateway.middleware.RequestIdMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

if os.getenv("DB_ENGINE", "sqlite") == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.getenv("DB_HOST", "odf-db"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "NAME": os.getenv("DB_NAME", "odf"),
            "USER": os.getenv("DB_USER", "odf_user"),
            "PASSWORD": os.getenv("DB_PASSWORD", "odf-pass"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
            # writers queue on BEGIN IMMEDIATE instead of failing on lock upgrade
            "OPTIONS": {"transaction_mode": "IMMEDIATE", "timeout": 20},
            # threaded tests need a file database
            "TEST": {"NAME": str(BASE_DIR / "test_odf.sqlite3")},
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = os.getenv("TIME_ZONE", "Europe/Paris")

# ERP store (SQLAlchemy URL)
ERP_DATABASE_URL = os.getenv("ERP_DATABASE_URL", "sqlite+pysqlite:///:memory:")

# Adapters: real HTTP clients or in-process stubs
USE_HTTP_ADAPTERS = _env_bool("USE_HTTP_ADAPTERS", False)

# Remote order / activation API
ODF_API_BASE_URL = os.getenv("ODF_API_BASE_URL", "http://tap-api:9100")
ODF_API_TOKEN_URL = os.getenv("ODF_API_TOKEN_URL", "http://tap-api:9100/oauth/token")
ODF_API_CLIENT_ID = os.getenv("ODF_API_CLIENT_ID", "")
ODF_API_CLIENT_SECRET = os.getenv("ODF_API_CLIENT_SECRET", "")
ODF_API_SCOPE = os.getenv("ODF_API_SCOPE", "tapstoreapis")
ODF_API_REQUESTER = os.getenv("ODF_API_REQUESTER", "TAP")

# HTTP resilience
HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "10"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# Pipeline business rules
ODF_MAX_TOTAL_QUANTITY = int(os.getenv("ODF_MAX_TOTAL_QUANTITY", "20"))
ODF_LOCK_TTL_SECONDS = int(os.getenv("ODF_LOCK_TTL_SECONDS", "600"))
ODF_CREATE_CLAIM_TTL_SECONDS = int(os.getenv("ODF_CREATE_CLAIM_TTL_SECONDS", "120"))
ODF_GET_ORDER_MAX_ATTEMPTS = int(os.getenv("ODF_GET_ORDER_MAX_ATTEMPTS", "80"))
ODF_GET_ORDER_BACKOFF_SECS = float(os.getenv("ODF_GET_ORDER_BACKOFF_SECS", "3"))
ODF_PASSCODES_MAX_ATTEMPTS = int(os.getenv("ODF_PASSCODES_MAX_ATTEMPTS", "20"))
ODF_PASSCODES_BACKOFF_SECS = float(os.getenv("ODF_PASSCODES_BACKOFF_SECS", "5"))
ODF_COUPON_SEARCH_ATTEMPTS = int(os.getenv("ODF_COUPON_SEARCH_ATTEMPTS", "10"))
ODF_FABRICATION_POLL_MAX = int(os.getenv("ODF_FABRICATION_POLL_MAX", "10"))
ODF_FABRICATION_POLL_INTERVAL = float(os.getenv("ODF_FABRICATION_POLL_INTERVAL", "1"))
ODF_SUPPORT_EMAIL = os.getenv("ODF_SUPPORT_EMAIL", "informatique@example.com")

# Authorized article code -> coupon article code
ODF_ARTICLE_COUPONS = {
    "88455-10": "88455-10-C",
    "104476-10": "120373-10",
    "104476-30": "1133378-10-CPN",
}

ODF_ORDER_DEFAULTS = {
    "currencyCode": os.getenv("ODF_CURRENCY", "EUR"),
    "activationCountry": os.getenv("ODF_ACTIVATION_COUNTRY", "FR"),
    "soldToSiteId": os.getenv("ODF_SOLD_TO_SITE_ID", ""),
    "shipToSiteId": os.getenv("ODF_SHIP_TO_SITE_ID", ""),
    "billToSiteId": os.getenv("ODF_BILL_TO_SITE_ID", ""),
    "endCustomerSiteId": os.getenv("ODF_END_CUSTOMER_SITE_ID", ""),
    "contactEmail": os.getenv("ODF_CONTACT_EMAIL", ""),
    "contactName": os.getenv("ODF_CONTACT_NAME", ""),
}

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": [],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_THROTTLE_RATES": {
        "odf_check": os.getenv("THROTTLE_ODF_CHECK", "600/min"),
        "odf_orders": os.getenv("THROTTLE_ODF_ORDERS", "60/min"),
        "odf_poll": os.getenv("THROTTLE_ODF_POLL", "1200/min"),
    },
}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "odf": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "django.request": {"handlers": ["console"], "level": "WARNING", "propagate": False},
    },
}
