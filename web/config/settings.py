"""Django settings for the orders web service.

Values come from the environment with defaults suitable for local
development. Runtime code reads optional knobs with
``getattr(settings, NAME, default)`` so tests can override any of them
through the pytest-django ``settings`` fixture.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-key")
DEBUG = os.getenv("DJANGO_DEBUG", "0") == "1"
ALLOWED_HOSTS = os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.orders",
    "apps.payments",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"
APPEND_SLASH = False

if os.getenv("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB"),
            "USER": os.getenv("POSTGRES_USER", "orders"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", ""),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
            "CONN_MAX_AGE": int(os.getenv("POSTGRES_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "orders",
    }
}

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": ["gateway.auth.BearerTokenAuthentication"],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.IsAuthenticated"],
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "EXCEPTION_HANDLER": "apps.orders.views.orders_exception_handler",
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_THROTTLE_RATES": {
        "orders_create": os.getenv("THROTTLE_ORDERS_CREATE", "30/min"),
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "120/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "240/min"),
        "orders_update": os.getenv("THROTTLE_ORDERS_UPDATE", "60/min"),
        "orders_verify": os.getenv("THROTTLE_ORDERS_VERIFY", "60/min"),
    },
}

# ---- collaborators ----
USE_HTTP_ADAPTERS = os.getenv("USE_HTTP_ADAPTERS", "1") == "1"
PRODUCTS_BASE_URL = os.getenv("PRODUCTS_BASE_URL", "http://localhost:8001")
CART_BASE_URL = os.getenv("CART_BASE_URL", "http://localhost:8002")
AUTH_BASE_URL = os.getenv("AUTH_BASE_URL", "http://localhost:8003")
AUTH_TOKEN_VERIFIER = os.getenv("AUTH_TOKEN_VERIFIER", "gateway.auth.HttpTokenVerifier")

# ---- outbound HTTP ----
HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "5"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# ---- payments ----
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "VND")
SHIPPING_FEE = int(os.getenv("SHIPPING_FEE", "5000"))
PAYMENT_QUERY_TIMEOUT_SECS = float(os.getenv("PAYMENT_QUERY_TIMEOUT_SECS", "3"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:4000")
VERIFY_PAYMENT_RATE = (
    int(os.getenv("VERIFY_PAYMENT_MAX", "10")),
    int(os.getenv("VERIFY_PAYMENT_WINDOW_SECS", "60")),
)
RECONCILE_MIN_AGE_MINUTES = int(os.getenv("RECONCILE_MIN_AGE_MINUTES", "10"))

PAYMENT_PROVIDERS = {
    "momo": {
        "partner_code": os.getenv("MOMO_PARTNER_CODE", "MOMO"),
        "access_key": os.getenv("MOMO_ACCESS_KEY", ""),
        "secret_key": os.getenv("MOMO_SECRET_KEY", ""),
        "endpoint": os.getenv("MOMO_ENDPOINT", "https://test-payment.momo.vn/v2/gateway/api"),
        "request_type": os.getenv("MOMO_REQUEST_TYPE", "captureWallet"),
    },
    "payos": {
        "client_id": os.getenv("PAYOS_CLIENT_ID", ""),
        "api_key": os.getenv("PAYOS_API_KEY", ""),
        "checksum_key": os.getenv("PAYOS_CHECKSUM_KEY", ""),
        "endpoint": os.getenv("PAYOS_ENDPOINT", "https://api-merchant.payos.vn"),
    },
    "stripe": {
        "secret_key": os.getenv("STRIPE_SECRET_KEY", ""),
        "webhook_secret": os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        "checkout_url": os.getenv("STRIPE_CHECKOUT_URL", f"{FRONTEND_URL}/pages/stripe-checkout.html"),
    },
    "zalopay": {
        "app_id": os.getenv("ZALOPAY_APP_ID", ""),
        "key1": os.getenv("ZALOPAY_KEY1", ""),
        "key2": os.getenv("ZALOPAY_KEY2", ""),
        "endpoint": os.getenv("ZALOPAY_ENDPOINT", "https://sb-openapi.zalopay.vn/v2"),
    },
}

# ---- logging ----
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(uid)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO")},
    "loggers": {
        "django.request": {"handlers": ["console"], "level": "WARNING", "propagate": False},
    },
}
