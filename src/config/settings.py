import os
import re
from decimal import Decimal
from pathlib import Path

import structlog
from decouple import config
from dj_database_url import parse as db_url

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

DEBUG = config("DEBUG", default=False, cast=bool)

SECRET_KEY = config("SECRET_KEY", default="django-insecure-dev-only")

# Application definition
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    # Local Apps (Modules)
    "modules.core",
    "modules.products",
    "modules.loyalty",
    "modules.orders",
    "modules.locks",
    "modules.jobs",
    "modules.notifications",
    "modules.workers",
]

# Database - the ledgers' backing store
DATABASES = {
    "default": config(
        "DATABASE_URL", default=f'sqlite:///{BASE_DIR / "db.sqlite3"}', cast=db_url
    )
}

# Cache - Redis (lock store + job queue share this connection)
REDIS_URL = config("REDIS_URL", default="redis://localhost:6379/0")

CACHES = {
    "default": {
        "BACKEND": "django_redis.cache.RedisCache",
        "LOCATION": REDIS_URL,
        "OPTIONS": {
            "CLIENT_CLASS": "django_redis.client.DefaultClient",
        },
    }
}

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = config("TIME_ZONE", default="UTC")
USE_I18N = False
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ---------------------------------------------------------------------------
# Celery (fire-and-forget notifications via Redis)
# ---------------------------------------------------------------------------
CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://localhost:6379/0")
CELERY_RESULT_BACKEND = config(
    "CELERY_RESULT_BACKEND", default="redis://localhost:6379/0"
)
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = config("CELERY_TASK_ALWAYS_EAGER", default=False, cast=bool)
CELERY_TASK_IGNORE_RESULT = True

# ---------------------------------------------------------------------------
# Distributed locks
# ---------------------------------------------------------------------------
LOCK_KEY_PREFIX = config("LOCK_KEY_PREFIX", default="lock")
LOCK_TTL_SECONDS = config("LOCK_TTL_SECONDS", default=30, cast=int)

# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------
JOB_QUEUE_NAME = config("JOB_QUEUE_NAME", default="order-processing")
JOB_MAX_ATTEMPTS = config("JOB_MAX_ATTEMPTS", default=3, cast=int)
JOB_BACKOFF_BASE_SECONDS = config("JOB_BACKOFF_BASE_SECONDS", default=2.0, cast=float)
JOB_LEASE_SECONDS = config("JOB_LEASE_SECONDS", default=30, cast=int)
JOB_STALLED_CHECK_INTERVAL = config(
    "JOB_STALLED_CHECK_INTERVAL", default=30.0, cast=float
)
JOB_MAX_STALLED_COUNT = config("JOB_MAX_STALLED_COUNT", default=1, cast=int)
JOB_POLL_INTERVAL = config("JOB_POLL_INTERVAL", default=1.0, cast=float)
JOB_COMPLETED_RETENTION_SECONDS = config(
    "JOB_COMPLETED_RETENTION_SECONDS", default=0, cast=int
)

# ---------------------------------------------------------------------------
# Worker pool (supervisor)
# ---------------------------------------------------------------------------
_CPU_COUNT = os.cpu_count() or 1

WORKER_POOL_SIZE = config("WORKER_POOL_SIZE", default=_CPU_COUNT, cast=int)
WORKER_POOL_MIN = config("WORKER_POOL_MIN", default=1, cast=int)
WORKER_POOL_MAX = config("WORKER_POOL_MAX", default=_CPU_COUNT * 2, cast=int)
WORKER_SHUTDOWN_TIMEOUT = config("WORKER_SHUTDOWN_TIMEOUT", default=10.0, cast=float)
WORKER_START_METHOD = config("WORKER_START_METHOD", default="fork")
WORKER_RESTART_MAX = config("WORKER_RESTART_MAX", default=5, cast=int)
WORKER_RESTART_WINDOW = config("WORKER_RESTART_WINDOW", default=60.0, cast=float)
WORKER_RESTART_COOLDOWN = config("WORKER_RESTART_COOLDOWN", default=30.0, cast=float)

# ---------------------------------------------------------------------------
# Autoscaling controller
# ---------------------------------------------------------------------------
SCALING_ENABLED = config("SCALING_ENABLED", default=False, cast=bool)
SCALING_CPU_THRESHOLD = config("SCALING_CPU_THRESHOLD", default=80.0, cast=float)
SCALING_MEMORY_THRESHOLD = config("SCALING_MEMORY_THRESHOLD", default=80.0, cast=float)
SCALING_REQUEST_THRESHOLD = config(
    "SCALING_REQUEST_THRESHOLD", default=1000.0, cast=float
)
SCALING_UP_STEP = config("SCALING_UP_STEP", default=3, cast=int)
SCALING_DOWN_STEP = config("SCALING_DOWN_STEP", default=1, cast=int)
SCALING_CHECK_INTERVAL = config("SCALING_CHECK_INTERVAL", default=60.0, cast=float)

# ---------------------------------------------------------------------------
# Business rules
# ---------------------------------------------------------------------------
LOYALTY_POINTS_RATE = config("LOYALTY_POINTS_RATE", default="0.1", cast=Decimal)
ESTIMATED_DELIVERY_HOURS = config("ESTIMATED_DELIVERY_HOURS", default=2, cast=int)

# ---------------------------------------------------------------------------
# Structured Logging (structlog + Django LOGGING)
# ---------------------------------------------------------------------------
SENSITIVE_PATTERN = re.compile(
    r"(\b\d{13,19}\b)"  # card numbers
    r"|(password|passwd|secret|token|authorization|card_number|cvv)"
    r"""([=:]\s*["']?)([^\s,}"']+)""",
    re.IGNORECASE,
)


def mask_sensitive_data(_, __, event_dict):
    """Processor that masks card numbers, passwords and tokens in log values."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            event_dict[key] = SENSITIVE_PATTERN.sub("***MASKED***", value)
    return event_dict


# Shared processors used by both structlog and stdlib logging
_shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    mask_sensitive_data,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]

structlog.configure(
    processors=[
        *_shared_processors,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

LOG_LEVEL = config("LOG_LEVEL", default="INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            "foreign_pre_chain": _shared_processors,
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "celery": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}
