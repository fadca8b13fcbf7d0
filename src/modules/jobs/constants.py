"""Job queue constants: job types, lifecycle states and retry defaults."""

from django.db import models


class JobType(models.TextChoices):
    CREATE_ORDER = "create-order", "Create order"
    UPDATE_ORDER_STATUS = "update-order-status", "Update order status"
    PROCESS_PAYMENT = "process-payment", "Process payment"


class JobState(models.TextChoices):
    WAITING = "waiting", "Waiting"
    ACTIVE = "active", "Active"
    DELAYED = "delayed", "Delayed"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


TERMINAL_JOB_STATES: set[str] = {JobState.COMPLETED, JobState.FAILED}

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_LEASE_SECONDS = 30
DEFAULT_MAX_STALLED_COUNT = 1
