"""Entry point of a worker process.

``worker_main`` is the supervisor's process target.  It builds the
process's own service container, runs a ``JobWorker`` until the
supervisor sends ``"shutdown"``, and tears the container down.

It is also the process's error boundary: an exception that escapes the
job loop is logged with the worker's context, the container is closed,
and the process exits with status 1 so the supervisor replaces it.  A
job that was mid-flight at that point keeps its place in the active list
and is recovered by the stalled-job sweep of another worker.
"""

from __future__ import annotations

import os
import signal
import sys
from multiprocessing.connection import Connection
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


def _prepare_django() -> None:
    """Make Django usable in a freshly started (spawned or forked) process."""
    import django
    from django.apps import apps

    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")
    if not apps.ready:
        django.setup()


def worker_main(
    control: Connection,
    worker_id: str,
    container_factory: Optional[Callable[[], object]] = None,
) -> None:
    # Ctrl-C reaches the whole process group; the supervisor coordinates
    # the drain through the control pipe instead.
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    # A forked child inherits the supervisor's SIGTERM handler; terminate()
    # must end the worker.
    signal.signal(signal.SIGTERM, signal.SIG_DFL)
    _prepare_django()

    from django.conf import settings

    from modules.core.container import build_container
    from modules.jobs.worker import JobWorker

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(worker_id=worker_id, pid=os.getpid())

    container = None
    exit_code = 0
    try:
        container = (container_factory or build_container)()
        worker = JobWorker(
            queue=container.queue,
            handler=container.handlers,
            worker_id=worker_id,
            poll_interval=settings.JOB_POLL_INTERVAL,
            stalled_check_interval=settings.JOB_STALLED_CHECK_INTERVAL,
            control=control,
        )
        worker.run()
    except Exception:
        logger.exception("worker.crashed")
        exit_code = 1
    finally:
        if container is not None:
            container.close()
        control.close()
    if exit_code:
        sys.exit(exit_code)
