from __future__ import annotations

import argparse

import structlog
from django.conf import settings
from django.core.management.base import BaseCommand
from django.db import connections

from modules.core.container import build_queue, default_redis
from modules.workers.limiter import RestartRateLimiter
from modules.workers.process import worker_main
from modules.workers.scaling import ScalingController, ScalingThresholds
from modules.workers.supervisor import Supervisor

logger = structlog.get_logger(__name__)


class Command(BaseCommand):
    help = "Run the supervised pool of order-processing workers."

    def add_arguments(self, parser):
        parser.add_argument(
            "--workers",
            type=int,
            default=settings.WORKER_POOL_SIZE,
            help="Initial number of worker processes (default: one per core).",
        )
        parser.add_argument(
            "--shutdown-timeout",
            type=float,
            default=settings.WORKER_SHUTDOWN_TIMEOUT,
            help="Seconds a worker may drain before it is force-terminated.",
        )
        parser.add_argument(
            "--autoscale",
            action=argparse.BooleanOptionalAction,
            default=settings.SCALING_ENABLED,
            help="Resize the pool from CPU, memory and enqueue-rate samples.",
        )

    def handle(self, *args, **options):
        # Children must not share the parent's database connections.
        connections.close_all()

        supervisor = Supervisor(
            target=worker_main,
            size=options["workers"],
            min_size=settings.WORKER_POOL_MIN,
            max_size=max(settings.WORKER_POOL_MAX, options["workers"]),
            shutdown_timeout=options["shutdown_timeout"],
            start_method=settings.WORKER_START_METHOD,
            restart_limiter=RestartRateLimiter(
                max_restarts=settings.WORKER_RESTART_MAX,
                window=settings.WORKER_RESTART_WINDOW,
                cooldown=settings.WORKER_RESTART_COOLDOWN,
            ),
        )
        if options["autoscale"]:
            queue = build_queue(default_redis())
            scaling = ScalingController(
                current_size=lambda: supervisor.target_size,
                resize=supervisor.resize,
                request_counter=queue.enqueued_total,
                thresholds=ScalingThresholds(
                    cpu_percent=settings.SCALING_CPU_THRESHOLD,
                    memory_percent=settings.SCALING_MEMORY_THRESHOLD,
                    request_rate=settings.SCALING_REQUEST_THRESHOLD,
                    up_step=settings.SCALING_UP_STEP,
                    down_step=settings.SCALING_DOWN_STEP,
                ),
                check_interval=settings.SCALING_CHECK_INTERVAL,
            )
            supervisor.on_tick = scaling.tick

        self.stdout.write(
            f"Starting {supervisor.target_size} workers "
            f"(shutdown timeout {supervisor.shutdown_timeout}s)..."
        )
        report = supervisor.run()
        self.stdout.write(
            self.style.SUCCESS(
                f"Workers stopped: clean={report.stopped}, forced={report.forced}"
            )
        )
