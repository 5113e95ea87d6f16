"""Celery application for the AB Jail pipeline worker.

Two queues: "pipeline" runs the per-submission stages (OCR of MMS media,
classification, sender extraction, landing capture) and "maintenance" runs
the periodic stale-submission sweep from beat.
"""

import os

from celery import Celery
from celery.signals import setup_logging

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/2")
STALE_SWEEP_INTERVAL_SECONDS = float(os.getenv("STALE_SWEEP_INTERVAL_SECONDS", "300"))

# A stage runs OCR (up to 90s per PDF), a vision model call and a
# headless-browser render; the hard limit leaves room for all three.
PIPELINE_SOFT_TIME_LIMIT = 240
PIPELINE_TIME_LIMIT = 300

app = Celery(
    "abjail_worker",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=[
        "abjail_worker.tasks.pipeline",
        "abjail_worker.tasks.maintenance",
    ],
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_soft_time_limit=PIPELINE_SOFT_TIME_LIMIT,
    task_time_limit=PIPELINE_TIME_LIMIT,
    # Pipeline stages record failures on the submission instead of retrying
    task_default_retry_delay=30,
    task_routes={
        "pipeline.*": {"queue": "pipeline"},
        "maintenance.*": {"queue": "maintenance"},
    },
    worker_prefetch_multiplier=1,
    worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "4")),
)

app.conf.beat_schedule = {
    "fail-stale-submissions": {
        "task": "maintenance.fail_stale_submissions",
        "schedule": STALE_SWEEP_INTERVAL_SECONDS,
    },
}


@setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Use the same structured log format as the API."""
    from abjail_core.observability import configure_logging

    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        json_format=os.getenv("LOG_JSON", "true").lower() != "false",
        service_name="abjail-worker",
    )


if __name__ == "__main__":
    app.start()
