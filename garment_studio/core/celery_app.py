"""
Celery Application Configuration

Queued pipeline runs (single edits and batches) are executed by Celery
workers; each task drives one or more full pipeline runs end to end.
"""

from celery import Celery
from kombu import Queue

from garment_studio.core.config import settings

celery_app = Celery(
    "garment_studio",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "garment_studio.pipeline.tasks",
    ]
)

celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=900,  # 15 minute hard limit (batches run items sequentially)
    task_soft_time_limit=840,

    # Result expiration
    result_expires=86400,  # 24 hours

    # Pipeline runs are I/O bound on upstream services
    worker_prefetch_multiplier=1,

    task_queues=(
        Queue("default", routing_key="default"),
        Queue("batch_queue", routing_key="batch.#"),
    ),

    task_routes={
        "garment_studio.pipeline.tasks.process_edit_job": {"queue": "default"},
        "garment_studio.pipeline.tasks.process_batch": {"queue": "batch_queue"},
    },

    # Generative calls are not idempotent: never redeliver a half-run task
    task_acks_late=False,
)
