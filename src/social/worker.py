"""Celery application running refresh token rotation off the request path."""

from celery import Celery

from .config import settings


celery_app = Celery(
    "social",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["social.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # At-least-once: a job is acknowledged only after it ran, and re-queued
    # if the worker dies mid-job.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_concurrency,
    task_routes={
        "social.tasks.rotate_refresh_token": {"queue": settings.rotation_queue},
        "social.tasks.revoke_refresh_token": {"queue": settings.rotation_queue},
    },
    task_always_eager=settings.celery_task_always_eager,
    task_eager_propagates=False,
    # Publishing happens inside a request; give up quickly if the broker is down.
    task_publish_retry_policy={
        "max_retries": 2,
        "interval_start": 0,
        "interval_step": 0.2,
        "interval_max": 0.5,
    },
    task_ignore_result=True,
)

celery_app.conf.beat_schedule = {
    "purge-expired-refresh-tokens": {
        "task": "social.tasks.purge_expired_refresh_tokens",
        "schedule": settings.purge_frequency,
    }
}
celery_app.conf.timezone = "UTC"
