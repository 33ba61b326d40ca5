from celery import Celery

from src.core.config import settings

celery_app = Celery(
    "github_explorer_pipeline",
    broker=settings.celery_broker_url or str(settings.redis_url),
    backend=settings.celery_result_backend or str(settings.redis_url),
    include=[
        "src.workers.tasks.pipeline_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.job_default_timeout,
    task_soft_time_limit=settings.job_default_timeout - 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Periodic tasks
celery_app.conf.beat_schedule = {
    "dispatch-scheduled-pipelines": {
        "task": "src.workers.tasks.pipeline_tasks.dispatch_scheduled_pipelines",
        "schedule": settings.schedule_check_interval_seconds,
    },
}
