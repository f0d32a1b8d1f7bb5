"""
Celery application configuration.

This module sets up Celery for background import processing with Redis
as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab
from kombu import Exchange, Queue

from api.config import settings

# Create Celery application
celery_app = Celery(
    'drug_import',
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['tasks.import_tasks']
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    result_serializer='json',
    accept_content=['json'],

    # Timezone
    timezone='UTC',
    enable_utc=True,

    # Task execution
    task_track_started=True,
    task_time_limit=7200,  # 2 hours hard timeout
    task_soft_time_limit=6900,
    worker_prefetch_multiplier=1,  # One task at a time per worker

    # Results
    result_expires=3600,  # Results expire after 1 hour
    result_extended=True,  # Store more task metadata

    # Task routing
    task_default_queue='default',
    task_default_exchange='default',
    task_default_routing_key='default',

    # Worker configuration
    worker_max_tasks_per_child=100,  # Restart worker after 100 tasks (prevent memory leaks)
    worker_disable_rate_limits=False,

    # Task acknowledgement: an interrupted import is redelivered and resumed
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)

# Define task queues
celery_app.conf.task_queues = (
    Queue('default', Exchange('default'), routing_key='default'),
    Queue(settings.IMPORT_QUEUE, Exchange(settings.IMPORT_QUEUE), routing_key='import.#'),
)

# Task routes
celery_app.conf.task_routes = {
    'tasks.import_tasks.run_import_task': {'queue': settings.IMPORT_QUEUE, 'routing_key': 'import.run'},
    'tasks.import_tasks.retry_import_task': {'queue': settings.IMPORT_QUEUE, 'routing_key': 'import.retry'},
    'tasks.import_tasks.resume_import_task': {'queue': settings.IMPORT_QUEUE, 'routing_key': 'import.resume'},
}

# Beat schedule
celery_app.conf.beat_schedule = {
    'cleanup-old-tasks': {
        'task': 'tasks.import_tasks.cleanup_old_tasks',
        'schedule': crontab(hour=3, minute=0),
        'kwargs': {'days_to_keep': settings.TASK_RETENTION_DAYS},
    },
}


if __name__ == '__main__':
    celery_app.start()
