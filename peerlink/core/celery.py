from celery import Celery
import os
from dotenv import load_dotenv

load_dotenv()

redis_url = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# SSL configuration for rediss:// URLs
broker_ssl = None
backend_ssl = None
if redis_url.startswith('rediss://'):
    import ssl
    broker_ssl = {
        'ssl_cert_reqs': ssl.CERT_NONE
    }
    backend_ssl = broker_ssl

celery_app = Celery(
    'peerlink_matching',
    broker=redis_url,
    backend=redis_url,
    broker_use_ssl=broker_ssl,
    redis_backend_use_ssl=backend_ssl,
    include=['peerlink.workers.scheduled_matching']
)

always_eager = os.getenv('CELERY_TASK_ALWAYS_EAGER', 'false').lower() == 'true'

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=15 * 60,
    task_soft_time_limit=12 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    # Run tasks inline when no worker is available
    task_always_eager=always_eager,
    task_eager_propagates=always_eager,
)

# Celery Beat Schedule
celery_app.conf.beat_schedule = {
    'run-matching-cycle': {
        'task': 'run_matching_cycle',
        'schedule': float(os.getenv('MATCHING_CYCLE_INTERVAL_SECONDS', '300')),
    },
    'run-queue-maintenance': {
        'task': 'run_queue_maintenance',
        'schedule': float(os.getenv('QUEUE_MAINTENANCE_INTERVAL_SECONDS', '3600')),
    },
}
