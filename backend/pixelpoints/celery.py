import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'pixelpoints.settings')

app = Celery('pixelpoints')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Billing tasks run on their own queue so webhook bursts never starve other work
app.conf.task_routes = {
    "billing.tasks.process_stripe_event_async": {"queue": "billing"},
    "billing.tasks.cancel_gateway_subscription_task": {"queue": "billing"},
    "billing.tasks.expire_overdue_subscriptions": {"queue": "billing"},
    "billing.tasks.sweep_expired_package_points": {"queue": "billing"},
    "billing.tasks.cleanup_webhook_event_logs": {"queue": "maintenance"},

    # Default queue
    '*': {'queue': 'default'},
}

app.conf.task_default_queue = 'default'

app.conf.update(
    # Serialization settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone settings
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_track_started=True,
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Retry settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Queue settings
    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'billing': {
            'exchange': 'billing',
            'routing_key': 'billing',
        },
        'maintenance': {
            'exchange': 'maintenance',
            'routing_key': 'maintenance',
        },
    },
)

# Celery Beat schedule configuration
app.conf.beat_schedule = {
    "expire_overdue_subscriptions_hourly": {
        "task": "billing.tasks.expire_overdue_subscriptions",
        "schedule": crontab(minute=5),
        "options": {"queue": "billing"},
    },
    "sweep_expired_package_points_daily": {
        "task": "billing.tasks.sweep_expired_package_points",
        "schedule": crontab(hour=3, minute=0),
        "options": {"queue": "billing"},
    },
    "cleanup_webhook_logs_daily": {
        "task": "billing.tasks.cleanup_webhook_event_logs",
        "schedule": crontab(hour=4, minute=0),
        "options": {"queue": "maintenance"},
    },
}
