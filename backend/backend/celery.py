import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.settings')

app = Celery('backend')

# Broker, serialization and worker limits come from the CELERY_* settings.
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()

app.conf.task_routes = {
    'billing.tasks.reconcile_order_statuses': {'queue': 'billing'},
    '*': {'queue': 'default'},
}

app.conf.task_annotations = {
    # Runs every five minutes; a run must never overlap the next one.
    'billing.tasks.reconcile_order_statuses': {
        'time_limit': 240,
        'soft_time_limit': 200,
    },
}

app.conf.beat_schedule = {
    'reconcile-order-statuses-every-5-minutes': {
        'task': 'billing.tasks.reconcile_order_statuses',
        'schedule': crontab(minute='*/5'),
        'options': {'queue': 'billing'},
    },
}
