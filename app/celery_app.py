from celery import Celery

from app.logging import configure_logging
from app.services.scheduler_config import build_beat_schedule, get_celery_config

configure_logging()

celery_app = Celery("dotmac_subscriptions")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["app.tasks"])
