import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services import subscriptions as subscriptions_service

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.subscriptions.expire_due_subscriptions")
def expire_due_subscriptions(dry_run: bool = False):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return subscriptions_service.subscriptions.expire_due(session, dry_run=dry_run)
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Subscription expiry run failed.")
        raise
    finally:
        session.close()
        observe_job("subscription_expiry", status, time.monotonic() - start)
