import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services.events import get_dispatcher

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.events.dispatch_pending_events")
def dispatch_pending_events():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return get_dispatcher().dispatch_pending(session)
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Event dispatch run failed.")
        raise
    finally:
        session.close()
        observe_job("event_dispatch", status, time.monotonic() - start)
