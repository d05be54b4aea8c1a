import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services import billing as billing_service
from app.services.billing.gateway import get_gateway

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.billing.generate_due_invoices")
def generate_due_invoices(dry_run: bool = False):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return billing_service.invoices.generate_due_invoices(session, dry_run=dry_run)
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Invoice generation run failed.")
        raise
    finally:
        session.close()
        observe_job("invoice_generation", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.billing.retry_due_payments")
def retry_due_payments():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return billing_service.payments.retry_due_payments(session, get_gateway())
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Payment retry run failed.")
        raise
    finally:
        session.close()
        observe_job("payment_retry", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.billing.advance_dunning")
def advance_dunning():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return billing_service.dunning.advance_dunning(session, gateway=get_gateway())
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Dunning run failed.")
        raise
    finally:
        session.close()
        observe_job("dunning_advance", status, time.monotonic() - start)
