import logging
import os
from datetime import timedelta

from app.config import settings

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def get_celery_config() -> dict:
    config: dict[str, object] = {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": settings.celery_timezone,
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }
    return config


def _interval(seconds: int, floor: int = 60) -> timedelta:
    return timedelta(seconds=max(seconds, floor))


def build_beat_schedule() -> dict:
    """Periodic sweeps, each toggled by an ``*_ENABLED`` env flag."""
    schedule: dict[str, dict] = {}
    if _env_bool("BILLING_ENABLED", True):
        schedule["invoice_generation"] = {
            "task": "app.tasks.billing.generate_due_invoices",
            "schedule": _interval(settings.billing_sweep_interval_seconds, 300),
        }
        schedule["payment_retries"] = {
            "task": "app.tasks.billing.retry_due_payments",
            "schedule": _interval(settings.billing_sweep_interval_seconds, 300),
        }
    if _env_bool("DUNNING_ENABLED", True):
        schedule["dunning_advance"] = {
            "task": "app.tasks.billing.advance_dunning",
            "schedule": _interval(settings.dunning_sweep_interval_seconds, 300),
        }
    if _env_bool("EXPIRY_ENABLED", True):
        schedule["subscription_expiry"] = {
            "task": "app.tasks.subscriptions.expire_due_subscriptions",
            "schedule": _interval(settings.expiry_sweep_interval_seconds, 300),
        }
    if _env_bool("EVENT_DISPATCH_ENABLED", True):
        schedule["event_dispatch"] = {
            "task": "app.tasks.events.dispatch_pending_events",
            "schedule": _interval(settings.event_dispatch_interval_seconds, 10),
        }
    logger.info(f"Beat schedule built with {len(schedule)} task(s)")
    return schedule
