import ssl

from celery import Celery
from celery.signals import setup_logging
from app.core.config import settings
from app.core.log_config import configure_logging


def _redis_ssl_options(url: str) -> dict | None:
    """Celery refuses rediss:// brokers (Upstash, ElastiCache TLS) without explicit ssl options."""
    if url and url.strip().lower().startswith("rediss://"):
        return {"ssl_cert_reqs": ssl.CERT_REQUIRED}
    return None


celery = Celery(
    "villapay",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["app.tasks.jobs"],
)

_ssl_options = _redis_ssl_options(settings.REDIS_URL)
if _ssl_options:
    celery.conf.broker_use_ssl = _ssl_options
    celery.conf.redis_backend_use_ssl = _ssl_options

celery.conf.timezone = "UTC"
# A verification holds its worker for up to max_retries * retry_delay
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.result_expires = 24 * 3600


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging(settings.LOG_LEVEL)


celery.conf.beat_schedule = {
    "expire-overdue-bookings-every-minute": {
        "task": "app.tasks.jobs.expire_overdue_bookings",
        "schedule": 60.0,
    },
    "process-email-queue-every-2-minutes": {
        "task": "app.tasks.jobs.process_email_queue",
        "schedule": 120.0,
        "kwargs": {"limit": 50},
    },
}
