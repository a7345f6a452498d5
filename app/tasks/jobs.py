from celery import Task

from app.core.config import settings
from app.db.session import SessionLocal
from app.tasks.celery_app import celery
from app.tasks import worker_jobs


class VerificationTask(Task):
    """Builds the verification engine once per worker process, on first use."""
    _engine = None

    @property
    def engine(self):
        if self._engine is None:
            from app.services.verification_service import build_verification_engine
            self._engine = build_verification_engine(settings, SessionLocal)
        return self._engine


@celery.task(name="app.tasks.jobs.verify_payment", base=VerificationTask, bind=True)
def verify_payment(self, booking_id: str, tx_hash: str, chain_id: int, is_remaining_payment: bool = False):
    return worker_jobs.verify_payment(self.engine, booking_id, tx_hash, chain_id, is_remaining_payment=is_remaining_payment)

@celery.task(name="app.tasks.jobs.expire_overdue_bookings")
def expire_overdue_bookings():
    return worker_jobs.expire_overdue_bookings()


@celery.task(name="app.tasks.jobs.process_email_queue")
def process_email_queue(limit: int = 50):
    return worker_jobs.process_email_queue(limit=limit)
