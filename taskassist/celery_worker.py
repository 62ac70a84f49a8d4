import logging

from celery import Celery
from celery.schedules import crontab

from .config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

celery = Celery("taskassist", broker=settings.celery_broker_url, backend=settings.celery_backend_url)
celery.conf.beat_schedule = {
    "daily-overdue-summary": {
        "task": "taskassist.celery_worker.send_daily_overdue_summary",
        "schedule": crontab(hour=7, minute=0),
    },
}


@celery.task
def send_email_async(to_email: str, subject: str, body: str):
    from .email_utils import send_email_smtp

    send_email_smtp(get_settings(), to_email, subject, body)


@celery.task
def send_daily_overdue_summary():
    from .email_utils import collect_overdue_tasks, overdue_message, send_email_smtp
    from .storage import build_storage

    cfg = get_settings()
    storage = build_storage(cfg)
    sent = 0
    try:
        for user_id, tasks in collect_overdue_tasks(storage).items():
            user = storage.get_user(user_id)
            if user is None or not user.email:
                continue
            send_email_smtp(cfg, user.email, "Daily Overdue Tasks Summary", overdue_message(tasks))
            sent += 1
    finally:
        storage.close()
    logger.info("Overdue summary sent to %d users", sent)
    return sent
