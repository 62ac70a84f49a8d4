import logging
import smtplib
from collections import defaultdict
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, List, Optional

from .config import Settings
from .models import utcnow
from .schemas import TaskOut, UserRecord
from .storage import Storage

logger = logging.getLogger(__name__)


def send_email_smtp(settings: Settings, email_to: str, subject: str, body: str) -> None:
    if not settings.smtp_host:
        logger.info("SMTP not configured; mail to=%s subject=%r\n%s", email_to, subject, body)
        return

    msg = MIMEMultipart("alternative")
    msg["From"] = settings.mail_from
    msg["To"] = email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
        server.starttls()
        if settings.smtp_user:
            server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.mail_from, email_to, msg.as_string())
    logger.info("Mail sent to=%s subject=%r", email_to, subject)


def display_name(user: UserRecord) -> str:
    full = " ".join(part for part in (user.first_name, user.last_name) if part)
    return full or user.username


def assignment_message(task: TaskOut, assigner: Optional[UserRecord]) -> str:
    who = display_name(assigner) if assigner else "Someone"
    lines = [f"{who} assigned you a task: {task.title}"]
    if task.due_date:
        lines.append(f"Due: {task.due_date:%Y-%m-%d %H:%M} UTC")
    if task.priority:
        lines.append(f"Priority: {task.priority}")
    return "\n".join(lines)


def notify_task_assigned(settings: Settings, storage: Storage, task: TaskOut) -> bool:
    """Queue an assignment mail for the task's assignee. Returns True if queued."""
    if not settings.notifications_enabled or task.assigned_to is None:
        return False
    if task.assigned_to == task.assigned_by:
        return False
    assignee = storage.get_user(task.assigned_to)
    if assignee is None or not assignee.email:
        return False
    assigner = storage.get_user(task.assigned_by) if task.assigned_by is not None else None

    from .celery_worker import send_email_async

    try:
        send_email_async.delay(assignee.email, "Task Assigned", assignment_message(task, assigner))
    except Exception:
        # the task is already stored; a dead broker must not turn that into a 500
        logger.exception("Could not queue assignment mail task=%s to=%s", task.id, assignee.id)
        return False
    logger.debug("Assignment mail queued task=%s to=%s", task.id, assignee.id)
    return True


def collect_overdue_tasks(storage: Storage, now: Optional[datetime] = None) -> Dict[int, List[TaskOut]]:
    """Active tasks past their due date, keyed by the responsible user (assignee, else owner)."""
    now = now or utcnow()
    overdue: Dict[int, List[TaskOut]] = defaultdict(list)
    for task in storage.get_tasks("active"):
        if task.due_date is not None and task.due_date < now:
            responsible = task.assigned_to if task.assigned_to is not None else task.user_id
            overdue[responsible].append(task)
    return dict(overdue)


def overdue_message(tasks: List[TaskOut]) -> str:
    lines = ["Your overdue tasks:"]
    for task in sorted(tasks, key=lambda t: t.due_date):
        lines.append(f"- {task.title} (due {task.due_date:%Y-%m-%d})")
    return "\n".join(lines)
