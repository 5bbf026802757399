from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from database.crud import get_client, get_submission
from database.models import (
    SUBMISSION_STATUSES,
    TASK_STATUSES,
    TICKET_STATUSES,
    Message,
    Signatory,
    Submission,
    SubmissionFile,
    SubmissionTask,
    SupportTicket,
)
from svc.errors import RecordNotFoundError, SubmissionNotFoundError
from svc.funnel import advance_funnel
from svc.notifications import notify_client_message
from utils.cleaner import clean_str, full_name
from utils.logger import get_logger

logger = get_logger(__name__)

TICKET_PRIORITIES = ("low", "normal", "high", "urgent")
MAX_PAGE_SIZE = 50


def _label(submission: Submission) -> str:
    return full_name(submission.first_name, submission.last_name) or submission.email or f"#{submission.number}"


def _summary(submission: Submission) -> Dict[str, Any]:
    return {
        "id": submission.id,
        "first_name": submission.first_name,
        "last_name": submission.last_name,
        "email": submission.email,
        "created_at": submission.created_at.isoformat() if submission.created_at else None,
        "status": submission.status,
        "total_price": submission.total_price,
        "label": _label(submission),
    }


def list_submissions(
    db: Session, *, search: Optional[str] = None, status: Optional[str] = None, limit: int = 20
) -> List[Dict[str, Any]]:
    stmt = select(Submission).order_by(Submission.created_at.desc()).limit(min(max(limit, 1), MAX_PAGE_SIZE))
    if status and status != "all":
        stmt = stmt.where(Submission.status == status)
    term = clean_str(search)
    if term:
        pattern = f"%{term.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Submission.first_name).like(pattern),
                func.lower(Submission.last_name).like(pattern),
                func.lower(Submission.email).like(pattern),
            )
        )
    return [_summary(submission) for submission in db.execute(stmt).scalars()]


def _file_dict(entry: SubmissionFile) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "file_name": entry.file_name,
        "file_url": entry.file_url,
        "file_type": entry.file_type,
        "file_size": entry.file_size,
        "storage_path": entry.storage_path,
    }


def _signatory_dict(entry: Signatory) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "document_key": entry.document_key,
        "first_name": entry.first_name,
        "last_name": entry.last_name,
        "birth_date": entry.birth_date,
        "birth_city": entry.birth_city,
        "postal_address": entry.postal_address,
        "email": entry.email,
        "phone": entry.phone,
    }


def _message_dict(entry: Message) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "submission_id": entry.submission_id,
        "sender_type": entry.sender_type,
        "sender_id": entry.sender_id,
        "content": entry.content,
        "read": entry.read,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _require_submission(db: Session, submission_id: str) -> Submission:
    submission = get_submission(db, submission_id)
    if submission is None:
        raise SubmissionNotFoundError("Submission not found")
    return submission


def submission_detail(db: Session, submission_id: str) -> Dict[str, Any]:
    submission = _require_submission(db, submission_id)
    client = get_client(db, submission.client_id)
    tasks = db.execute(
        select(SubmissionTask)
        .where(SubmissionTask.submission_id == submission_id)
        .order_by(SubmissionTask.created_at.desc())
    ).scalars()
    detail = submission.to_dict()
    detail.update(
        {
            "number": submission.number,
            "client": client.to_dict() if client is not None else None,
            "files": [_file_dict(entry) for entry in submission.files],
            "signatories": [_signatory_dict(entry) for entry in submission.signatories],
            "messages": [
                _message_dict(entry) for entry in sorted(submission.messages, key=lambda item: item.created_at)
            ],
            "tasks": [task_dict(task) for task in tasks],
        }
    )
    return detail


def update_submission_status(db: Session, submission_id: str, status: str) -> Dict[str, Any]:
    if status not in SUBMISSION_STATUSES:
        raise ValueError(f"Invalid status '{status}'. Valid statuses: {', '.join(SUBMISSION_STATUSES)}")
    submission = _require_submission(db, submission_id)
    previous = submission.status
    submission.status = status
    if status == "completed":
        advance_funnel(submission, "submission_completed")
    db.commit()
    db.refresh(submission)
    logger.info("Submission %s status %s -> %s", submission_id, previous, status)
    return submission.to_dict()


def task_dict(task: SubmissionTask, submission: Optional[Submission] = None) -> Dict[str, Any]:
    payload = {
        "id": task.id,
        "submission_id": task.submission_id,
        "order_item_ref": task.order_item_ref,
        "option_id": task.option_id,
        "option_name": task.option_name,
        "document_context": task.document_context,
        "status": task.status,
        "notes": task.notes,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "updated_at": task.updated_at.isoformat() if task.updated_at else None,
    }
    if submission is not None:
        payload["submission"] = _summary(submission)
    return payload


def list_tasks(db: Session, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
    stmt = select(SubmissionTask).order_by(SubmissionTask.created_at.desc())
    if status and status != "all":
        stmt = stmt.where(SubmissionTask.status == status)
    tasks = list(db.execute(stmt).scalars())

    submission_ids = {task.submission_id for task in tasks if task.submission_id}
    submissions: Dict[str, Submission] = {}
    if submission_ids:
        rows = db.execute(select(Submission).where(Submission.id.in_(submission_ids))).scalars()
        submissions = {row.id: row for row in rows}

    result = []
    for task in tasks:
        entry = task_dict(task, submissions.get(task.submission_id or ""))
        entry.setdefault("submission", None)
        result.append(entry)
    return result


def create_task(
    db: Session,
    *,
    option_name: str,
    submission_id: Optional[str] = None,
    option_id: Optional[str] = None,
    document_context: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    name = clean_str(option_name)
    if not name:
        raise ValueError("option_name is required")
    if submission_id:
        _require_submission(db, submission_id)

    task = SubmissionTask(
        submission_id=submission_id or None,
        order_item_ref=f"manual-{uuid.uuid4().hex[:16]}",
        option_id=clean_str(option_id) or "MANUAL",
        option_name=name,
        document_context=clean_str(document_context),
        notes=clean_str(notes),
        status="pending",
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    return task_dict(task)


def update_task(
    db: Session, task_id: str, *, status: Optional[str] = None, notes: Optional[str] = None
) -> Dict[str, Any]:
    task = db.get(SubmissionTask, task_id)
    if task is None:
        raise RecordNotFoundError("Task not found")
    if status is not None:
        if status not in TASK_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Valid statuses: {', '.join(TASK_STATUSES)}")
        task.status = status
    if notes is not None:
        task.notes = clean_str(notes)
    db.commit()
    db.refresh(task)
    return task_dict(task)


def ticket_dict(ticket: SupportTicket) -> Dict[str, Any]:
    return {
        "id": ticket.id,
        "client_id": ticket.client_id,
        "submission_id": ticket.submission_id,
        "email": ticket.email,
        "subject": ticket.subject,
        "message": ticket.message,
        "status": ticket.status,
        "priority": ticket.priority,
        "created_at": ticket.created_at.isoformat() if ticket.created_at else None,
        "updated_at": ticket.updated_at.isoformat() if ticket.updated_at else None,
    }


def list_tickets(db: Session, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
    stmt = select(SupportTicket).order_by(SupportTicket.created_at.desc())
    if status and status != "all":
        stmt = stmt.where(SupportTicket.status == status)
    return [ticket_dict(ticket) for ticket in db.execute(stmt).scalars()]


def update_ticket(
    db: Session, ticket_id: str, *, status: Optional[str] = None, priority: Optional[str] = None
) -> Dict[str, Any]:
    ticket = db.get(SupportTicket, ticket_id)
    if ticket is None:
        raise RecordNotFoundError("Ticket not found")
    if status is not None:
        if status not in TICKET_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Valid statuses: {', '.join(TICKET_STATUSES)}")
        ticket.status = status
    if priority is not None:
        if priority not in TICKET_PRIORITIES:
            raise ValueError(f"Invalid priority '{priority}'. Valid priorities: {', '.join(TICKET_PRIORITIES)}")
        ticket.priority = priority
    db.commit()
    db.refresh(ticket)
    return ticket_dict(ticket)


def send_message(
    db: Session,
    submission_id: str,
    *,
    content: str,
    sender_type: str,
    sender_id: Optional[str],
    sender_name: str,
) -> Dict[str, Any]:
    """Store a back-office message on the submission and email the client about it."""
    text = (content or "").strip()
    if not text:
        raise ValueError("Message content is required")
    submission = _require_submission(db, submission_id)

    message = Message(submission_id=submission_id, sender_type=sender_type, sender_id=sender_id, content=text)
    db.add(message)
    db.commit()
    db.refresh(message)

    emailed = notify_client_message(submission, text, sender_name)
    payload = _message_dict(message)
    payload["email_sent"] = emailed
    return payload


def sidebar_counts(db: Session) -> Dict[str, int]:
    tasks_pending = db.execute(
        select(func.count(SubmissionTask.id)).where(SubmissionTask.status.in_(["pending", "in_progress"]))
    ).scalar_one()
    support_pending = db.execute(
        select(func.count(SupportTicket.id)).where(SupportTicket.status.in_(["open", "in_progress"]))
    ).scalar_one()
    submissions_pending = db.execute(
        select(func.count(Submission.id)).where(Submission.status == "pending")
    ).scalar_one()
    return {
        "tasks_pending": tasks_pending,
        "support_pending": support_pending,
        "submissions_pending": submissions_pending,
    }
