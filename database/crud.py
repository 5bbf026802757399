from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .models import Client, Notary, Option, Service, Signatory, Submission, SubmissionFile


def get_submission(db: Session, submission_id: str, *, for_update: bool = False) -> Optional[Submission]:
    stmt = select(Submission).where(Submission.id == submission_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def get_client(db: Session, client_id: Optional[str]) -> Optional[Client]:
    if not client_id:
        return None
    return db.get(Client, client_id)


def get_client_by_user(db: Session, user_id: str) -> Optional[Client]:
    return db.execute(select(Client).where(Client.user_id == user_id)).scalar_one_or_none()


def get_client_by_email(db: Session, email: str) -> Optional[Client]:
    return (
        db.execute(select(Client).where(func.lower(Client.email) == email.lower().strip()))
        .scalars()
        .first()
    )


def get_active_notary_by_user(db: Session, user_id: str) -> Optional[Notary]:
    return db.execute(
        select(Notary).where(Notary.user_id == user_id, Notary.is_active.is_(True))
    ).scalar_one_or_none()


def list_active_notaries(db: Session) -> List[Notary]:
    return list(db.execute(select(Notary).where(Notary.is_active.is_(True))).scalars())


def relink_submissions_by_email(db: Session, client_id: str, email: str) -> int:
    """Attach every submission sharing ``email`` to ``client_id``. Returns the number relinked."""
    normalized = email.lower().strip()
    if not normalized:
        return 0
    result = db.execute(
        update(Submission)
        .where(func.lower(Submission.email) == normalized)
        .where((Submission.client_id.is_(None)) | (Submission.client_id != client_id))
        .values(client_id=client_id)
        .execution_options(synchronize_session="fetch")
    )
    db.commit()
    return result.rowcount or 0


def find_submission_by_form_session(
    db: Session, form_session_id: str, statuses: Iterable[str], limit: int = 20
) -> Optional[Submission]:
    """Most recent submission whose ``data.session_id`` is the intake form session."""
    candidates = db.execute(
        select(Submission)
        .where(Submission.status.in_(list(statuses)))
        .order_by(Submission.created_at.desc())
        .limit(limit)
    ).scalars()
    for submission in candidates:
        if (submission.data or {}).get("session_id") == form_session_id:
            return submission
    return None


def load_active_catalog(db: Session) -> Tuple[Dict[str, Service], Dict[str, Option]]:
    services = db.execute(select(Service).where(Service.is_active.is_(True))).scalars()
    options = db.execute(select(Option).where(Option.is_active.is_(True))).scalars()
    return (
        {service.service_id: service for service in services},
        {option.option_id: option for option in options},
    )


def count_paid_submissions(db: Session, client_id: str) -> int:
    return db.execute(
        select(func.count(Submission.id))
        .where(Submission.client_id == client_id)
        .where(Submission.status.in_(["pending", "completed", "in_progress"]))
    ).scalar_one()


def add_submission_files(db: Session, submission_id: str, uploaded_files: List[Dict[str, Any]]) -> int:
    for entry in uploaded_files:
        db.add(
            SubmissionFile(
                submission_id=submission_id,
                file_name=entry.get("name"),
                file_url=entry.get("public_url"),
                file_type=entry.get("type"),
                file_size=entry.get("size"),
                storage_path=entry.get("storage_path"),
            )
        )
    db.commit()
    return len(uploaded_files)


def has_signatories(db: Session, submission_id: str) -> bool:
    return (
        db.execute(select(Signatory.id).where(Signatory.submission_id == submission_id).limit(1)).first()
        is not None
    )


def add_signatories(db: Session, rows: List[Dict[str, Any]]) -> int:
    for row in rows:
        db.add(Signatory(**row))
    db.commit()
    return len(rows)
