"""Intake-form persistence: drafts, clients, and the submission they belong to."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from database.crud import (
    find_submission_by_form_session,
    get_client_by_email,
    get_client_by_user,
    get_submission,
    relink_submissions_by_email,
)
from database.models import Client, Submission
from svc.errors import ClientNotFoundError, OwnershipError, SubmissionNotFoundError
from svc.funnel import advance_funnel, funnel_status_for_step
from utils import supabase_admin
from utils.cleaner import clean_str, normalize_email
from utils.logger import get_logger

logger = get_logger(__name__)

# submission column -> intake form key
_FORM_COLUMNS = {
    "first_name": "firstName",
    "last_name": "lastName",
    "phone": "phone",
    "address": "address",
    "city": "city",
    "postal_code": "postalCode",
    "country": "country",
    "notes": "notes",
    "gclid": "gclid",
    "appointment_date": "appointmentDate",
    "appointment_time": "appointmentTime",
    "timezone": "timezone",
}


def submission_columns(form: Mapping[str, Any]) -> Dict[str, Any]:
    columns = {column: form.get(key) for column, key in _FORM_COLUMNS.items()}
    columns["email"] = normalize_email(form.get("email"))
    columns["phone"] = columns["phone"] or ""
    return columns


def _step_number(value: Any, default: int) -> int:
    try:
        return int(value) if value else default
    except (TypeError, ValueError):
        return default


def checkout_data(form: Mapping[str, Any], currency: str) -> Dict[str, Any]:
    """The ``data`` blob stored on a submission heading to checkout."""
    signatories_count = form.get("signatoriesCount") or 0
    return {
        "session_id": form.get("sessionId"),
        "selectedServices": form.get("selectedServices") or [],
        "serviceDocuments": form.get("serviceDocuments") or {},
        "uploadedFiles": form.get("uploadedFiles") or [],
        "deliveryMethod": form.get("deliveryMethod") or "email",
        "signatories": form.get("signatories") or [],
        "signatoriesCount": signatories_count,
        "additionalSignatoriesCount": form.get("additionalSignatoriesCount") or 0,
        "signatoryCount": form.get("signatoryCount", signatories_count or None),
        "currency": currency,
    }


def _draft_data(form: Mapping[str, Any], session_id: str, current_step: int, completed_steps: List[int]) -> Dict[str, Any]:
    selected = form.get("selectedServices") or []
    documents = form.get("serviceDocuments") or {}
    return {
        "session_id": session_id,
        "selected_services": selected,
        "documents": documents,
        "selectedServices": selected,
        "serviceDocuments": documents,
        "uploadedFiles": form.get("uploadedFiles") or [],
        "deliveryMethod": form.get("deliveryMethod"),
        "signatories": form.get("signatories") or [],
        "is_signatory": bool(form.get("isSignatory")),
        "currency": (form.get("currency") or "EUR").upper(),
        "gclid": form.get("gclid"),
        "current_step": current_step,
        "completed_steps": completed_steps,
    }


def apply_form(submission: Submission, form: Mapping[str, Any], data: Dict[str, Any]) -> None:
    """Copy form columns onto ``submission`` and merge ``data`` into its blob."""
    for column, value in submission_columns(form).items():
        setattr(submission, column, value)
    # Reassign so SQLAlchemy sees the JSON change.
    submission.data = {**(submission.data or {}), **data}


def save_submission_draft(
    db: Session,
    *,
    form: Mapping[str, Any],
    session_id: str,
    current_step: Optional[int] = None,
    completed_steps: Optional[List[int]] = None,
    total_amount: Optional[float] = None,
) -> str:
    """Create or update the ``pending_payment`` draft for an intake form session."""
    step = current_step if current_step is not None else 1
    funnel_status = funnel_status_for_step(step)
    data = _draft_data(form, session_id, step, completed_steps or [])

    submission = find_submission_by_form_session(db, session_id, ["pending_payment"])
    if submission is None:
        submission = Submission(status="pending_payment", funnel_status=funnel_status)
        db.add(submission)
    else:
        advance_funnel(submission, funnel_status)

    apply_form(submission, form, data)
    submission.total_price = total_amount
    db.commit()
    db.refresh(submission)
    return submission.id


def upsert_client(
    db: Session,
    *,
    email: str,
    first_name: str,
    last_name: str,
    form: Mapping[str, Any],
    user_id: Optional[str] = None,
) -> Client:
    """Find the client by auth user or email and refresh its contact details, or create it."""
    client = get_client_by_user(db, user_id) if user_id else None
    if client is None:
        client = get_client_by_email(db, email)
    if client is None:
        client = Client(email=email, user_id=user_id)
        db.add(client)
    elif user_id and not client.user_id:
        client.user_id = user_id

    client.first_name = first_name
    client.last_name = last_name
    for column in ("phone", "address", "city", "postal_code", "country"):
        value = clean_str(form.get(_FORM_COLUMNS[column]))
        if value or getattr(client, column) is None:
            setattr(client, column, value)
    db.commit()
    db.refresh(client)
    return client


def create_client_and_submission(db: Session, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Register the client behind an intake form and attach its submissions.

    Creates the Supabase auth user when needed, relinks every submission that
    carries the same email, then updates or creates the session's draft.
    """
    email = normalize_email(payload.get("email"))
    first_name = clean_str(payload.get("firstName"))
    last_name = clean_str(payload.get("lastName"))
    if not email or not first_name or not last_name:
        raise ValueError("Email, first name, and last name are required")

    user_created = False
    existing = get_client_by_email(db, email)
    user_id = existing.user_id if existing else None
    if not user_id:
        user_id, user_created = supabase_admin.find_or_create_user(
            email,
            password=payload.get("password"),
            metadata={"first_name": first_name, "last_name": last_name, "user_type": "client"},
        )

    client = upsert_client(
        db, email=email, first_name=first_name, last_name=last_name, form=payload, user_id=user_id
    )
    relinked = relink_submissions_by_email(db, client.id, email)
    if relinked:
        logger.info("Relinked %s submission(s) to client %s", relinked, client.id)

    session_id = payload.get("sessionId")
    step = _step_number(payload.get("currentStep"), default=4)
    funnel_status = funnel_status_for_step(step)
    data = {
        "session_id": session_id,
        "selected_services": payload.get("selectedServices") or [],
        "documents": payload.get("documents") or {},
        "delivery_method": payload.get("deliveryMethod"),
        "signatories": payload.get("signatories") or [],
        "current_step": step,
    }

    submission: Optional[Submission] = None
    if payload.get("submissionId"):
        submission = get_submission(db, payload["submissionId"])
    if submission is None:
        submission = db.execute(
            select(Submission)
            .where(Submission.client_id == client.id, Submission.status == "pending_payment")
            .order_by(Submission.created_at.desc())
        ).scalars().first()
    if submission is None and session_id:
        submission = find_submission_by_form_session(db, session_id, ["pending_payment"])

    if submission is None:
        submission = Submission(status="pending_payment", funnel_status=funnel_status)
        db.add(submission)
    else:
        advance_funnel(submission, funnel_status)

    apply_form(submission, payload, data)
    for column in ("phone", "address", "city", "postal_code", "country"):
        if getattr(submission, column) is None:
            setattr(submission, column, "")
    submission.client_id = client.id
    db.commit()
    db.refresh(submission)

    return {
        "success": True,
        "client_id": client.id,
        "submission_id": submission.id,
        "user_id": user_id,
        "user_created": user_created,
        "relinked_submissions": relinked,
    }


def ensure_client(db: Session, *, user_id: str, email: Optional[str], metadata: Mapping[str, Any]) -> Client:
    """Client row for an authenticated user, created on first sight; relinks orphaned submissions."""
    client = get_client_by_user(db, user_id)
    if client is None:
        normalized = normalize_email(email or metadata.get("email"))
        if not normalized:
            raise ValueError("Email required to create client")
        client = get_client_by_email(db, normalized)
        if client is not None and client.user_id in (None, user_id):
            client.user_id = user_id
        else:
            client = Client(
                user_id=user_id,
                email=normalized,
                first_name=metadata.get("first_name") or "",
                last_name=metadata.get("last_name") or "",
            )
            db.add(client)
        db.commit()
        db.refresh(client)
        logger.info("Created client %s for auth user %s", client.id, user_id)

    relink_email = client.email or email or ""
    relinked = relink_submissions_by_email(db, client.id, relink_email)
    if relinked:
        logger.info("Relinked %s submission(s) to client %s", relinked, client.id)
    return client


def require_client(db: Session, user_id: str) -> Client:
    client = get_client_by_user(db, user_id)
    if client is None:
        raise ClientNotFoundError("Client not found")
    return client


def update_profile(db: Session, client: Client, updates: Mapping[str, Any]) -> Client:
    changes = {
        field: value.strip()
        for field, value in updates.items()
        if field in Client.PROFILE_FIELDS and isinstance(value, str)
    }
    if not changes:
        raise ValueError("No valid fields to update")
    for field, value in changes.items():
        setattr(client, field, value)
    db.commit()
    db.refresh(client)
    return client


def list_client_submissions(db: Session, client: Client) -> List[Dict[str, Any]]:
    submissions = db.execute(
        select(Submission).where(Submission.client_id == client.id).order_by(Submission.created_at.desc())
    ).scalars()
    return [submission.to_dict() for submission in submissions]


def get_owned_submission(db: Session, client: Client, submission_id: str) -> Submission:
    submission = get_submission(db, submission_id)
    if submission is None:
        raise SubmissionNotFoundError("Submission not found")
    if submission.client_id != client.id:
        raise OwnershipError("Unauthorized: You can only access your own submissions")
    return submission


def delete_submission(db: Session, client: Client, submission_id: str) -> None:
    submission = get_owned_submission(db, client, submission_id)
    if submission.status != "pending_payment":
        raise ValueError("Only submissions with pending_payment status can be deleted")
    db.delete(submission)
    db.commit()
    logger.info("Deleted submission %s for client %s", submission_id, client.id)
