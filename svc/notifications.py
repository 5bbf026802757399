"""Transactional email fan-out.

Delivery itself belongs to the ``send-transactional-email`` edge function; this
module only invokes it. Every send is best effort: a failure is logged and
reported as ``False`` so the payment flow that triggered it carries on.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from database.crud import get_client, list_active_notaries
from database.models import Submission
from svc.errors import AccountProvisioningError
from utils import supabase_admin
from utils.cleaner import full_name
from utils.logger import get_logger

logger = get_logger(__name__)

_EMAIL_FUNCTION = "send-transactional-email"
_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


def send_transactional_email(
    email_type: str,
    *,
    recipient_email: str,
    recipient_name: str,
    recipient_type: str,
    data: Dict[str, Any],
) -> bool:
    try:
        response = httpx.post(
            f"{supabase_admin.SUPABASE_URL}/functions/v1/{_EMAIL_FUNCTION}",
            json={
                "email_type": email_type,
                "recipient_email": recipient_email,
                "recipient_name": recipient_name,
                "recipient_type": recipient_type,
                "data": data,
            },
            headers=supabase_admin.service_headers(),
            timeout=_TIMEOUT,
        )
        response.raise_for_status()
    except (httpx.HTTPError, AccountProvisioningError) as exc:
        logger.warning("Failed to send %s email to %s: %s", email_type, recipient_email, exc)
        return False
    logger.info("Sent %s email to %s", email_type, recipient_email)
    return True


def notify_payment_success(
    db: Session, submission: Submission, *, amount: Optional[float], invoice_url: Optional[str]
) -> bool:
    client = get_client(db, submission.client_id)
    if client is None or not client.email:
        return False
    return send_transactional_email(
        "payment_success",
        recipient_email=client.email,
        recipient_name=full_name(client.first_name, client.last_name, "Client"),
        recipient_type="client",
        data={
            "submission_id": submission.id,
            "submission_number": submission.number,
            "payment_amount": amount,
            "payment_date": datetime.now(timezone.utc).isoformat(),
            "invoice_url": invoice_url,
        },
    )


def notify_notaries_new_submission(db: Session, submission: Submission) -> int:
    """Tell every active notary about a newly paid submission. Returns the number of emails sent."""
    client_name = full_name(submission.first_name, submission.last_name, "Client")
    sent = 0
    for notary in list_active_notaries(db):
        if not notary.email:
            continue
        delivered = send_transactional_email(
            "new_submission_available",
            recipient_email=notary.email,
            recipient_name=notary.full_name or "Notary",
            recipient_type="notary",
            data={
                "submission_id": submission.id,
                "submission_number": submission.number,
                "client_name": client_name,
                "appointment_date": submission.appointment_date,
                "appointment_time": submission.appointment_time,
                "client_timezone": submission.timezone or "UTC",
                "notary_timezone": notary.timezone or "America/New_York",
                "address": submission.address,
                "city": submission.city,
                "country": submission.country,
            },
        )
        sent += int(delivered)
    return sent


def notify_payment_failed(db: Session, submission: Submission, error_message: str) -> bool:
    client = get_client(db, submission.client_id)
    if client is None or not client.email:
        return False
    return send_transactional_email(
        "payment_failed",
        recipient_email=client.email,
        recipient_name=full_name(client.first_name, client.last_name, "Client"),
        recipient_type="client",
        data={
            "submission_id": submission.id,
            "submission_number": submission.number,
            "error_message": error_message,
        },
    )


def notify_client_message(submission: Submission, content: str, sender_name: str) -> bool:
    if not submission.email:
        return False
    return send_transactional_email(
        "message_received",
        recipient_email=submission.email,
        recipient_name=full_name(submission.first_name, submission.last_name, "Client"),
        recipient_type="client",
        data={
            "submission_id": submission.id,
            "submission_number": submission.number,
            "sender_name": sender_name,
            "message_preview": content[:200],
        },
    )


def notify_abandoned_cart(submission: Submission, step: str) -> bool:
    if not submission.email:
        return False
    return send_transactional_email(
        f"abandoned_cart_{step}",
        recipient_email=submission.email,
        recipient_name=submission.first_name or "Client",
        recipient_type="client",
        data={
            "submission_id": submission.id,
            "contact": {"PRENOM": submission.first_name or "there"},
        },
    )
