"""Abandoned-cart reminder sequence.

A submission left in ``pending_payment`` gets one email per step once it is
older than the step's delay. Steps already sent are recorded in
``data.abandoned_cart_sent`` so each goes out at most once; the sequence stops
by itself as soon as the submission leaves ``pending_payment``. Meant to be
triggered periodically by a scheduler.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from database.models import Submission
from svc.notifications import notify_abandoned_cart
from utils.logger import get_logger

logger = get_logger(__name__)

# (step, hours after the submission was created)
REMINDER_SEQUENCE: Tuple[Tuple[str, int], ...] = (
    ("h+1", 1),
    ("j+1", 24),
    ("j+3", 72),
    ("j+7", 168),
    ("j+10", 240),
    ("j+15", 360),
    ("j+30", 720),
)

SENT_MARKER = "abandoned_cart_sent"


def _due_submissions(db: Session, threshold: datetime) -> List[Submission]:
    return list(
        db.execute(
            select(Submission)
            .where(
                Submission.status == "pending_payment",
                Submission.email.is_not(None),
                Submission.email != "",
                Submission.created_at < threshold,
            )
            .order_by(Submission.created_at.asc())
        ).scalars()
    )


def _mark_sent(submission: Submission, step: str, sent_at: datetime) -> None:
    data = dict(submission.data or {})
    data[SENT_MARKER] = {**(data.get(SENT_MARKER) or {}), step: sent_at.isoformat()}
    submission.data = data


def send_abandoned_cart_reminders(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Send every reminder step that has come due. ``now`` is naive UTC, like ``created_at``."""
    now = now or datetime.utcnow()
    results: Dict[str, Any] = {"processed": 0, "sent": 0, "errors": []}

    for step, delay_hours in REMINDER_SEQUENCE:
        for submission in _due_submissions(db, now - timedelta(hours=delay_hours)):
            if step in ((submission.data or {}).get(SENT_MARKER) or {}):
                continue
            results["processed"] += 1
            if not notify_abandoned_cart(submission, step):
                results["errors"].append(f"Error sending {step} email for submission {submission.id}")
                continue
            _mark_sent(submission, step, now)
            db.commit()
            results["sent"] += 1

    logger.info(
        "Abandoned-cart run: %s processed, %s sent, %s failed",
        results["processed"],
        results["sent"],
        len(results["errors"]),
    )
    return results
