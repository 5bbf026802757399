from __future__ import annotations

from typing import Optional

from database.models import Submission

FUNNEL_ORDER = {
    "started": 1,
    "services_selected": 2,
    "documents_uploaded": 3,
    "delivery_method_selected": 4,
    "personal_info_completed": 5,
    "summary_viewed": 6,
    "payment_pending": 7,
    "payment_completed": 8,
    "submission_completed": 9,
}


def funnel_rank(status: Optional[str]) -> int:
    return FUNNEL_ORDER.get(status or "", 0)


def funnel_status_for_step(step: Optional[int]) -> str:
    """Map the intake form step number to the furthest funnel stage it proves."""
    step = step or 0
    if step >= 4:
        return "personal_info_completed"
    if step >= 3:
        return "delivery_method_selected"
    if step >= 2:
        return "documents_uploaded"
    if step >= 1:
        return "services_selected"
    return "started"


def should_update_funnel_status(current: Optional[str], new: Optional[str]) -> bool:
    if not new:
        return False
    return funnel_rank(new) > funnel_rank(current)


def advance_funnel(submission: Submission, new_status: str) -> bool:
    """Move ``submission.funnel_status`` forward; never backward. Caller commits."""
    if not should_update_funnel_status(submission.funnel_status, new_status):
        return False
    submission.funnel_status = new_status
    return True
