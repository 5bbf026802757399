from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database.session import get_db
from svc import back_office
from svc.adjustment import adjust_payment
from svc.errors import PaymentAdjustmentError, RecordNotFoundError, SubmissionNotFoundError
from svc.reminders import send_abandoned_cart_reminders
from utils.auth import AuthContext, get_back_office_context
from utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


class UpdatePaymentRequest(BaseModel):
    submissionId: Optional[str] = None
    newAmount: Any = None
    oldAmount: Optional[float] = None


class StatusUpdateRequest(BaseModel):
    status: str


class TaskCreateRequest(BaseModel):
    option_name: str
    submission_id: Optional[str] = None
    option_id: Optional[str] = None
    document_context: Optional[str] = None
    notes: Optional[str] = None


class TaskUpdateRequest(BaseModel):
    status: Optional[str] = None
    notes: Optional[str] = None


class TicketUpdateRequest(BaseModel):
    status: Optional[str] = None
    priority: Optional[str] = None


class MessageRequest(BaseModel):
    content: str


def _sender_type(auth: AuthContext) -> str:
    if auth.is_service_role or auth.app_metadata.get("role") == "admin":
        return "admin"
    return "notary"


@router.post("/api/update-payment")
async def update_payment(
    payload: UpdatePaymentRequest,
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> JSONResponse:
    if not payload.submissionId or payload.newAmount is None:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Missing required fields: submissionId and newAmount"},
        )
    try:
        result = adjust_payment(db, payload.submissionId, payload.newAmount, payload.oldAmount)
    except (ValueError, SubmissionNotFoundError, PaymentAdjustmentError) as exc:
        db.rollback()
        logger.warning("Payment adjustment for %s rejected: %s", payload.submissionId, exc)
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})
    except stripe.StripeError as exc:
        db.rollback()
        logger.error("Stripe error adjusting payment for %s: %s", payload.submissionId, exc)
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": str(exc), "code": getattr(exc, "code", None)},
        )
    logger.info("Payment for %s adjusted by %s", payload.submissionId, auth.sub)
    return JSONResponse(status_code=200, content=result)


@router.get("/api/admin/submissions")
async def list_submissions(
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = 20,
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {"submissions": back_office.list_submissions(db, search=search, status=status_filter, limit=limit)}


@router.get("/api/admin/submissions/{submission_id}")
async def get_submission(
    submission_id: str,
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return back_office.submission_detail(db, submission_id)
    except SubmissionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.patch("/api/admin/submissions/{submission_id}")
async def update_submission_status(
    submission_id: str,
    payload: StatusUpdateRequest,
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return back_office.update_submission_status(db, submission_id, payload.status)
    except SubmissionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/api/admin/submissions/{submission_id}/messages")
async def post_message(
    submission_id: str,
    payload: MessageRequest,
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return back_office.send_message(
            db,
            submission_id,
            content=payload.content,
            sender_type=_sender_type(auth),
            sender_id=None if auth.is_service_role else auth.sub,
            sender_name=auth.user_metadata.get("full_name") or "Notary",
        )
    except SubmissionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/api/admin/tasks")
async def list_tasks(
    status_filter: Optional[str] = Query(None, alias="status"),
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {"tasks": back_office.list_tasks(db, status=status_filter)}


@router.post("/api/admin/tasks")
async def create_task(
    payload: TaskCreateRequest,
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return back_office.create_task(
            db,
            option_name=payload.option_name,
            submission_id=payload.submission_id,
            option_id=payload.option_id,
            document_context=payload.document_context,
            notes=payload.notes,
        )
    except SubmissionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.patch("/api/admin/tasks/{task_id}")
async def update_task(
    task_id: str,
    payload: TaskUpdateRequest,
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return back_office.update_task(db, task_id, status=payload.status, notes=payload.notes)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/api/admin/support")
async def list_tickets(
    status_filter: Optional[str] = Query(None, alias="status"),
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {"tickets": back_office.list_tickets(db, status=status_filter)}


@router.patch("/api/admin/support/{ticket_id}")
async def update_ticket(
    ticket_id: str,
    payload: TicketUpdateRequest,
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return back_office.update_ticket(db, ticket_id, status=payload.status, priority=payload.priority)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/api/admin/counts")
async def sidebar_counts(
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, int]:
    return back_office.sidebar_counts(db)


@router.post("/api/admin/abandoned-cart-reminders")
async def run_abandoned_cart_reminders(
    auth: AuthContext = Depends(get_back_office_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    results = send_abandoned_cart_reminders(db)
    return {"success": True, "results": results, "timestamp": datetime.now(timezone.utc).isoformat()}
