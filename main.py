# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

import os
from typing import Any, Dict, List, Optional

import stripe
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from database.crud import load_active_catalog
from database.session import Base, engine, get_db
from routes.admin import router as admin_router
from svc.checkout import create_checkout_session
from svc.errors import (
    AccountProvisioningError,
    ClientNotFoundError,
    OwnershipError,
    PaymentPendingError,
    SubmissionNotFoundError,
)
from svc.intake import (
    create_client_and_submission,
    delete_submission,
    ensure_client,
    get_owned_submission,
    list_client_submissions,
    require_client,
    save_submission_draft,
    update_profile,
)
from svc.pricing import catalog_entry
from svc.promotions import PromoCodeNotFound, validate_promo_code
from svc.transactions import list_transactions
from svc.verification import (
    record_additional_charge,
    record_payment_failure,
    verify_checkout_payment,
)
from utils.auth import AuthContext, get_auth_context, get_optional_auth_context
from utils.currency import normalize_currency
from utils.logger import setup_logger
from utils.stripe_objects import stripe_get, stripe_to_dict

logger = setup_logger()


class CheckoutSessionRequest(BaseModel):
    formData: Dict[str, Any]
    submissionId: Optional[str] = None
    currency: Optional[str] = None
    promoCode: Optional[str] = None
    promoCodeId: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    url: Optional[str]
    sessionId: Optional[str]
    submissionId: str
    accountCreated: bool = False


class VerifyPaymentRequest(BaseModel):
    sessionId: Optional[str] = None


class SaveSubmissionRequest(BaseModel):
    formData: Dict[str, Any] = {}
    sessionId: Optional[str] = None
    currentStep: Optional[int] = None
    completedSteps: Optional[List[int]] = None
    totalAmount: Optional[float] = None


class PromoCodeRequest(BaseModel):
    promoCode: Optional[str] = None
    amount: Optional[float] = None


load_dotenv()

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
APP_BASE_URL = (os.getenv("APP_BASE_URL") or "http://localhost:3000").rstrip("/")
CORS_ORIGINS = [
    origin.strip()
    for origin in (os.getenv("CORS_ORIGINS") or "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY

app = FastAPI(title="notary-payments", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(admin_router)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg") or "Invalid request")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)


@app.get("/api/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint that verifies configuration."""
    return {
        "status": "ok",
        "stripe_configured": bool(STRIPE_SECRET_KEY),
        "stripe_webhook_configured": bool(STRIPE_WEBHOOK_SECRET),
        "supabase_url_set": bool(os.getenv("SUPABASE_URL")),
        "supabase_service_role_set": bool(os.getenv("SUPABASE_SERVICE_ROLE_KEY")),
        "supabase_jwt_secret_set": bool(os.getenv("SUPABASE_JWT_SECRET")),
    }


def _ensure_stripe_configured() -> None:
    if not stripe.api_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe API key is not configured.",
        )


def _ensure_webhook_configured() -> None:
    if not STRIPE_WEBHOOK_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe webhook secret is not configured.",
        )


def _request_origin(request: Request) -> str:
    return (request.headers.get("origin") or APP_BASE_URL).rstrip("/")


@app.get("/api/catalog")
async def get_catalog(currency: Optional[str] = None, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        code = normalize_currency(currency)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    services, options = load_active_catalog(db)
    return {
        "currency": code,
        "services": [catalog_entry(service, code) for service in services.values()],
        "options": [catalog_entry(option, code) for option in options.values()],
    }


@app.post("/api/save-submission")
async def save_submission(payload: SaveSubmissionRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    if not payload.sessionId:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="sessionId required")
    submission_id = save_submission_draft(
        db,
        form=payload.formData,
        session_id=payload.sessionId,
        current_step=payload.currentStep,
        completed_steps=payload.completedSteps,
        total_amount=payload.totalAmount,
    )
    return {"success": True, "submission_id": submission_id}


@app.post("/api/create-client-and-submission")
async def create_client_and_submission_endpoint(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return create_client_and_submission(db, payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except AccountProvisioningError as exc:
        logger.error("Account provisioning failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@app.post("/api/create-checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session_endpoint(
    payload: CheckoutSessionRequest,
    request: Request,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: Session = Depends(get_db),
) -> CheckoutSessionResponse:
    _ensure_stripe_configured()
    try:
        result = create_checkout_session(
            db,
            form=payload.formData,
            origin=_request_origin(request),
            submission_id=payload.submissionId,
            currency=payload.currency,
            promo_code=payload.promoCode,
            promo_code_id=payload.promoCodeId,
            auth_user_id=auth.sub if auth else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except AccountProvisioningError as exc:
        logger.error("Account provisioning failed during checkout: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except stripe.StripeError as exc:
        logger.error("Stripe checkout session creation failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Unable to initiate checkout session with Stripe.",
        ) from exc
    return CheckoutSessionResponse(**result)


@app.post("/api/verify-payment")
async def verify_payment(payload: VerifyPaymentRequest, db: Session = Depends(get_db)) -> JSONResponse:
    _ensure_stripe_configured()
    if not payload.sessionId:
        return JSONResponse(status_code=400, content={"verified": False, "error": "Missing session ID"})
    try:
        result = verify_checkout_payment(db, payload.sessionId)
    except (PaymentPendingError, SubmissionNotFoundError, ValueError) as exc:
        db.rollback()
        return JSONResponse(status_code=400, content={"verified": False, "error": str(exc)})
    except stripe.StripeError as exc:
        db.rollback()
        logger.error("Failed to verify Stripe session %s: %s", payload.sessionId, exc)
        return JSONResponse(status_code=400, content={"verified": False, "error": str(exc)})
    return JSONResponse(status_code=200, content=result)


@app.post("/api/validate-promo-code")
async def validate_promo_code_endpoint(payload: PromoCodeRequest) -> JSONResponse:
    _ensure_stripe_configured()
    if not payload.promoCode or not payload.promoCode.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Promo code is required")
    try:
        result = validate_promo_code(payload.promoCode, payload.amount)
    except PromoCodeNotFound as exc:
        return JSONResponse(status_code=200, content={"valid": False, "error": str(exc)})
    except stripe.StripeError as exc:
        logger.error("Promo code validation failed for %s: %s", payload.promoCode, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Unable to validate promo code.") from exc
    return JSONResponse(status_code=200, content=result)


@app.post("/api/ensure-client")
async def ensure_client_endpoint(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        client = ensure_client(db, user_id=auth.sub, email=auth.email, metadata=auth.user_metadata)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"client": client.to_dict()}


@app.patch("/api/profile")
async def patch_profile(
    payload: Dict[str, Any],
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        client = require_client(db, auth.sub)
        client = update_profile(db, client, payload)
    except ClientNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"client": client.to_dict()}


@app.get("/api/submissions")
async def get_submissions(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        client = require_client(db, auth.sub)
    except ClientNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return {"submissions": list_client_submissions(db, client)}


@app.get("/api/submissions/{submission_id}/transactions")
async def get_submission_transactions(
    submission_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    _ensure_stripe_configured()
    try:
        client = require_client(db, auth.sub)
        submission = get_owned_submission(db, client, submission_id)
    except ClientNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except (SubmissionNotFoundError, OwnershipError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found") from exc
    return list_transactions(submission)


@app.delete("/api/submissions/{submission_id}")
async def delete_submission_endpoint(
    submission_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        client = require_client(db, auth.sub)
        delete_submission(db, client, submission_id)
    except ClientNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SubmissionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except OwnershipError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"success": True}


def _handle_checkout_completed(db: Session, session_obj: Any) -> None:
    session_id = stripe_get(session_obj, "id")
    metadata = stripe_to_dict(stripe_get(session_obj, "metadata"))
    if metadata.get("type") == "additional_charge":
        record_additional_charge(db, session_obj)
        return
    try:
        result = verify_checkout_payment(db, session_id)
    except PaymentPendingError:
        logger.info("Stripe checkout session %s not yet paid; will retry later.", session_id)
    except (SubmissionNotFoundError, ValueError) as exc:
        db.rollback()
        logger.error("Unable to process Stripe session %s: %s", session_id, exc)
    else:
        logger.info("Webhook processed session %s: %s", session_id, result.get("message", "verified"))


@app.post("/api/stripe-webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
) -> JSONResponse:
    _ensure_webhook_configured()

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if signature is None:
        logger.warning("Stripe webhook called without signature header")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe signature header.")

    try:
        event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Invalid Stripe webhook signature: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe webhook signature.") from exc

    event_type = event["type"]
    event_object = event["data"]["object"]
    logger.info("Received Stripe webhook event: %s", event_type)

    try:
        if event_type == "checkout.session.completed":
            _handle_checkout_completed(db, event_object)
        elif event_type == "payment_intent.payment_failed":
            record_payment_failure(db, event_object)
    except Exception as exc:
        db.rollback()
        logger.error("Failed to process webhook event %s: %s", event_type, exc, exc_info=True)

    return JSONResponse(status_code=200, content={"received": True})
