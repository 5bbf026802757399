# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

import stripe
from sqlalchemy.orm import Session

from database.crud import find_submission_by_form_session, get_client, get_submission, load_active_catalog
from database.models import Client, Submission
from svc.funnel import advance_funnel
from svc.intake import apply_form, checkout_data, upsert_client
from svc.pricing import build_line_items, calculate_total
from svc.promotions import resolve_checkout_discount
from utils import supabase_admin
from utils.cleaner import clean_str, full_name, normalize_email
from utils.currency import normalize_currency
from utils.logger import get_logger
from utils.stripe_objects import stripe_get

logger = get_logger(__name__)

_RETRY_STATUSES = ("pending", "pending_payment", "confirmed")


def _success_url(origin: str) -> str:
    return f"{origin}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"


def _cancel_url(origin: str) -> str:
    return f"{origin}/payment/failed"


def _locate_submission(
    db: Session, submission_id: Optional[str], form_session_id: Optional[str]
) -> Optional[Submission]:
    if submission_id:
        submission = get_submission(db, submission_id)
        if submission is not None:
            return submission
        logger.warning("Retry submission %s not found; falling back to form session lookup", submission_id)
    if form_session_id:
        return find_submission_by_form_session(db, form_session_id, _RETRY_STATUSES)
    return None


def _ensure_stripe_customer(db: Session, client: Client) -> Optional[str]:
    """Stripe customer for ``client``, created on demand. ``None`` if Stripe refuses."""
    if client.stripe_customer_id:
        return client.stripe_customer_id
    try:
        customer = stripe.Customer.create(
            email=client.email,
            name=full_name(client.first_name, client.last_name) or None,
            metadata={"client_id": client.id},
        )
    except stripe.StripeError as exc:
        logger.warning("Could not create Stripe customer for client %s: %s", client.id, exc)
        return None
    client.stripe_customer_id = str(stripe_get(customer, "id"))
    db.commit()
    return client.stripe_customer_id


def _new_submission_owner(
    db: Session, form: Mapping[str, Any], auth_user_id: Optional[str]
) -> Tuple[Client, bool]:
    """Resolve the auth user and client row behind a first-time checkout."""
    email = normalize_email(form.get("email")) or ""
    account_created = False
    user_id = auth_user_id
    if not user_id:
        user_id, account_created = supabase_admin.find_or_create_user(
            email,
            password=form.get("password"),
            metadata={
                "first_name": form.get("firstName"),
                "last_name": form.get("lastName"),
                "user_type": "client",
            },
        )
        if account_created:
            logger.info("Created auth user %s for %s during checkout", user_id, email)

    client = upsert_client(
        db,
        email=email,
        first_name=clean_str(form.get("firstName")) or "",
        last_name=clean_str(form.get("lastName")) or "",
        form=form,
        user_id=user_id,
    )
    return client, account_created


def create_checkout_session(
    db: Session,
    *,
    form: Mapping[str, Any],
    origin: str,
    submission_id: Optional[str] = None,
    currency: Optional[str] = None,
    promo_code: Optional[str] = None,
    promo_code_id: Optional[str] = None,
    auth_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Persist the intake form as a ``pending_payment`` submission and open a Stripe Checkout Session.

    Raises ``ValueError`` for invalid input (missing identity fields, unsupported
    currency, nothing billable) and lets ``stripe.StripeError`` from the session
    creation propagate.
    """
    if not form.get("email") or not form.get("firstName") or not form.get("lastName"):
        raise ValueError("Missing required fields: email, firstName, lastName")

    submission = _locate_submission(db, submission_id, form.get("sessionId"))
    stored_currency = (submission.data or {}).get("currency") if submission is not None else None
    currency = normalize_currency(currency or form.get("currency") or stored_currency)

    services, options = load_active_catalog(db)
    line_items = build_line_items(form, services, options, currency)
    if not line_items:
        raise ValueError("No services selected")
    total = calculate_total(form, services, options, currency)

    account_created = False
    if submission is not None:
        client = get_client(db, submission.client_id)
        logger.info("Reusing submission %s for checkout", submission.id)
    else:
        client, account_created = _new_submission_owner(db, form, auth_user_id)
        submission = Submission(client_id=client.id, funnel_status="started")
        db.add(submission)

    apply_form(submission, form, checkout_data(form, currency))
    submission.status = "pending_payment"
    submission.total_price = total
    if submission.client_id is None and client is not None:
        submission.client_id = client.id
    db.commit()
    db.refresh(submission)

    customer_id = _ensure_stripe_customer(db, client) if client is not None else None

    params: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": line_items,
        "success_url": _success_url(origin),
        "cancel_url": _cancel_url(origin),
        "metadata": {
            "submission_id": submission.id,
            "client_id": client.id if client is not None else "",
            "account_created": "true" if account_created else "false",
        },
        # Keep the card on file so later price adjustments can be charged off-session.
        "payment_intent_data": {
            "setup_future_usage": "off_session",
            "metadata": {"submission_id": submission.id},
        },
    }
    if customer_id:
        params["customer"] = customer_id
    else:
        params["customer_email"] = submission.email

    promotion_code_id = resolve_checkout_discount(promo_code_id, promo_code)
    if promotion_code_id:
        params["discounts"] = [{"promotion_code": promotion_code_id}]
    else:
        params["allow_promotion_codes"] = True

    session = stripe.checkout.Session.create(**params)

    if advance_funnel(submission, "payment_pending"):
        db.commit()

    logger.info(
        "Created Stripe checkout session %s for submission %s (%s %s)",
        stripe_get(session, "id"),
        submission.id,
        total,
        currency,
    )
    return {
        "url": stripe_get(session, "url"),
        "sessionId": stripe_get(session, "id"),
        "submissionId": submission.id,
        "accountCreated": account_created,
    }
