# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

"""Reconciliation of completed Stripe Checkout Sessions with submissions.

``verify_checkout_payment`` is called both from the payment success page and
from the ``checkout.session.completed`` webhook, so it must be idempotent:
only a submission still in ``pending_payment`` is transitioned, everything
else short-circuits with "Payment already processed".
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.orm import Session

from database.crud import (
    add_signatories,
    add_submission_files,
    count_paid_submissions,
    get_client,
    get_submission,
    has_signatories,
)
from database.models import Client, Service, Submission
from svc.errors import PaymentPendingError, SubmissionNotFoundError
from svc.funnel import advance_funnel
from svc.notifications import notify_notaries_new_submission, notify_payment_failed, notify_payment_success
from utils.currency import from_minor_units
from utils.logger import get_logger
from utils.stripe_objects import coerce_stripe_id, list_data, stripe_get, stripe_to_dict

logger = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _invoice_url(session: Any) -> Optional[str]:
    invoice = stripe_get(session, "invoice")
    url = stripe_get(invoice, "hosted_invoice_url") or stripe_get(invoice, "invoice_pdf")
    if url:
        return url

    payment_intent_id = coerce_stripe_id(stripe_get(session, "payment_intent"))
    if not payment_intent_id:
        return None
    try:
        charges = stripe.Charge.list(payment_intent=payment_intent_id, limit=1)
    except stripe.StripeError as exc:
        logger.warning("Unable to list charges for %s: %s", payment_intent_id, exc)
        return None
    entries = list_data(charges)
    return stripe_get(entries[0], "receipt_url") if entries else None


def _discover_payment_method(session: Any, payment_intent_id: str) -> Optional[str]:
    """Payment method used for the checkout: intent, then latest charge, then setup intent."""
    intent = stripe.PaymentIntent.retrieve(payment_intent_id, expand=["payment_method", "latest_charge"])
    method_id = coerce_stripe_id(stripe_get(intent, "payment_method"))
    if method_id:
        return method_id

    latest_charge = stripe_get(intent, "latest_charge")
    charge_id = coerce_stripe_id(latest_charge)
    if charge_id:
        charge = latest_charge if not isinstance(latest_charge, str) else stripe.Charge.retrieve(charge_id)
        method_id = coerce_stripe_id(stripe_get(charge, "payment_method"))
        if method_id:
            return method_id

    setup_intent_id = coerce_stripe_id(stripe_get(session, "setup_intent"))
    if setup_intent_id:
        try:
            setup_intent = stripe.SetupIntent.retrieve(setup_intent_id, expand=["payment_method"])
        except stripe.StripeError as exc:
            logger.info("Setup intent %s unavailable: %s", setup_intent_id, exc)
            return None
        return coerce_stripe_id(stripe_get(setup_intent, "payment_method"))
    return None


def save_payment_method(db: Session, session: Any, client: Optional[Client]) -> Optional[str]:
    """Attach the checkout's card to the customer as default so it can be charged later.

    Best effort: Stripe failures are logged and ``None`` is returned. A guest
    client's new customer id is staged on the session but not committed, so
    the caller's row lock survives until the status transition.
    """
    customer_id = coerce_stripe_id(stripe_get(session, "customer"))
    payment_intent_id = coerce_stripe_id(stripe_get(session, "payment_intent"))
    if not customer_id or not payment_intent_id:
        return None

    method_id: Optional[str] = None
    try:
        method_id = _discover_payment_method(session, payment_intent_id)
        if method_id:
            method = stripe.PaymentMethod.retrieve(method_id)
            if coerce_stripe_id(stripe_get(method, "customer")) != customer_id:
                stripe.PaymentMethod.attach(method_id, customer=customer_id)
            stripe.Customer.modify(customer_id, invoice_settings={"default_payment_method": method_id})
    except stripe.StripeError as exc:
        logger.warning("Could not save payment method for customer %s: %s", customer_id, exc)

    # Guest checkouts get their customer from the session itself.
    if client is not None and not client.stripe_customer_id:
        client.stripe_customer_id = customer_id
    return method_id


def _signatory_row(submission_id: str, document_key: str, signatory: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "submission_id": submission_id,
        "document_key": document_key,
        "first_name": signatory.get("firstName"),
        "last_name": signatory.get("lastName"),
        "birth_date": signatory.get("birthDate"),
        "birth_city": signatory.get("birthCity"),
        "postal_address": signatory.get("postalAddress"),
        "email": signatory.get("email"),
        "phone": signatory.get("phone"),
    }


def _is_named(signatory: Any) -> bool:
    return isinstance(signatory, dict) and bool(signatory.get("firstName")) and bool(signatory.get("lastName"))


def signatory_rows(submission_id: str, data: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Rows for the ``signatories`` table from the submission's form data.

    A flat list applies to every document (``{serviceId}_{index}``, or
    ``global`` when no document was uploaded); a mapping is already keyed by
    document. Entries without both names are skipped.
    """
    signatories = data.get("signatories") or data.get("signatoriesByDocument")
    if not signatories:
        return []

    rows: List[Dict[str, Any]] = []
    if isinstance(signatories, list):
        document_keys = [
            f"{service_id}_{index}"
            for service_id, documents in (data.get("serviceDocuments") or {}).items()
            if isinstance(documents, list)
            for index in range(len(documents))
        ] or ["global"]
        for signatory in signatories:
            if not _is_named(signatory):
                continue
            rows.extend(_signatory_row(submission_id, key, signatory) for key in document_keys)
    elif isinstance(signatories, dict):
        for document_key, entries in signatories.items():
            if not isinstance(entries, list):
                continue
            rows.extend(
                _signatory_row(submission_id, document_key, signatory)
                for signatory in entries
                if _is_named(signatory)
            )
    return rows


def _selected_services(db: Session, service_ids: List[str]) -> List[Dict[str, Any]]:
    if not service_ids:
        return []
    services = db.execute(
        select(Service).where(Service.service_id.in_(service_ids), Service.is_active.is_(True))
    ).scalars().all()
    if not services:
        return [{"service_id": sid, "id": sid, "name": "", "service_name": "", "price": 0} for sid in service_ids]
    return [
        {
            "service_id": service.service_id,
            "id": service.service_id,
            "name": service.name or "",
            "service_name": service.name or "",
            "price": service.base_price or 0,
        }
        for service in services
    ]


def _user_data(submission: Submission, client: Optional[Client]) -> Dict[str, str]:
    return {
        "email": submission.email or (client.email if client else "") or "",
        "phone": submission.phone or (client.phone if client else "") or "",
        "firstName": submission.first_name or "",
        "lastName": submission.last_name or "",
        "postalCode": submission.postal_code or "",
        "country": submission.country or "",
    }


def verify_checkout_payment(db: Session, session_id: str) -> Dict[str, Any]:
    """Mark the submission behind a paid Checkout Session as ``pending`` and fan out side effects.

    Raises :class:`PaymentPendingError` when the session is not paid,
    ``ValueError`` when it carries no submission id, and
    :class:`SubmissionNotFoundError` when that id does not exist.
    """
    session = stripe.checkout.Session.retrieve(session_id, expand=["payment_intent", "invoice", "setup_intent"])
    if stripe_get(session, "payment_status") != "paid":
        raise PaymentPendingError("Payment not completed")

    invoice_url = _invoice_url(session)
    metadata = stripe_to_dict(stripe_get(session, "metadata"))
    submission_id = metadata.get("submission_id")
    account_created = metadata.get("account_created") == "true"
    if not submission_id:
        raise ValueError("Missing submission ID in payment metadata")

    submission = get_submission(db, submission_id, for_update=True)
    if submission is None:
        raise SubmissionNotFoundError("Submission not found")

    amount_total = stripe_get(session, "amount_total")
    currency = (stripe_get(session, "currency") or "eur").upper()
    amount = from_minor_units(amount_total, currency)
    client = get_client(db, submission.client_id)

    if submission.status != "pending_payment":
        db.commit()
        logger.info("Checkout session %s already processed for submission %s", session_id, submission_id)
        return {
            "verified": True,
            "message": "Payment already processed",
            "submissionId": submission_id,
            "accountCreated": account_created,
            "invoiceUrl": invoice_url,
            "amount": amount,
            "currency": currency,
            "transactionId": session_id,
            "userData": _user_data(submission, client),
            "selectedServices": [],
            "isFirstPurchase": True,
            "servicesCount": 0,
        }

    save_payment_method(db, session, client)

    data = dict(submission.data or {})
    data["payment"] = {
        "stripe_session_id": session_id,
        "payment_intent_id": coerce_stripe_id(stripe_get(session, "payment_intent")),
        "amount_paid": amount_total,
        "currency": stripe_get(session, "currency"),
        "payment_status": stripe_get(session, "payment_status"),
        "paid_at": _now_iso(),
        "invoice_url": invoice_url,
    }
    submission.data = data
    submission.status = "pending"
    advance_funnel(submission, "payment_completed")
    db.commit()
    logger.info("Payment verified for submission %s via session %s", submission_id, session_id)

    uploaded_files = data.get("uploadedFiles") or []
    if uploaded_files:
        add_submission_files(db, submission_id, uploaded_files)
    if not has_signatories(db, submission_id):
        rows = signatory_rows(submission_id, data)
        if rows:
            add_signatories(db, rows)

    notify_payment_success(db, submission, amount=amount if amount_total else None, invoice_url=invoice_url)
    notify_notaries_new_submission(db, submission)

    is_first_purchase = True
    if submission.client_id:
        is_first_purchase = count_paid_submissions(db, submission.client_id) <= 1

    selected_services = _selected_services(db, data.get("selectedServices") or [])
    return {
        "verified": True,
        "submissionId": submission_id,
        "accountCreated": account_created,
        "invoiceUrl": invoice_url,
        "amount": amount,
        "currency": currency,
        "transactionId": session_id,
        "userData": _user_data(submission, client),
        "selectedServices": selected_services,
        "isFirstPurchase": is_first_purchase,
        "servicesCount": len(selected_services),
    }


def record_additional_charge(db: Session, session: Any) -> bool:
    """Record a paid price-adjustment Checkout Session on its submission's payment history."""
    metadata = stripe_to_dict(stripe_get(session, "metadata"))
    submission = get_submission(db, metadata.get("submission_id") or "", for_update=True)
    if submission is None:
        logger.warning("Additional charge session %s has no known submission", stripe_get(session, "id"))
        return False

    session_id = stripe_get(session, "id")
    data = dict(submission.data or {})
    payment = dict(data.get("payment") or {})
    additional = [dict(entry) for entry in payment.get("additional_payments") or []]

    entry = next((item for item in additional if item.get("checkout_session_id") == session_id), None)
    if entry is None:
        entry = {
            "type": "checkout_session",
            "checkout_session_id": session_id,
            "amount": stripe_get(session, "amount_total"),
            "created_at": _now_iso(),
        }
        additional.append(entry)
    elif entry.get("status") == "succeeded":
        return False
    entry["status"] = "succeeded"
    entry["payment_intent_id"] = coerce_stripe_id(stripe_get(session, "payment_intent"))
    entry["paid_at"] = _now_iso()

    payment["additional_payments"] = additional
    data["payment"] = payment
    submission.data = data
    db.commit()
    logger.info("Recorded additional charge %s for submission %s", session_id, submission.id)
    return True


def record_payment_failure(db: Session, payment_intent: Any) -> bool:
    """Email the client whose payment intent failed. Returns whether an email went out."""
    metadata = stripe_to_dict(stripe_get(payment_intent, "metadata"))
    submission_id = metadata.get("submission_id")
    if not submission_id:
        return False
    submission = get_submission(db, submission_id)
    if submission is None:
        return False
    error = stripe_get(payment_intent, "last_payment_error")
    message = stripe_get(error, "message") or "Payment failed"
    logger.warning("Payment intent %s failed for submission %s: %s", stripe_get(payment_intent, "id"), submission_id, message)
    return notify_payment_failed(db, submission, message)
