# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

"""Price adjustments on already-paid submissions.

The back office may change a submission's price after checkout. The new price
is compared with what the client has actually paid so far (the original
payment intent minus every refund that went through) and the difference is
either charged or refunded:

* charge: off-session on the customer's saved card when there is one, else a
  fresh Checkout Session the client has to complete;
* refund: a partial refund on the original payment intent, never more than
  what is still refundable.

All arithmetic happens in integer minor units of the submission currency.
"""
from __future__ import annotations

import math
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from database.crud import get_client, get_submission
from database.models import Submission
from svc.errors import PaymentAdjustmentError, SubmissionNotFoundError
from utils.cleaner import full_name
from utils.currency import format_amount, from_minor_units, to_minor_units
from utils.logger import get_logger
from utils.stripe_objects import coerce_stripe_id, list_data, stripe_get, stripe_to_dict, to_int

logger = get_logger(__name__)

APP_BASE_URL = (os.getenv("APP_BASE_URL") or "http://localhost:3000").rstrip("/")

_SETTLED_CHARGE_STATUSES = ("succeeded", "processing")
_VOID_REFUND_STATUSES = ("failed", "canceled")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_new_amount(value: Any) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid newAmount value: {value}. Must be a valid number.") from None
    if not math.isfinite(amount) or amount < 0:
        raise ValueError(f"Invalid newAmount value: {value}. Must be a valid number.")
    return amount


def refunded_total(payment_intent_id: str) -> int:
    """Minor units already refunded on ``payment_intent_id``; 0 when the list is unavailable."""
    try:
        refunds = stripe.Refund.list(payment_intent=payment_intent_id, limit=100)
    except stripe.StripeError as exc:
        logger.warning("Could not list refunds for %s: %s", payment_intent_id, exc)
        return 0
    return sum(
        to_int(stripe_get(refund, "amount")) or 0
        for refund in list_data(refunds)
        if stripe_get(refund, "status") not in _VOID_REFUND_STATUSES
    )


def _load_payment_intent(submission: Submission) -> Any:
    payment = (submission.data or {}).get("payment")
    if not payment:
        raise PaymentAdjustmentError("No payment information found for this submission")
    session_id = payment.get("stripe_session_id")
    if not session_id:
        raise PaymentAdjustmentError("No Stripe session ID found in payment information")

    try:
        session = stripe.checkout.Session.retrieve(session_id, expand=["payment_intent"])
    except stripe.StripeError as exc:
        raise PaymentAdjustmentError(f"Failed to retrieve checkout session: {exc}") from exc

    payment_intent_id = coerce_stripe_id(stripe_get(session, "payment_intent"))
    if not payment_intent_id:
        raise PaymentAdjustmentError(
            f"Payment intent not found in session. Payment status: {stripe_get(session, 'payment_status')}"
        )
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id, expand=["payment_method", "latest_charge"])
    except stripe.StripeError as exc:
        raise PaymentAdjustmentError(f"Failed to retrieve payment intent: {exc}") from exc


def refresh_intent_metadata(payment_intent: Any, submission: Submission) -> None:
    """Mirror the submission's current state onto the original payment intent. Best effort."""
    metadata = stripe_to_dict(stripe_get(payment_intent, "metadata"))
    metadata.update(
        {
            "submission_id": submission.id,
            "submission_number": submission.number,
            "client_name": full_name(submission.first_name, submission.last_name),
            "client_email": submission.email or "",
            "total_price": str(submission.total_price or 0),
            "notary_cost": str((submission.data or {}).get("notary_cost") or 0),
            "status": submission.status or "",
            "updated_at": _now_iso(),
        }
    )
    try:
        stripe.PaymentIntent.modify(stripe_get(payment_intent, "id"), metadata=metadata)
    except stripe.StripeError as exc:
        logger.warning("Could not update payment intent metadata for %s: %s", submission.id, exc)


class _Adjustment:
    """Everything the charge and refund paths need about one adjustment request."""

    def __init__(
        self, submission: Submission, payment_intent: Any, currency: str, refunded: int, new_amount: float
    ) -> None:
        self.submission = submission
        self.payment_intent = payment_intent
        self.currency = currency
        self.intent_amount = to_int(stripe_get(payment_intent, "amount")) or 0
        self.refunded = refunded
        self.net_paid = self.intent_amount - refunded
        self.new_amount = new_amount
        self.new_minor = to_minor_units(new_amount, currency)
        self.difference = self.new_minor - self.net_paid

    @property
    def stripe_currency(self) -> str:
        return self.currency.lower()

    def major(self, minor: int) -> float:
        return from_minor_units(minor, self.currency)

    def idempotency_key(self, kind: str) -> str:
        return f"adjust-{self.submission.id}-{self.net_paid}-{self.new_minor}-{kind}"

    def metadata(self) -> Dict[str, str]:
        return {
            "submission_id": self.submission.id,
            "type": "additional_charge",
            "net_paid_amount": str(self.major(self.net_paid)),
            "new_amount": str(self.new_amount),
            "difference": str(self.major(self.difference)),
        }


def _customer_payment_method(customer_id: str) -> Optional[str]:
    customer = stripe.Customer.retrieve(customer_id, expand=["invoice_settings.default_payment_method"])
    default_method = stripe_get(stripe_get(customer, "invoice_settings"), "default_payment_method")
    method_id = coerce_stripe_id(default_method)
    if method_id:
        return method_id
    methods = list_data(stripe.PaymentMethod.list(customer=customer_id, type="card"))
    return coerce_stripe_id(methods[0]) if methods else None


def _original_payment_method(payment_intent: Any) -> Optional[str]:
    method_id = coerce_stripe_id(stripe_get(payment_intent, "payment_method"))
    if method_id:
        return method_id
    latest_charge = stripe_get(payment_intent, "latest_charge")
    charge_id = coerce_stripe_id(latest_charge)
    if not charge_id:
        return None
    charge = latest_charge if not isinstance(latest_charge, str) else stripe.Charge.retrieve(charge_id)
    return coerce_stripe_id(stripe_get(charge, "payment_method"))


def _checkout_for_difference(adj: _Adjustment, *, customer_id: Optional[str], reason: str) -> Dict[str, Any]:
    number = adj.submission.number
    params: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [
            {
                "price_data": {
                    "currency": adj.stripe_currency,
                    "product_data": {
                        "name": f"Additional charge for submission {number}",
                        "description": (
                            f"Price adjustment: Net paid {format_amount(adj.major(adj.net_paid), adj.currency)}"
                            f" → New {format_amount(adj.new_amount, adj.currency)}"
                        ),
                    },
                    "unit_amount": adj.difference,
                },
                "quantity": 1,
            }
        ],
        "success_url": f"{APP_BASE_URL}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{APP_BASE_URL}/payment/failed",
        "metadata": adj.metadata(),
        "allow_promotion_codes": False,
    }
    if customer_id:
        params["customer"] = customer_id
    elif adj.submission.email:
        params["customer_email"] = adj.submission.email

    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as exc:
        raise PaymentAdjustmentError(f"Failed to create checkout session for additional charge: {exc}") from exc

    amount_text = format_amount(adj.major(adj.difference), adj.currency)
    return {
        "success": True,
        "type": "charge",
        "amount": adj.major(adj.difference),
        "checkout_session_id": stripe_get(session, "id"),
        "checkout_url": stripe_get(session, "url"),
        "requires_customer_action": True,
        "message": f"{reason}Checkout session created for additional {amount_text}. Customer must complete payment.",
    }


def _charge_off_session(adj: _Adjustment, customer_id: str, method_id: str) -> Optional[Dict[str, Any]]:
    """Charge the saved card. ``None`` when the customer has to step in."""
    try:
        intent = stripe.PaymentIntent.create(
            amount=adj.difference,
            currency=adj.stripe_currency,
            customer=customer_id,
            payment_method=method_id,
            off_session=True,
            confirm=True,
            description=f"Additional charge for submission {adj.submission.number}",
            metadata=adj.metadata(),
            idempotency_key=adj.idempotency_key("charge"),
        )
    except stripe.StripeError as exc:
        logger.warning("Off-session charge failed for submission %s: %s", adj.submission.id, exc)
        return None

    status = stripe_get(intent, "status")
    if status not in _SETTLED_CHARGE_STATUSES:
        logger.warning("Off-session charge for submission %s left in status %s", adj.submission.id, status)
        return None

    amount_text = format_amount(adj.major(adj.difference), adj.currency)
    message = (
        f"Successfully charged additional {amount_text} automatically"
        if status == "succeeded"
        else f"Payment of {amount_text} is being processed"
    )
    return {
        "success": True,
        "type": "charge",
        "amount": adj.major(adj.difference),
        "payment_intent_id": stripe_get(intent, "id"),
        "payment_status": status,
        "requires_customer_action": False,
        "message": message,
    }


def _charge(adj: _Adjustment, client_customer_id: Optional[str]) -> Dict[str, Any]:
    customer_id = client_customer_id or coerce_stripe_id(stripe_get(adj.payment_intent, "customer"))

    if customer_id:
        try:
            method_id = _customer_payment_method(customer_id)
        except stripe.StripeError as exc:
            raise PaymentAdjustmentError(f"Failed to process additional charge: {exc}") from exc
        if not method_id:
            return _checkout_for_difference(adj, customer_id=customer_id, reason="No saved payment method. ")
        result = _charge_off_session(adj, customer_id, method_id)
        if result is not None:
            return result
        return _checkout_for_difference(adj, customer_id=customer_id, reason="Automatic charge failed. ")

    try:
        method_id = _original_payment_method(adj.payment_intent)
    except stripe.StripeError as exc:
        raise PaymentAdjustmentError(f"Failed to process additional charge: {exc}") from exc
    if not method_id:
        raise PaymentAdjustmentError("Payment method not found. Cannot charge additional amount.")
    return _checkout_for_difference(adj, customer_id=None, reason="")


def _refund(adj: _Adjustment) -> Dict[str, Any]:
    # new_minor >= 0, so this never exceeds the net paid amount.
    refund_minor = -adj.difference
    percentage = (refund_minor / adj.net_paid * 100) if adj.net_paid > 0 else 0.0
    try:
        refund = stripe.Refund.create(
            payment_intent=stripe_get(adj.payment_intent, "id"),
            amount=refund_minor,
            reason="requested_by_customer",
            metadata={
                "submission_id": adj.submission.id,
                "type": "price_adjustment",
                "net_paid_amount": str(adj.major(adj.net_paid)),
                "new_amount": str(adj.new_amount),
                "refund_percentage": f"{percentage:.2f}",
            },
            idempotency_key=adj.idempotency_key("refund"),
        )
    except stripe.StripeError as exc:
        raise PaymentAdjustmentError(f"Failed to create refund: {exc}") from exc

    amount_text = format_amount(adj.major(refund_minor), adj.currency)
    return {
        "success": True,
        "type": "refund",
        "amount": adj.major(refund_minor),
        "refund_id": stripe_get(refund, "id"),
        "refund_status": stripe_get(refund, "status"),
        "requires_customer_action": False,
        "message": f"Successfully refunded {amount_text} ({percentage:.1f}% of net paid amount)",
    }


def _record(adj: _Adjustment, result: Dict[str, Any]) -> None:
    now = _now_iso()
    data = dict(adj.submission.data or {})
    payment = dict(data.get("payment") or {})
    additional = list(payment.get("additional_payments") or [])
    refunds = list(payment.get("refunds") or [])

    if result["type"] == "charge" and result.get("payment_intent_id"):
        additional.append(
            {
                "payment_intent_id": result["payment_intent_id"],
                "amount": adj.difference,
                "currency": adj.stripe_currency,
                "status": result.get("payment_status", "succeeded"),
                "created_at": now,
            }
        )
    elif result["type"] == "charge" and result.get("checkout_session_id"):
        additional.append(
            {
                "type": "checkout_session",
                "checkout_session_id": result["checkout_session_id"],
                "amount": adj.difference,
                "currency": adj.stripe_currency,
                "status": "pending",
                "created_at": now,
            }
        )
    elif result["type"] == "refund" and result.get("refund_id"):
        refunds.append(
            {
                "id": result["refund_id"],
                "amount": -adj.difference,
                "currency": adj.stripe_currency,
                "status": result.get("refund_status") or "succeeded",
                "reason": "requested_by_customer",
                "created_at": now,
            }
        )

    payment.update(
        {
            "updated_at": now,
            "additional_payments": additional,
            "refunds": refunds,
            "price_adjustment": {
                "net_paid_amount": adj.major(adj.net_paid),
                "new_amount": adj.new_amount,
                "difference": adj.major(adj.difference),
                "type": result["type"],
                "timestamp": now,
            },
        }
    )
    data["payment"] = payment
    adj.submission.data = data
    adj.submission.total_price = adj.new_amount


def adjust_payment(
    db: Session, submission_id: str, new_amount: Any, old_amount: Optional[float] = None
) -> Dict[str, Any]:
    """Charge or refund the gap between ``new_amount`` and what the client has paid.

    Raises ``ValueError`` for an invalid amount, :class:`SubmissionNotFoundError`
    and :class:`PaymentAdjustmentError` when Stripe state forbids the adjustment.
    """
    amount = validate_new_amount(new_amount)

    submission = get_submission(db, submission_id, for_update=True)
    if submission is None:
        raise SubmissionNotFoundError("Submission not found")

    currency = ((submission.data or {}).get("currency") or "EUR").upper()
    client = get_client(db, submission.client_id)
    client_customer_id = client.stripe_customer_id if client is not None else None

    payment_intent = _load_payment_intent(submission)
    payment_intent_id = stripe_get(payment_intent, "id")
    adj = _Adjustment(submission, payment_intent, currency, refunded_total(payment_intent_id), amount)

    logger.info(
        "Adjusting submission %s: paid %s, refunded %s, net %s, new %s (old %s), difference %s %s",
        submission_id,
        adj.intent_amount,
        adj.refunded,
        adj.net_paid,
        adj.new_minor,
        old_amount,
        adj.difference,
        currency,
    )

    if adj.difference < 0 and stripe_get(payment_intent, "status") != "succeeded":
        raise PaymentAdjustmentError(
            f"Cannot refund payment intent with status: {stripe_get(payment_intent, 'status')}. "
            "Payment must be succeeded."
        )

    if adj.difference == 0:
        refresh_intent_metadata(payment_intent, submission)
        db.commit()
        return {
            "success": True,
            "message": "No price change needed, metadata updated",
            "newAmount": amount,
            "netPaidAmount": adj.major(adj.net_paid),
        }

    result = _charge(adj, client_customer_id) if adj.difference > 0 else _refund(adj)

    _record(adj, result)
    db.commit()
    refresh_intent_metadata(payment_intent, submission)
    logger.info("Submission %s adjusted: %s", submission_id, result["message"])
    return result
