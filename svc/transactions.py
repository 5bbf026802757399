from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import stripe

from database.models import Submission
from utils.currency import from_minor_units
from utils.logger import get_logger
from utils.stripe_objects import coerce_stripe_id, list_data, stripe_get, to_int

logger = get_logger(__name__)


def _timestamp(value: Optional[str]) -> float:
    if not value:
        return time.time()
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return time.time()


def _entry(
    entry_id: str,
    kind: str,
    amount_minor: Any,
    currency: Optional[str],
    status: str,
    created: float,
    *,
    receipt_url: Optional[str] = None,
    invoice_url: Optional[str] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    code = (currency or "eur").upper()
    return {
        "id": entry_id,
        "type": kind,
        "amount": from_minor_units(to_int(amount_minor) or 0, code),
        "currency": code,
        "status": status,
        "created": created,
        "receiptUrl": receipt_url,
        "invoiceUrl": invoice_url,
        "description": description,
    }


def _from_stored_payment(payment: Dict[str, Any]) -> List[Dict[str, Any]]:
    currency = payment.get("currency")
    entries = [
        _entry(
            payment["payment_intent_id"],
            "payment",
            payment.get("amount_paid"),
            currency,
            payment.get("payment_status") or "succeeded",
            _timestamp(payment.get("paid_at")),
            receipt_url=payment.get("invoice_url"),
            invoice_url=payment.get("invoice_url"),
        )
    ]
    for extra in payment.get("additional_payments") or []:
        entries.append(
            _entry(
                extra.get("payment_intent_id") or extra.get("checkout_session_id") or "",
                "payment",
                extra.get("amount"),
                extra.get("currency") or currency,
                extra.get("status") or "succeeded",
                _timestamp(extra.get("created_at")),
                invoice_url=extra.get("invoice_url"),
            )
        )
    for refund in payment.get("refunds") or []:
        entries.append(
            _entry(
                refund.get("id") or "",
                "refund",
                refund.get("amount"),
                currency,
                refund.get("status") or "succeeded",
                _timestamp(refund.get("created_at")),
            )
        )
    return entries


def list_transactions(submission: Submission) -> Dict[str, Any]:
    """Payments and refunds for a submission, newest first, plus the main invoice URL.

    Stripe is the primary source (checkout session, then the intent's charges);
    the ``data.payment`` record stands in when Stripe yields nothing.
    """
    payment = (submission.data or {}).get("payment") or {}
    session_id = payment.get("stripe_session_id")
    payment_intent_id = payment.get("payment_intent_id")
    invoice_url: Optional[str] = payment.get("invoice_url")
    transactions: List[Dict[str, Any]] = []

    if session_id:
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["payment_intent", "invoice"])
        except stripe.StripeError as exc:
            logger.warning("Session fetch failed for submission %s: %s", submission.id, exc)
        else:
            invoice = stripe_get(session, "invoice")
            invoice_url = stripe_get(invoice, "hosted_invoice_url") or stripe_get(invoice, "invoice_pdf") or invoice_url
            payment_intent_id = coerce_stripe_id(stripe_get(session, "payment_intent")) or payment_intent_id
            if payment_intent_id and stripe_get(session, "payment_status") == "paid" and stripe_get(session, "amount_total"):
                transactions.append(
                    _entry(
                        payment_intent_id,
                        "payment",
                        stripe_get(session, "amount_total"),
                        stripe_get(session, "currency"),
                        "paid",
                        stripe_get(session, "created") or time.time(),
                        receipt_url=invoice_url,
                        invoice_url=invoice_url,
                        description="Checkout payment",
                    )
                )

    if payment_intent_id:
        try:
            charges = list_data(stripe.Charge.list(payment_intent=payment_intent_id, limit=10))
        except stripe.StripeError as exc:
            logger.warning("Charges fetch failed for submission %s: %s", submission.id, exc)
            charges = []
        from_session = bool(transactions)
        for charge in charges:
            receipt_url = stripe_get(charge, "receipt_url")
            if not invoice_url and receipt_url:
                invoice_url = receipt_url
            if not from_session:
                transactions.append(
                    _entry(
                        stripe_get(charge, "id"),
                        "payment",
                        stripe_get(charge, "amount"),
                        stripe_get(charge, "currency"),
                        stripe_get(charge, "status") or "succeeded",
                        stripe_get(charge, "created") or time.time(),
                        receipt_url=receipt_url,
                        invoice_url=receipt_url,
                        description=stripe_get(charge, "description"),
                    )
                )
            elif receipt_url and not transactions[0]["receiptUrl"]:
                transactions[0]["receiptUrl"] = receipt_url
                transactions[0]["invoiceUrl"] = receipt_url

            if stripe_get(charge, "amount_refunded"):
                transactions.append(
                    _entry(
                        f"refund_{stripe_get(charge, 'id')}",
                        "refund",
                        stripe_get(charge, "amount_refunded"),
                        stripe_get(charge, "currency"),
                        "succeeded",
                        stripe_get(charge, "created") or time.time(),
                        description="Refund",
                    )
                )

    if not transactions and payment.get("payment_intent_id") and payment.get("amount_paid"):
        transactions = _from_stored_payment(payment)

    transactions.sort(key=lambda item: item["created"], reverse=True)
    return {"transactions": transactions, "invoiceUrl": invoice_url}
