from unittest.mock import patch

import stripe

from database.models import Submission


def _event(event_type, obj):
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def test_missing_signature_is_rejected(client):
    response = client.post("/api/stripe-webhook", content=b"{}")

    assert response.status_code == 400
    assert response.json() == {"error": "Missing Stripe signature header."}


def test_invalid_signature_is_rejected(client):
    error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")
    with patch.object(stripe.Webhook, "construct_event", side_effect=error):
        response = client.post("/api/stripe-webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=bad"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid Stripe webhook signature."}


def test_completed_checkout_verifies_submission(client):
    event = _event("checkout.session.completed", {"id": "cs_test_paid", "metadata": {"submission_id": "sub-1"}})
    with patch.object(stripe.Webhook, "construct_event", return_value=event), patch(
        "main.verify_checkout_payment", return_value={"verified": True}
    ) as verify:
        response = client.post("/api/stripe-webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=ok"})

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert verify.call_args.args[1] == "cs_test_paid"


def test_completed_additional_charge_is_recorded(client, db, paid_submission):
    session = {
        "id": "cs_extra",
        "payment_intent": "pi_extra",
        "amount_total": 2500,
        "metadata": {"submission_id": paid_submission.id, "type": "additional_charge"},
    }
    with patch.object(
        stripe.Webhook, "construct_event", return_value=_event("checkout.session.completed", session)
    ), patch("main.verify_checkout_payment") as verify:
        response = client.post("/api/stripe-webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=ok"})

    assert response.status_code == 200
    verify.assert_not_called()
    db.refresh(paid_submission)
    entry = paid_submission.data["payment"]["additional_payments"][0]
    assert entry["checkout_session_id"] == "cs_extra"
    assert entry["status"] == "succeeded"


def test_failed_payment_emails_client(client, paid_submission, outbox):
    intent = {
        "id": "pi_failed",
        "metadata": {"submission_id": paid_submission.id},
        "last_payment_error": {"message": "Your card has insufficient funds."},
    }
    with patch.object(stripe.Webhook, "construct_event", return_value=_event("payment_intent.payment_failed", intent)):
        response = client.post("/api/stripe-webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=ok"})

    assert response.status_code == 200
    outbox.assert_called_once()
    assert outbox.call_args.args[0] == "payment_failed"
    assert outbox.call_args.kwargs["data"]["error_message"] == "Your card has insufficient funds."


def test_processing_errors_still_acknowledge_event(client, db):
    event = _event("checkout.session.completed", {"id": "cs_boom", "metadata": {}})
    with patch.object(stripe.Webhook, "construct_event", return_value=event), patch(
        "main.verify_checkout_payment", side_effect=stripe.APIConnectionError("down")
    ):
        response = client.post("/api/stripe-webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=ok"})

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert db.query(Submission).count() == 0


def test_unhandled_event_types_are_acknowledged(client):
    event = _event("customer.created", {"id": "cus_1"})
    with patch.object(stripe.Webhook, "construct_event", return_value=event):
        response = client.post("/api/stripe-webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=ok"})

    assert response.json() == {"received": True}
