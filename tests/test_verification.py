from unittest.mock import patch

import pytest
import stripe

from database.models import Signatory, Submission, SubmissionFile
from svc.verification import record_additional_charge, signatory_rows, verify_checkout_payment


def _paid_session(submission_id, **overrides):
    session = {
        "id": "cs_test_paid",
        "payment_status": "paid",
        "payment_intent": "pi_checkout",
        "customer": None,
        "amount_total": 12995,
        "currency": "eur",
        "invoice": {"hosted_invoice_url": "https://invoice.stripe.com/i/inv_1"},
        "metadata": {"submission_id": submission_id, "account_created": "true"},
    }
    session.update(overrides)
    return session


@pytest.fixture()
def pending_submission(db, client_row, catalog):
    submission = Submission(
        client_id=client_row.id,
        email="client@example.com",
        first_name="Ada",
        last_name="Lovelace",
        status="pending_payment",
        funnel_status="payment_pending",
        total_price=129.95,
        data={
            "selectedServices": ["apostille"],
            "serviceDocuments": {"apostille": [{"name": "diploma.pdf"}, {"name": "transcript.pdf"}]},
            "uploadedFiles": [
                {"name": "diploma.pdf", "public_url": "https://files/diploma.pdf", "type": "application/pdf", "size": 1024}
            ],
            "signatories": [
                {"firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"},
                {"firstName": "", "lastName": "Nameless"},
            ],
        },
    )
    db.add(submission)
    db.commit()
    return submission


def test_verify_payment_requires_session_id(client):
    response = client.post("/api/verify-payment", json={})

    assert response.status_code == 400
    assert response.json() == {"verified": False, "error": "Missing session ID"}


def test_unpaid_session_is_rejected(client, pending_submission):
    unpaid = _paid_session(pending_submission.id, payment_status="unpaid")
    with patch.object(stripe.checkout.Session, "retrieve", return_value=unpaid):
        response = client.post("/api/verify-payment", json={"sessionId": "cs_test_paid"})

    assert response.status_code == 400
    assert response.json() == {"verified": False, "error": "Payment not completed"}


def test_session_without_submission_metadata_is_rejected(client):
    session = _paid_session(None, metadata={})
    with patch.object(stripe.checkout.Session, "retrieve", return_value=session):
        response = client.post("/api/verify-payment", json={"sessionId": "cs_test_paid"})

    assert response.status_code == 400
    assert response.json()["error"] == "Missing submission ID in payment metadata"


def test_paid_session_marks_submission_and_materializes_rows(client, db, pending_submission, notary, outbox):
    with patch.object(
        stripe.checkout.Session, "retrieve", return_value=_paid_session(pending_submission.id)
    ) as retrieve:
        response = client.post("/api/verify-payment", json={"sessionId": "cs_test_paid"})

    assert response.status_code == 200
    body = response.json()
    assert body["verified"] is True
    assert body["submissionId"] == pending_submission.id
    assert body["accountCreated"] is True
    assert body["amount"] == 129.95
    assert body["currency"] == "EUR"
    assert body["invoiceUrl"] == "https://invoice.stripe.com/i/inv_1"
    assert body["transactionId"] == "cs_test_paid"
    assert body["isFirstPurchase"] is True
    assert body["servicesCount"] == 1
    assert body["selectedServices"][0]["service_id"] == "apostille"
    assert body["userData"]["firstName"] == "Ada"
    assert retrieve.call_args.kwargs["expand"] == ["payment_intent", "invoice", "setup_intent"]

    db.refresh(pending_submission)
    assert pending_submission.status == "pending"
    assert pending_submission.funnel_status == "payment_completed"
    payment = pending_submission.data["payment"]
    assert payment["stripe_session_id"] == "cs_test_paid"
    assert payment["payment_intent_id"] == "pi_checkout"
    assert payment["amount_paid"] == 12995

    assert db.query(SubmissionFile).filter_by(submission_id=pending_submission.id).count() == 1
    keys = sorted(row.document_key for row in db.query(Signatory).filter_by(submission_id=pending_submission.id))
    assert keys == ["apostille_0", "apostille_1"]

    email_types = [call.args[0] for call in outbox.call_args_list]
    assert email_types == ["payment_success", "new_submission_available"]


def test_second_verification_is_a_no_op(client, db, pending_submission, outbox):
    session = _paid_session(pending_submission.id)
    with patch.object(stripe.checkout.Session, "retrieve", return_value=session):
        first = client.post("/api/verify-payment", json={"sessionId": "cs_test_paid"})
        outbox.reset_mock()
        second = client.post("/api/verify-payment", json={"sessionId": "cs_test_paid"})

    assert first.status_code == 200
    assert second.status_code == 200
    body = second.json()
    assert body["message"] == "Payment already processed"
    assert body["selectedServices"] == []
    assert body["servicesCount"] == 0
    outbox.assert_not_called()
    assert db.query(SubmissionFile).filter_by(submission_id=pending_submission.id).count() == 1
    assert db.query(Signatory).filter_by(submission_id=pending_submission.id).count() == 2


def test_receipt_url_used_when_session_has_no_invoice(client, pending_submission):
    session = _paid_session(pending_submission.id, invoice=None)
    charges = {"data": [{"id": "ch_1", "receipt_url": "https://pay.stripe.com/receipts/ch_1"}]}
    with patch.object(stripe.checkout.Session, "retrieve", return_value=session), patch.object(
        stripe.Charge, "list", return_value=charges
    ) as charge_list:
        response = client.post("/api/verify-payment", json={"sessionId": "cs_test_paid"})

    assert response.json()["invoiceUrl"] == "https://pay.stripe.com/receipts/ch_1"
    assert charge_list.call_args.kwargs == {"payment_intent": "pi_checkout", "limit": 1}


def test_card_is_saved_as_customer_default(client, db, pending_submission):
    session = _paid_session(pending_submission.id, customer="cus_new")
    with patch.object(stripe.checkout.Session, "retrieve", return_value=session), patch.object(
        stripe.PaymentIntent, "retrieve", return_value={"id": "pi_checkout", "payment_method": "pm_card"}
    ), patch.object(stripe.PaymentMethod, "retrieve", return_value={"id": "pm_card", "customer": None}), patch.object(
        stripe.PaymentMethod, "attach"
    ) as attach, patch.object(stripe.Customer, "modify") as modify:
        response = client.post("/api/verify-payment", json={"sessionId": "cs_test_paid"})

    assert response.status_code == 200
    attach.assert_called_once_with("pm_card", customer="cus_new")
    modify.assert_called_once_with("cus_new", invoice_settings={"default_payment_method": "pm_card"})


def test_guest_customer_is_saved_with_the_status_change(db, client_row, pending_submission):
    client_row.stripe_customer_id = None
    db.commit()
    session = _paid_session(pending_submission.id, customer="cus_guest")
    commit = db.commit
    statuses_at_commit = []

    def recording_commit():
        statuses_at_commit.append(pending_submission.status)
        commit()

    with patch.object(stripe.checkout.Session, "retrieve", return_value=session), patch.object(
        stripe.PaymentIntent, "retrieve", return_value={"id": "pi_checkout", "payment_method": "pm_card"}
    ), patch.object(
        stripe.PaymentMethod, "retrieve", return_value={"id": "pm_card", "customer": "cus_guest"}
    ), patch.object(stripe.Customer, "modify"), patch.object(db, "commit", side_effect=recording_commit):
        verify_checkout_payment(db, "cs_test_paid")

    assert statuses_at_commit
    assert "pending_payment" not in statuses_at_commit
    db.refresh(client_row)
    assert client_row.stripe_customer_id == "cus_guest"


def test_signatory_rows_keyed_by_document():
    rows = signatory_rows(
        "sub-1",
        {
            "signatories": {
                "apostille_0": [{"firstName": "Ada", "lastName": "Lovelace"}],
                "apostille_1": [{"firstName": "Grace"}],
            }
        },
    )

    assert [(row["document_key"], row["first_name"]) for row in rows] == [("apostille_0", "Ada")]


def test_signatory_rows_without_documents_are_global():
    rows = signatory_rows("sub-1", {"signatories": [{"firstName": "Ada", "lastName": "Lovelace"}]})

    assert rows[0]["document_key"] == "global"
    assert signatory_rows("sub-1", {}) == []


def test_additional_charge_session_is_recorded_once(db, paid_submission):
    paid_submission.data = {
        **paid_submission.data,
        "payment": {
            **paid_submission.data["payment"],
            "additional_payments": [
                {"type": "checkout_session", "checkout_session_id": "cs_extra", "amount": 2500, "status": "pending"}
            ],
        },
    }
    db.commit()
    session = {
        "id": "cs_extra",
        "payment_intent": "pi_extra",
        "amount_total": 2500,
        "metadata": {"submission_id": paid_submission.id, "type": "additional_charge"},
    }

    assert record_additional_charge(db, session) is True
    assert record_additional_charge(db, session) is False

    db.refresh(paid_submission)
    entries = paid_submission.data["payment"]["additional_payments"]
    assert len(entries) == 1
    assert entries[0]["status"] == "succeeded"
    assert entries[0]["payment_intent_id"] == "pi_extra"
