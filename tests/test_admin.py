from unittest.mock import patch

from database.models import Message, Submission, SubmissionTask, SupportTicket


def test_back_office_requires_credentials(client):
    response = client.get("/api/admin/counts")

    assert response.status_code == 401


def test_clients_are_forbidden(client, client_row, auth_headers):
    response = client.get("/api/admin/counts", headers=auth_headers("user-1"))

    assert response.status_code == 403
    assert response.json() == {"error": "Back-office access required"}


def test_wrong_service_key_is_not_accepted(client):
    response = client.get("/api/admin/counts", headers={"apikey": "not-the-key"})

    assert response.status_code == 401


def test_active_notary_and_admin_role_are_allowed(client, notary, auth_headers):
    as_notary = client.get("/api/admin/counts", headers=auth_headers("notary-user", "notary@example.com"))
    as_admin = client.get(
        "/api/admin/counts", headers=auth_headers("admin-user", "admin@example.com", app_metadata={"role": "admin"})
    )

    assert as_notary.status_code == 200
    assert as_admin.status_code == 200


def test_service_key_as_bearer(client, db, service_headers):
    bearer = {"Authorization": f"Bearer {service_headers['apikey']}"}

    response = client.get("/api/admin/counts", headers=bearer)

    assert response.status_code == 200
    assert response.json() == {"tasks_pending": 0, "support_pending": 0, "submissions_pending": 0}


def test_sidebar_counts(client, db, paid_submission, service_headers):
    db.add_all(
        [
            SubmissionTask(order_item_ref="item-1", option_name="Apostille", status="pending"),
            SubmissionTask(order_item_ref="item-2", option_name="Apostille", status="completed"),
            SupportTicket(subject="Where is my document?", message="Hello", status="open"),
            SupportTicket(subject="Thanks", message="Done", status="resolved"),
        ]
    )
    db.commit()

    response = client.get("/api/admin/counts", headers=service_headers)

    assert response.json() == {"tasks_pending": 1, "support_pending": 1, "submissions_pending": 1}


def test_update_payment_requires_fields(client, service_headers):
    response = client.post("/api/update-payment", json={"submissionId": "sub-1"}, headers=service_headers)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Missing required fields: submissionId and newAmount"}


def test_update_payment_rejects_invalid_amount(client, paid_submission, service_headers):
    response = client.post(
        "/api/update-payment",
        json={"submissionId": paid_submission.id, "newAmount": "lots"},
        headers=service_headers,
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Invalid newAmount value: lots. Must be a valid number."}


def test_update_payment_returns_adjustment(client, paid_submission, service_headers):
    result = {"success": True, "type": "refund", "amount": 20.0, "refund_id": "re_1"}
    with patch("routes.admin.adjust_payment", return_value=result) as adjust:
        response = client.post(
            "/api/update-payment",
            json={"submissionId": paid_submission.id, "newAmount": 80, "oldAmount": 100},
            headers=service_headers,
        )

    assert response.status_code == 200
    assert response.json() == result
    assert adjust.call_args.args[1:] == (paid_submission.id, 80, 100.0)


def test_update_payment_is_back_office_only(client, client_row, paid_submission, auth_headers):
    response = client.post(
        "/api/update-payment",
        json={"submissionId": paid_submission.id, "newAmount": 80},
        headers=auth_headers("user-1"),
    )

    assert response.status_code == 403


def test_list_and_search_submissions(client, db, paid_submission, service_headers):
    db.add(Submission(email="bob@example.com", first_name="Bob", last_name="Builder", status="pending_payment", data={}))
    db.commit()

    everything = client.get("/api/admin/submissions", headers=service_headers).json()["submissions"]
    searched = client.get("/api/admin/submissions?search=lovelace", headers=service_headers).json()["submissions"]
    drafts = client.get("/api/admin/submissions?status=pending_payment", headers=service_headers).json()["submissions"]

    assert len(everything) == 2
    assert [entry["id"] for entry in searched] == [paid_submission.id]
    assert searched[0]["label"] == "Ada Lovelace"
    assert [entry["email"] for entry in drafts] == ["bob@example.com"]


def test_submission_detail_and_status_change(client, db, paid_submission, service_headers):
    detail = client.get(f"/api/admin/submissions/{paid_submission.id}", headers=service_headers)
    assert detail.status_code == 200
    assert detail.json()["client"]["email"] == "client@example.com"
    assert detail.json()["files"] == []

    bad = client.patch(
        f"/api/admin/submissions/{paid_submission.id}", json={"status": "shipped"}, headers=service_headers
    )
    done = client.patch(
        f"/api/admin/submissions/{paid_submission.id}", json={"status": "completed"}, headers=service_headers
    )

    assert bad.status_code == 400
    assert done.status_code == 200
    assert done.json()["funnel_status"] == "submission_completed"


def test_unknown_submission_detail(client, service_headers):
    response = client.get("/api/admin/submissions/missing", headers=service_headers)

    assert response.status_code == 404
    assert response.json() == {"error": "Submission not found"}


def test_message_is_stored_and_emailed(client, db, paid_submission, service_headers, outbox):
    response = client.post(
        f"/api/admin/submissions/{paid_submission.id}/messages",
        json={"content": "  Your apostille is ready.  "},
        headers=service_headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["content"] == "Your apostille is ready."
    assert body["sender_type"] == "admin"
    assert body["email_sent"] is True
    assert outbox.call_args.args[0] == "message_received"
    assert db.query(Message).filter_by(submission_id=paid_submission.id).count() == 1


def test_task_lifecycle(client, db, paid_submission, service_headers):
    created = client.post(
        "/api/admin/tasks",
        json={"option_name": "Courier copy", "submission_id": paid_submission.id, "notes": " call first "},
        headers=service_headers,
    )
    assert created.status_code == 200
    task = created.json()
    assert task["option_id"] == "MANUAL"
    assert task["order_item_ref"].startswith("manual-")
    assert task["notes"] == "call first"

    listed = client.get("/api/admin/tasks?status=pending", headers=service_headers).json()["tasks"]
    assert listed[0]["submission"]["id"] == paid_submission.id

    invalid = client.patch(f"/api/admin/tasks/{task['id']}", json={"status": "archived"}, headers=service_headers)
    updated = client.patch(f"/api/admin/tasks/{task['id']}", json={"status": "completed"}, headers=service_headers)
    missing = client.patch("/api/admin/tasks/nope", json={"status": "completed"}, headers=service_headers)

    assert invalid.status_code == 400
    assert updated.json()["status"] == "completed"
    assert missing.status_code == 404


def test_task_needs_a_name(client, service_headers):
    response = client.post("/api/admin/tasks", json={"option_name": "   "}, headers=service_headers)

    assert response.status_code == 400
    assert response.json() == {"error": "option_name is required"}


def test_ticket_triage(client, db, service_headers):
    ticket = SupportTicket(subject="Refund?", message="Can I get a refund?", email="client@example.com")
    db.add(ticket)
    db.commit()

    listed = client.get("/api/admin/support?status=open", headers=service_headers).json()["tickets"]
    updated = client.patch(
        f"/api/admin/support/{ticket.id}", json={"status": "resolved", "priority": "high"}, headers=service_headers
    )
    bad_priority = client.patch(f"/api/admin/support/{ticket.id}", json={"priority": "meh"}, headers=service_headers)

    assert [entry["id"] for entry in listed] == [ticket.id]
    assert updated.json()["status"] == "resolved"
    assert updated.json()["priority"] == "high"
    assert bad_priority.status_code == 400
