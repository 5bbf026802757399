from unittest.mock import patch

from database.models import Client, Submission


def _draft(client, **overrides):
    payload = {
        "sessionId": "form-session-9",
        "currentStep": 1,
        "completedSteps": [],
        "totalAmount": 100.0,
        "formData": {
            "selectedServices": ["apostille"],
            "serviceDocuments": {"apostille": [{"name": "diploma.pdf"}]},
            "currency": "usd",
            "email": "Visitor@Example.com",
        },
    }
    payload.update(overrides)
    return client.post("/api/save-submission", json=payload)


def test_save_submission_requires_session_id(client):
    response = client.post("/api/save-submission", json={"formData": {}})

    assert response.status_code == 400
    assert response.json() == {"error": "sessionId required"}


def test_draft_is_created_then_updated_in_place(client, db):
    first = _draft(client)
    second = _draft(client, currentStep=3, completedSteps=[1, 2])

    assert first.status_code == 200
    assert first.json()["success"] is True
    submission_id = first.json()["submission_id"]
    assert second.json()["submission_id"] == submission_id
    assert db.query(Submission).count() == 1

    submission = db.get(Submission, submission_id)
    assert submission.status == "pending_payment"
    assert submission.funnel_status == "delivery_method_selected"
    assert submission.email == "visitor@example.com"
    assert submission.data["currency"] == "USD"
    assert submission.data["completed_steps"] == [1, 2]
    assert submission.data["selectedServices"] == ["apostille"]


def test_draft_funnel_never_regresses(client, db):
    submission_id = _draft(client, currentStep=4).json()["submission_id"]
    _draft(client, currentStep=1)

    assert db.get(Submission, submission_id).funnel_status == "personal_info_completed"


def test_draft_keeps_payment_fields_already_on_the_submission(client, db):
    submission_id = _draft(client).json()["submission_id"]
    submission = db.get(Submission, submission_id)
    submission.data = {**submission.data, "notary_cost": 35}
    db.commit()

    _draft(client, currentStep=2)

    db.refresh(submission)
    assert submission.data["notary_cost"] == 35


def test_create_client_and_submission_relinks_orphans(client, db):
    orphan = Submission(email="ada@example.com", status="pending", data={})
    db.add(orphan)
    db.commit()

    with patch("utils.supabase_admin.find_or_create_user", return_value=("user-ada", True)) as provision:
        response = client.post(
            "/api/create-client-and-submission",
            json={
                "email": "ADA@example.com",
                "firstName": "Ada",
                "lastName": "Lovelace",
                "sessionId": "form-session-2",
                "selectedServices": ["apostille"],
            },
        )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["user_id"] == "user-ada"
    assert body["user_created"] is True
    assert body["relinked_submissions"] == 1
    provision.assert_called_once()

    db.refresh(orphan)
    assert orphan.client_id == body["client_id"]
    created = db.get(Submission, body["submission_id"])
    assert created.client_id == body["client_id"]
    assert created.status == "pending_payment"
    assert created.phone == ""
    assert db.get(Client, body["client_id"]).user_id == "user-ada"


def test_create_client_and_submission_validates_identity(client):
    response = client.post("/api/create-client-and-submission", json={"email": "ada@example.com"})

    assert response.status_code == 400
    assert response.json() == {"error": "Email, first name, and last name are required"}


def test_existing_client_is_not_provisioned_again(client, client_row):
    with patch("utils.supabase_admin.find_or_create_user") as provision:
        response = client.post(
            "/api/create-client-and-submission",
            json={"email": "client@example.com", "firstName": "Ada", "lastName": "King"},
        )

    assert response.status_code == 200
    assert response.json()["client_id"] == client_row.id
    assert response.json()["user_created"] is False
    provision.assert_not_called()


def test_step_sent_as_text_sets_the_funnel(client, db, client_row):
    response = client.post(
        "/api/create-client-and-submission",
        json={"email": "client@example.com", "firstName": "Ada", "lastName": "King", "currentStep": "3"},
    )

    assert response.status_code == 200
    submission = db.get(Submission, response.json()["submission_id"])
    assert submission.funnel_status == "delivery_method_selected"
    assert submission.data["current_step"] == 3


def test_unreadable_step_falls_back_to_personal_info(client, db, client_row):
    response = client.post(
        "/api/create-client-and-submission",
        json={"email": "client@example.com", "firstName": "Ada", "lastName": "King", "currentStep": "review"},
    )

    assert response.status_code == 200
    submission = db.get(Submission, response.json()["submission_id"])
    assert submission.funnel_status == "personal_info_completed"


def test_ensure_client_requires_authentication(client):
    response = client.post("/api/ensure-client")

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_ensure_client_creates_row_and_relinks(client, db, auth_headers):
    db.add(Submission(email="grace@example.com", status="pending_payment", data={}))
    db.commit()

    response = client.post(
        "/api/ensure-client",
        headers=auth_headers("user-grace", "grace@example.com", user_metadata={"first_name": "Grace"}),
    )

    assert response.status_code == 200
    created = response.json()["client"]
    assert created["email"] == "grace@example.com"
    assert created["first_name"] == "Grace"
    assert db.query(Submission).filter_by(client_id=created["id"]).count() == 1


def test_ensure_client_reads_cookie_session(client, client_row, access_token):
    response = client.post("/api/ensure-client", headers={"Cookie": f"sb-access-token={access_token('user-1')}"})

    assert response.status_code == 200
    assert response.json()["client"]["id"] == client_row.id


def test_profile_update_trims_known_fields(client, db, client_row, auth_headers):
    response = client.patch(
        "/api/profile",
        json={"phone": "  +44 20 7946 0000 ", "city": "London", "email": "ignored@example.com"},
        headers=auth_headers("user-1"),
    )

    assert response.status_code == 200
    profile = response.json()["client"]
    assert profile["phone"] == "+44 20 7946 0000"
    assert profile["city"] == "London"
    assert profile["email"] == "client@example.com"


def test_profile_update_without_valid_fields(client, client_row, auth_headers):
    response = client.patch("/api/profile", json={"email": "x@example.com"}, headers=auth_headers("user-1"))

    assert response.status_code == 400
    assert response.json() == {"error": "No valid fields to update"}


def test_profile_of_unknown_client(client, auth_headers):
    response = client.patch("/api/profile", json={"city": "Paris"}, headers=auth_headers("nobody"))

    assert response.status_code == 404


def test_list_own_submissions(client, db, client_row, paid_submission, auth_headers):
    db.add(Submission(email="someone@example.com", status="pending", data={}))
    db.commit()

    response = client.get("/api/submissions", headers=auth_headers("user-1"))

    assert response.status_code == 200
    assert [entry["id"] for entry in response.json()["submissions"]] == [paid_submission.id]


def test_only_unpaid_submissions_can_be_deleted(client, db, client_row, paid_submission, auth_headers):
    draft = Submission(client_id=client_row.id, email="client@example.com", status="pending_payment", data={})
    db.add(draft)
    db.commit()
    headers = auth_headers("user-1")

    paid = client.delete(f"/api/submissions/{paid_submission.id}", headers=headers)
    unpaid = client.delete(f"/api/submissions/{draft.id}", headers=headers)

    assert paid.status_code == 400
    assert paid.json() == {"error": "Only submissions with pending_payment status can be deleted"}
    assert unpaid.status_code == 200
    assert unpaid.json() == {"success": True}
    assert db.get(Submission, draft.id) is None


def test_cannot_delete_someone_elses_submission(client, db, client_row, auth_headers):
    other = Client(user_id="user-2", email="other@example.com")
    db.add(other)
    db.commit()
    foreign = Submission(client_id=other.id, email="other@example.com", status="pending_payment", data={})
    db.add(foreign)
    db.commit()

    response = client.delete(f"/api/submissions/{foreign.id}", headers=auth_headers("user-1"))

    assert response.status_code == 403
    assert db.get(Submission, foreign.id) is not None
