from database.models import Service


def test_health_reports_configuration(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["stripe_configured"] is True
    assert body["supabase_jwt_secret_set"] is True


def test_catalog_in_requested_currency(client, db, catalog):
    db.add(Service(service_id="retired", name="Retired service", base_price=10.0, is_active=False))
    db.commit()

    response = client.get("/api/catalog?currency=usd")

    assert response.status_code == 200
    body = response.json()
    assert body["currency"] == "USD"
    prices = {entry["service_id"]: entry["price"] for entry in body["services"]}
    assert prices == {"apostille": 120.0, "translation": 55.0}
    options = {entry["option_id"]: entry["price"] for entry in body["options"]}
    assert options["express"] == 22.0


def test_catalog_rejects_unknown_currency(client, catalog):
    response = client.get("/api/catalog?currency=btc")

    assert response.status_code == 400
    assert response.json()["error"].startswith("Unsupported currency 'BTC'")
