import json

from database.initialize import seed_catalog
from database.models import Option, Service


def test_seed_catalog_upserts_entries(db, catalog, tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(
        json.dumps(
            {
                "services": [
                    {"service_id": "apostille", "name": "Apostille", "base_price": 89.0},
                    {"service_id": "certified_copy", "name": "Certified Copy", "base_price": 49.0},
                ],
                "options": [{"option_id": "express", "name": "Express", "additional_price": 25.0, "is_active": False}],
            }
        ),
        encoding="utf-8",
    )

    assert seed_catalog(path) == 3

    db.expire_all()
    assert db.query(Service).filter_by(service_id="apostille").one().base_price == 89.0
    assert db.query(Service).filter_by(service_id="certified_copy").one().name == "Certified Copy"
    assert db.query(Option).filter_by(option_id="express").one().is_active is False
    assert db.query(Service).count() == 3
