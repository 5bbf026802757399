from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

# The models import registers the tables with SQLAlchemy's metadata.
from database import models  # noqa: F401
from database.models import Option, Service
from database.session import Base, db_session, engine


logger = logging.getLogger(__name__)


def init_database(*, drop_existing: bool = False) -> None:
    """Create the database schema on the configured engine."""
    try:
        if drop_existing:
            logger.warning("Dropping existing tables before re-creating schema.")
            Base.metadata.drop_all(bind=engine)
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as exc:
        logger.exception("Failed to initialise database schema: %s", exc)
        raise
    else:
        logger.info("Database schema initialised successfully.")


def seed_catalog(path: Path) -> int:
    """Upsert services and options from a JSON file of ``{"services": [...], "options": [...]}``."""
    payload = json.loads(path.read_text(encoding="utf-8"))
    written = 0
    with db_session() as db:
        for entry in payload.get("services", []):
            service = db.execute(
                select(Service).where(Service.service_id == entry["service_id"])
            ).scalar_one_or_none()
            if service is None:
                service = Service(service_id=entry["service_id"], name=entry["name"])
                db.add(service)
            for field in ("name", "base_price", "price_usd", "price_gbp", "is_active"):
                if field in entry:
                    setattr(service, field, entry[field])
            written += 1
        for entry in payload.get("options", []):
            option = db.execute(
                select(Option).where(Option.option_id == entry["option_id"])
            ).scalar_one_or_none()
            if option is None:
                option = Option(option_id=entry["option_id"], name=entry["name"])
                db.add(option)
            for field in ("name", "additional_price", "price_usd", "price_gbp", "is_active"):
                if field in entry:
                    setattr(option, field, entry[field])
            written += 1
    logger.info("Seeded %s catalog entries from %s", written, path)
    return written


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Initialise the database schema for the notary platform API."
    )
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop existing tables before creating the schema.",
    )
    parser.add_argument(
        "--seed-catalog",
        type=Path,
        default=None,
        help="JSON file with services and options to upsert after creating the schema.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)
    init_database(drop_existing=args.drop_existing)
    if args.seed_catalog:
        seed_catalog(args.seed_catalog)


if __name__ == "__main__":
    main()
