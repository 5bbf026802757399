from __future__ import annotations

import json
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional

from database.models import Option, Service
from utils.currency import convert_from_eur, from_minor_units, to_minor_units

DELIVERY_POSTAL_PRICE_EUR = 29.95
ADDITIONAL_SIGNATORY_PRICE_EUR = 45.0


def _price_in_currency(eur_price: float | None, usd: float | None, gbp: float | None, currency: str) -> float:
    if currency == "USD" and usd is not None:
        return usd
    if currency == "GBP" and gbp is not None:
        return gbp
    return convert_from_eur(eur_price or 0.0, currency)


def service_price(service: Optional[Service], currency: str) -> float:
    """Unit price of a service in ``currency``; currency columns win over conversion."""
    if service is None:
        return 0.0
    return _price_in_currency(service.base_price, service.price_usd, service.price_gbp, currency)


def option_price(option: Optional[Option], currency: str) -> float:
    if option is None:
        return 0.0
    return _price_in_currency(option.additional_price, option.price_usd, option.price_gbp, currency)


def parse_selected_options(value: Any) -> List[str]:
    """Options arrive as a list, a JSON-encoded list, or a single id."""
    if not value:
        return []
    if isinstance(value, list):
        return [str(item) for item in value if item]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return [value]
        if isinstance(parsed, list):
            return [str(item) for item in parsed if item]
        return [value]
    return [str(value)]


def _documents_for(service_documents: Mapping[str, Any], service_id: str) -> List[Dict[str, Any]]:
    docs = service_documents.get(service_id) or []
    return [doc if isinstance(doc, dict) else {} for doc in docs] if isinstance(docs, list) else []


def _line_item(name: str, unit_amount: int, quantity: int, currency: str, description: str | None = None) -> Dict[str, Any]:
    product_data: Dict[str, Any] = {"name": name}
    if description:
        product_data["description"] = description
    return {
        "price_data": {
            "currency": currency.lower(),
            "product_data": product_data,
            "unit_amount": unit_amount,
        },
        "quantity": quantity,
    }


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def build_line_items(
    form: Mapping[str, Any],
    services: Mapping[str, Service],
    options: Mapping[str, Option],
    currency: str,
) -> List[Dict[str, Any]]:
    """Stripe Checkout line items for the services, options and extras chosen in the intake form."""
    line_items: List[Dict[str, Any]] = []
    option_counts: Counter[str] = Counter()
    service_documents = form.get("serviceDocuments") or {}

    for service_id in form.get("selectedServices") or []:
        service = services.get(service_id)
        if service is None:
            continue
        docs = _documents_for(service_documents, service_id)
        if not docs:
            continue
        count = len(docs)
        line_items.append(
            _line_item(
                f"{service.name} ({count} {_plural(count, 'document', 'documents')})",
                to_minor_units(service_price(service, currency), currency),
                count,
                currency,
            )
        )
        for doc in docs:
            option_counts.update(parse_selected_options(doc.get("selectedOptions")))

    for option_id, count in option_counts.items():
        option = options.get(option_id)
        if option is None:
            continue
        price = option_price(option, currency)
        if price <= 0:
            continue
        line_items.append(
            _line_item(
                f"{option.name} ({count} {_plural(count, 'document', 'documents')})",
                to_minor_units(price, currency),
                count,
                currency,
            )
        )

    if (form.get("deliveryMethod") or "email") == "postal":
        line_items.append(
            _line_item(
                "Physical Delivery (DHL Express)",
                to_minor_units(convert_from_eur(DELIVERY_POSTAL_PRICE_EUR, currency), currency),
                1,
                currency,
                description=f"Postal delivery via DHL Express ({DELIVERY_POSTAL_PRICE_EUR} EUR)",
            )
        )

    extra_signatories = _additional_signatories(form)
    if extra_signatories > 0:
        line_items.append(
            _line_item(
                f"Additional Signatories ({extra_signatories} "
                f"{_plural(extra_signatories, 'signatory', 'signatories')})",
                to_minor_units(convert_from_eur(ADDITIONAL_SIGNATORY_PRICE_EUR, currency), currency),
                extra_signatories,
                currency,
                description=f"Additional signatories: {extra_signatories} × {ADDITIONAL_SIGNATORY_PRICE_EUR:g}€",
            )
        )

    return line_items


def _additional_signatories(form: Mapping[str, Any]) -> int:
    try:
        return max(int(form.get("additionalSignatoriesCount") or 0), 0)
    except (TypeError, ValueError):
        return 0


def calculate_total(
    form: Mapping[str, Any],
    services: Mapping[str, Service],
    options: Mapping[str, Option],
    currency: str,
) -> float:
    """Order total in major units; agrees with :func:`build_line_items`."""
    total_minor = sum(
        item["price_data"]["unit_amount"] * item["quantity"]
        for item in build_line_items(form, services, options, currency)
    )
    return from_minor_units(total_minor, currency)


def catalog_entry(entry: Service | Option, currency: str) -> Dict[str, Any]:
    if isinstance(entry, Service):
        return {
            "service_id": entry.service_id,
            "name": entry.name,
            "price": service_price(entry, currency),
            "currency": currency,
        }
    return {
        "option_id": entry.option_id,
        "name": entry.name,
        "price": option_price(entry, currency),
        "currency": currency,
    }
