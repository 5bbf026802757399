# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

from __future__ import annotations

from typing import Any, Dict, List, Optional


def stripe_to_dict(obj: Any) -> Dict[str, Any]:
    """Convert Stripe objects to plain dicts for safer access."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)

    to_dict_recursive = getattr(obj, "to_dict_recursive", None)
    if callable(to_dict_recursive):
        result = to_dict_recursive()
        if isinstance(result, dict):
            return result

    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        result = to_dict()
        if isinstance(result, dict):
            return result

    try:
        return dict(obj)
    except (TypeError, ValueError):
        return {}


def stripe_get(obj: Any, key: str) -> Any:
    """Safely fetch a key from Stripe objects, dicts, or plain attrs."""
    if obj is None or isinstance(obj, str):
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    getter = getattr(obj, "get", None)
    if callable(getter):
        try:
            return getter(key)
        except (KeyError, AttributeError, TypeError):
            pass
    if hasattr(obj, key):
        return getattr(obj, key)
    return None


def coerce_stripe_id(value: Any) -> Optional[str]:
    """Return the identifier of an expanded or collapsed Stripe reference."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    potential_id = stripe_get(value, "id")
    if isinstance(potential_id, str):
        return potential_id
    return None


def to_int(value: Any) -> Optional[int]:
    """Best-effort conversion to int with graceful failure."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def list_data(collection: Any) -> List[Any]:
    """Entries of a Stripe list object (or a plain ``{"data": [...]}`` dict)."""
    data = stripe_get(collection, "data")
    if not data:
        return []
    return list(data)
