import re
from typing import Any

_space_re = re.compile(r"\s+")


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = _space_re.sub(" ", str(value)).strip()
    return text or None


def normalize_email(value: Any) -> str | None:
    if not value:
        return None
    email = str(value).strip().lower()
    return email or None


def full_name(first_name: Any, last_name: Any, default: str = "") -> str:
    name = f"{first_name or ''} {last_name or ''}".strip()
    return name or default
