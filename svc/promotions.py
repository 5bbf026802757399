from __future__ import annotations

from typing import Any, Dict, Optional

import stripe

from utils.currency import DEFAULT_CURRENCY, from_minor_units
from utils.logger import get_logger
from utils.stripe_objects import list_data, stripe_get

logger = get_logger(__name__)


class PromoCodeNotFound(Exception):
    """Raised when neither a promotion code nor a coupon matches."""


def _coupon_of(promotion_code: Any) -> Any:
    # Newer API versions nest the coupon under ``promotion``.
    coupon = stripe_get(promotion_code, "coupon")
    if coupon is None:
        coupon = stripe_get(stripe_get(promotion_code, "promotion"), "coupon")
    return coupon


def can_redeem(promotion_code: Any) -> bool:
    """Active code, valid coupon, and redemption limit not yet reached."""
    if not stripe_get(promotion_code, "active"):
        return False
    coupon = _coupon_of(promotion_code)
    if not stripe_get(coupon, "valid"):
        return False
    max_redemptions = stripe_get(promotion_code, "max_redemptions")
    times_redeemed = stripe_get(promotion_code, "times_redeemed") or 0
    return not max_redemptions or times_redeemed < max_redemptions


def _find_promotion_code(code: str) -> Any:
    codes = stripe.PromotionCode.list(code=code.upper().strip(), limit=1, active=True)
    entries = list_data(codes)
    return entries[0] if entries else None


def resolve_checkout_discount(promo_code_id: Optional[str], promo_code: Optional[str]) -> Optional[str]:
    """Promotion code id to attach to a checkout session, or ``None``.

    Lookup failures are not fatal: the session is then created with
    ``allow_promotion_codes`` so the customer can still enter a code.
    """
    if promo_code_id:
        try:
            promotion = stripe.PromotionCode.retrieve(promo_code_id)
            if can_redeem(promotion):
                return str(stripe_get(promotion, "id") or promo_code_id)
        except stripe.StripeError as exc:
            logger.info("Promotion code id %s not usable: %s", promo_code_id, exc)

    if promo_code:
        try:
            promotion = _find_promotion_code(promo_code)
        except stripe.StripeError as exc:
            logger.info("Promotion code %s lookup failed: %s", promo_code, exc)
            return None
        if promotion is not None and can_redeem(promotion):
            return str(stripe_get(promotion, "id"))

    return None


def _discount_amounts(coupon: Any, amount: Optional[float]) -> Dict[str, Any]:
    percent_off = stripe_get(coupon, "percent_off")
    amount_off = stripe_get(coupon, "amount_off")
    if percent_off:
        discount_amount = (amount * percent_off / 100) if amount else 0.0
        return {
            "discountType": "percentage",
            "discountAmount": round(discount_amount, 2),
            "percentOff": percent_off,
            "amountOff": None,
        }
    if amount_off:
        off = from_minor_units(amount_off, (stripe_get(coupon, "currency") or DEFAULT_CURRENCY).upper())
        return {
            "discountType": "fixed",
            "discountAmount": round(off, 2),
            "percentOff": None,
            "amountOff": off,
        }
    return {"discountType": None, "discountAmount": 0, "percentOff": None, "amountOff": None}


def validate_promo_code(promo_code: str, amount: Optional[float] = None) -> Dict[str, Any]:
    """Describe the discount ``promo_code`` would give on ``amount``.

    Raises :class:`PromoCodeNotFound` for unknown or expired codes and lets
    other ``stripe.StripeError`` propagate.
    """
    code = promo_code.upper().strip()
    promotion = _find_promotion_code(code)
    if promotion is not None and stripe_get(promotion, "active"):
        discount = {"id": stripe_get(promotion, "id"), "code": stripe_get(promotion, "code"), "type": "promotion_code"}
        discount.update(_discount_amounts(_coupon_of(promotion), amount))
        return {"valid": True, "discount": discount}

    try:
        coupon = stripe.Coupon.retrieve(code)
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", None) == "resource_missing" or getattr(exc, "http_status", None) == 404:
            raise PromoCodeNotFound("Promo code not found") from exc
        raise

    if not stripe_get(coupon, "valid"):
        raise PromoCodeNotFound("Invalid or expired promo code")

    discount = {"id": stripe_get(coupon, "id"), "code": code, "type": "coupon"}
    discount.update(_discount_amounts(coupon, amount))
    return {"valid": True, "discount": discount}
