# bookstore/services/offer_service.py
from dataclasses import dataclass

import structlog

from ..model import CategoryOffer, ProductOffer
from ..utils.money import D, HUNDRED, Money, clamp_percent, round_money

logger = structlog.get_logger(__name__)

APPLIED_NONE = "none"
APPLIED_PRODUCT = "product"
APPLIED_CATEGORY = "category"
APPLIED_BOTH = "product+category"


@dataclass(frozen=True)
class OfferBreakdown:
    product_percent: float = 0.0
    category_percent: float = 0.0
    applied_percent: float = 0.0
    applied_type: str = APPLIED_NONE

    def as_dict(self):
        return {
            "product_percent": self.product_percent,
            "category_percent": self.category_percent,
            "applied_percent": self.applied_percent,
            "applied_type": self.applied_type,
        }


def _active_percent(session, model, column, key, at) -> float:
    if key is None:
        return 0.0
    offer = (
        session.query(model)
        .filter(
            column == key,
            model.active.is_(True),
            model.start_date <= at,
            model.end_date >= at,
        )
        .order_by(model.discount_percent.desc(), model.id.asc())
        .first()
    )
    return float(offer.discount_percent) if offer else 0.0


def stack_offers(product_percent, category_percent, stacking="additive") -> OfferBreakdown:
    pp = float(clamp_percent(product_percent))
    cp = float(clamp_percent(category_percent))

    if stacking == "best":
        # only the larger axis counts; ties go to the product offer
        if pp >= cp:
            cp = 0.0
        else:
            pp = 0.0

    applied = min(pp + cp, 100.0)
    if pp + cp > 100.0:
        cp = applied - pp

    if pp > 0 and cp > 0:
        kind = APPLIED_BOTH
    elif pp > 0:
        kind = APPLIED_PRODUCT
    elif cp > 0:
        kind = APPLIED_CATEGORY
    else:
        kind = APPLIED_NONE
    return OfferBreakdown(pp, cp, applied, kind)


def compute_offer_breakdown(ctx, book_id, category_id, at=None) -> OfferBreakdown:
    """Best active product offer for the book and category offer for its category, stacked per policy."""
    at = at or ctx.now()
    pp = _active_percent(ctx.session, ProductOffer, ProductOffer.book_id, book_id, at)
    cp = _active_percent(ctx.session, CategoryOffer, CategoryOffer.category_id, category_id, at)
    breakdown = stack_offers(pp, cp, ctx.policy.offer_stacking)
    logger.debug(
        "Offer breakdown",
        book_id=book_id,
        category_id=category_id,
        applied_percent=breakdown.applied_percent,
        applied_type=breakdown.applied_type,
    )
    return breakdown


def apply_offer_to_price(original, percent) -> Money:
    return round_money(D(original) * (1 - clamp_percent(percent) / HUNDRED))
