# bookstore/services/coupon_service.py
import structlog
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..errors import Conflict, InvalidInput, NotFound, ServiceError
from ..model import Coupon, CouponRedemption, CouponType, UserActiveCoupon
from ..utils.db import atomic
from ..utils.money import D, HUNDRED, ZERO, Money, round_money

logger = structlog.get_logger(__name__)


def find_coupon(session, code) -> Coupon | None:
    code = (code or "").strip()
    if not code:
        return None
    return session.query(Coupon).filter(func.lower(Coupon.code) == code.lower()).first()


def active_coupon_for(ctx, user_id) -> Coupon | None:
    row = ctx.session.query(UserActiveCoupon).filter(UserActiveCoupon.user_id == user_id).first()
    return row.coupon if row else None


def already_redeemed(session, user_id, coupon_id) -> bool:
    return session.query(CouponRedemption.id).filter(
        CouponRedemption.user_id == user_id,
        CouponRedemption.coupon_id == coupon_id,
    ).first() is not None


def check_coupon(ctx, coupon: Coupon, user_id, subtotal):
    if not coupon.active:
        raise InvalidInput("coupon is inactive", code=coupon.code)
    if coupon.expires_at and coupon.expires_at <= ctx.now():
        raise InvalidInput("coupon has expired", code=coupon.code)
    if coupon.used_count >= coupon.usage_limit:
        raise InvalidInput("coupon usage limit reached", code=coupon.code)
    minimum = D(coupon.min_order_value)
    if D(subtotal) < minimum:
        raise InvalidInput(
            f"order subtotal must be at least {round_money(minimum)}",
            code=coupon.code,
            min_order_value=str(round_money(minimum)),
        )
    if already_redeemed(ctx.session, user_id, coupon.id):
        raise Conflict("coupon already used", code=coupon.code)


def coupon_problem(ctx, coupon, user_id, subtotal) -> str | None:
    try:
        check_coupon(ctx, coupon, user_id, subtotal)
    except ServiceError as e:
        return e.message
    return None


def coupon_discount(coupon: Coupon, subtotal, cap=None) -> Money:
    """
    Percent: ``subtotal * value / 100`` limited by ``max_discount`` (unset or 0
    means no limit). Flat: ``value``. Never more than ``cap`` when given.
    """
    subtotal = D(subtotal)
    value = D(coupon.value)
    if coupon.ctype == CouponType.PERCENT:
        amount = subtotal * value / HUNDRED
        max_discount = D(coupon.max_discount)
        if max_discount > 0:
            amount = min(amount, max_discount)
    else:
        amount = value
    if cap is not None:
        amount = min(amount, D(cap))
    return round_money(max(ZERO, amount))


def apply_coupon(ctx, user_id, code) -> Coupon:
    from .cart_service import compute_cart

    with atomic(ctx.session) as session:
        coupon = find_coupon(session, code)
        if coupon is None:
            raise NotFound("coupon not found", code=code)

        existing = session.query(UserActiveCoupon).filter(UserActiveCoupon.user_id == user_id).first()
        if existing:
            raise Conflict("a coupon is already applied", code=existing.coupon.code)

        cart = compute_cart(ctx, user_id)
        check_coupon(ctx, coupon, user_id, cart.subtotal)

        try:
            with session.begin_nested():
                session.add(UserActiveCoupon(user_id=user_id, coupon_id=coupon.id, applied_at=ctx.now()))
        except IntegrityError:
            raise Conflict("a coupon is already applied", code=coupon.code)

    logger.info("Coupon applied", user_id=user_id, coupon_id=coupon.id)
    return coupon


def remove_coupon(ctx, user_id) -> bool:
    with atomic(ctx.session) as session:
        deleted = (
            session.query(UserActiveCoupon)
            .filter(UserActiveCoupon.user_id == user_id)
            .delete(synchronize_session=False)
        )
    if deleted:
        logger.info("Coupon removed", user_id=user_id)
    return deleted > 0


def redeem_coupon(ctx, user_id, coupon_id, order_id=None):
    """Consume one use of the coupon. Runs inside the placement transaction."""
    session = ctx.session
    result = session.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.used_count < Coupon.usage_limit)
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict("coupon usage limit reached", coupon_id=coupon_id)

    try:
        with session.begin_nested():
            session.add(CouponRedemption(
                user_id=user_id, coupon_id=coupon_id, order_id=order_id, redeemed_at=ctx.now()
            ))
    except IntegrityError:
        raise Conflict("coupon already used", coupon_id=coupon_id)

    session.query(UserActiveCoupon).filter(UserActiveCoupon.user_id == user_id).delete(
        synchronize_session=False
    )
    coupon = session.get(Coupon, coupon_id)
    if coupon is not None:
        session.expire(coupon, ["used_count"])
    logger.info("Coupon redeemed", user_id=user_id, coupon_id=coupon_id, order_id=order_id)


def release_coupon(ctx, order) -> bool:
    """Give a cancelled order's coupon use back, when the policy allows it."""
    if not ctx.policy.coupon_release_on_cancel or order.coupon_id is None:
        return False
    session = ctx.session
    session.execute(
        update(Coupon)
        .where(Coupon.id == order.coupon_id, Coupon.used_count > 0)
        .values(used_count=Coupon.used_count - 1)
        .execution_options(synchronize_session=False)
    )
    session.query(CouponRedemption).filter(
        CouponRedemption.user_id == order.user_id,
        CouponRedemption.coupon_id == order.coupon_id,
    ).delete(synchronize_session=False)
    coupon = session.get(Coupon, order.coupon_id)
    if coupon is not None:
        session.expire(coupon, ["used_count"])
    logger.info("Coupon released", order_id=order.id, coupon_id=order.coupon_id)
    return True
