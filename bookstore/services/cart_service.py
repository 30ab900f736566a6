# bookstore/services/cart_service.py
from dataclasses import dataclass, field

import structlog

from ..errors import InsufficientStock, InvalidInput, NotFound
from ..model import Book, CartItem, Coupon
from ..utils.db import atomic
from ..utils.money import D, HUNDRED, ZERO, Money, round_money
from .coupon_service import active_coupon_for, coupon_discount, coupon_problem
from .offer_service import compute_offer_breakdown

logger = structlog.get_logger(__name__)

DROP_MISSING = "book not found"
DROP_INACTIVE = "book is not available"


@dataclass(frozen=True)
class CartLine:
    """One priced cart line; exactly what placement writes to an order item."""
    book_id: int
    title: str
    quantity: int
    unit_price: Money
    category_id: int
    product_percent: float
    category_percent: float
    line_original: Money
    product_discount: Money
    category_discount: Money
    line_total: Money

    @property
    def discount(self) -> Money:
        return self.product_discount + self.category_discount

    def as_dict(self):
        return {
            "book_id": self.book_id,
            "title": self.title,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "product_percent": self.product_percent,
            "category_percent": self.category_percent,
            "line_original": self.line_original,
            "product_discount": self.product_discount,
            "category_discount": self.category_discount,
            "line_total": self.line_total,
        }


@dataclass(frozen=True)
class DroppedLine:
    book_id: int
    quantity: int
    reason: str


@dataclass
class CartComputation:
    lines: list = field(default_factory=list)
    dropped: list = field(default_factory=list)
    subtotal: Money = ZERO
    product_discount: Money = ZERO
    category_discount: Money = ZERO
    coupon: Coupon | None = None
    coupon_discount: Money = ZERO
    coupon_error: str | None = None
    final_total: Money = ZERO

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def offer_discounted_total(self) -> Money:
        return self.subtotal - self.product_discount - self.category_discount

    def as_dict(self):
        return {
            "items": [line.as_dict() for line in self.lines],
            "dropped": [
                {"book_id": d.book_id, "quantity": d.quantity, "reason": d.reason}
                for d in self.dropped
            ],
            "subtotal": self.subtotal,
            "product_discount": self.product_discount,
            "category_discount": self.category_discount,
            "coupon_code": self.coupon.code if self.coupon else None,
            "coupon_discount": self.coupon_discount,
            "coupon_error": self.coupon_error,
            "final_total": self.final_total,
        }


def price_line(book: Book, quantity: int, product_percent: float, category_percent: float) -> CartLine:
    price = D(book.price)
    pp = D(product_percent)
    cp = D(category_percent)
    original = price * quantity
    return CartLine(
        book_id=book.id,
        title=book.title,
        quantity=quantity,
        unit_price=round_money(price),
        category_id=book.category_id,
        product_percent=float(product_percent),
        category_percent=float(category_percent),
        line_original=round_money(original),
        product_discount=round_money(price * pp / HUNDRED * quantity),
        category_discount=round_money(price * cp / HUNDRED * quantity),
        line_total=round_money(price * (1 - (pp + cp) / HUNDRED) * quantity),
    )


def compute_cart(ctx, user_id) -> CartComputation:
    """
    Price the user's cart.

    Lines whose book is gone or inactive are reported in ``dropped`` and left
    out of every total, unless the missing-book policy is ``fail``. The staged
    coupon is evaluated against the undiscounted subtotal and capped so the
    final total never goes below zero; a coupon that no longer qualifies
    contributes nothing and its reason lands in ``coupon_error``.
    """
    session = ctx.session
    items = (
        session.query(CartItem)
        .filter(CartItem.user_id == user_id)
        .order_by(CartItem.id.asc())
        .all()
    )
    books = {}
    if items:
        ids = [it.book_id for it in items]
        books = {b.id: b for b in session.query(Book).filter(Book.id.in_(ids)).all()}

    result = CartComputation()
    at = ctx.now()
    for it in items:
        book = books.get(it.book_id)
        reason = None
        if book is None:
            reason = DROP_MISSING
        elif not book.active:
            reason = DROP_INACTIVE
        if reason:
            if ctx.policy.missing_book == "fail":
                raise NotFound(f"cart line {it.book_id}: {reason}", book_id=it.book_id)
            logger.info("Dropping cart line", user_id=user_id, book_id=it.book_id, reason=reason)
            result.dropped.append(DroppedLine(it.book_id, it.quantity, reason))
            continue

        offer = compute_offer_breakdown(ctx, book.id, book.category_id, at=at)
        line = price_line(book, it.quantity, offer.product_percent, offer.category_percent)
        result.lines.append(line)
        result.subtotal += line.line_original
        result.product_discount += line.product_discount
        result.category_discount += line.category_discount

    result.subtotal = round_money(result.subtotal)
    result.product_discount = round_money(result.product_discount)
    result.category_discount = round_money(result.category_discount)

    coupon = active_coupon_for(ctx, user_id)
    if coupon is not None:
        problem = coupon_problem(ctx, coupon, user_id, result.subtotal)
        if problem:
            result.coupon_error = problem
        else:
            result.coupon = coupon
            result.coupon_discount = coupon_discount(
                coupon, result.subtotal, cap=max(ZERO, result.offer_discounted_total)
            )

    result.final_total = round_money(max(
        ZERO,
        result.subtotal - result.product_discount - result.category_discount - result.coupon_discount,
    ))
    return result


def add_to_cart(ctx, user_id, book_id, quantity=1) -> CartItem:
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise InvalidInput("quantity must be an integer", quantity=quantity)
    if quantity <= 0:
        raise InvalidInput("quantity must be > 0", quantity=quantity)

    with atomic(ctx.session) as session:
        book = session.get(Book, book_id)
        if book is None or not book.active:
            raise NotFound("book not found", book_id=book_id)
        item = (
            session.query(CartItem)
            .filter(CartItem.user_id == user_id, CartItem.book_id == book_id)
            .first()
        )
        if item:
            item.quantity = item.quantity + quantity
        else:
            item = CartItem(user_id=user_id, book_id=book_id, quantity=quantity)
            session.add(item)
        session.flush()
    logger.info("Cart line added", user_id=user_id, book_id=book_id, quantity=item.quantity)
    return item


def update_cart_quantity(ctx, user_id, book_id, quantity) -> CartItem:
    """Set a cart line to ``quantity`` copies; removing a line is ``remove_from_cart``."""
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise InvalidInput("quantity must be an integer", quantity=quantity)
    if quantity <= 0:
        raise InvalidInput("quantity must be >= 1", quantity=quantity)

    with atomic(ctx.session) as session:
        item = (
            session.query(CartItem)
            .filter(CartItem.user_id == user_id, CartItem.book_id == book_id)
            .first()
        )
        if item is None:
            raise NotFound("book is not in the cart", book_id=book_id)
        book = session.get(Book, book_id)
        if book is None or not book.active:
            raise NotFound("book not found", book_id=book_id)
        if quantity > book.stock:
            raise InsufficientStock(
                f"not enough stock for '{book.title}'",
                book_id=book_id,
                requested=quantity,
                available=book.stock,
            )
        item.quantity = quantity
    logger.info("Cart line updated", user_id=user_id, book_id=book_id, quantity=quantity)
    return item


def remove_from_cart(ctx, user_id, book_id) -> bool:
    with atomic(ctx.session) as session:
        deleted = (
            session.query(CartItem)
            .filter(CartItem.user_id == user_id, CartItem.book_id == book_id)
            .delete(synchronize_session=False)
        )
    return deleted > 0


def clear_cart(session, user_id):
    session.query(CartItem).filter(CartItem.user_id == user_id).delete(synchronize_session=False)
