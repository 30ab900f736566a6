# bookstore/cart/routes.py
from ..errors import InvalidInput, NotFound
from ..extensions import db
from ..model import Book
from ..services import cart_service, coupon_service
from ..services.context import service_context
from ..services.offer_service import compute_offer_breakdown
from ..utils.api import json_body, ok
from ..utils.decorators import current_user_id, login_required
from . import bp


def _cart_payload(ctx, user_id):
    return cart_service.compute_cart(ctx, user_id).as_dict()


@bp.get("")
@login_required
def view_cart():
    ctx = service_context()
    return ok("cart", _cart_payload(ctx, current_user_id()))


@bp.post("/items")
@login_required
def add_item():
    data = json_body()
    book_id = data.get("book_id")
    if not isinstance(book_id, int):
        raise InvalidInput("book_id must be an integer")
    ctx = service_context()
    cart_service.add_to_cart(ctx, current_user_id(), book_id, data.get("quantity", 1))
    return ok("added to cart", _cart_payload(ctx, current_user_id()), 201)


@bp.put("/items/<int:book_id>")
@bp.patch("/items/<int:book_id>")
@login_required
def update_item(book_id: int):
    data = json_body()
    if "quantity" not in data:
        raise InvalidInput("quantity is required")
    ctx = service_context()
    cart_service.update_cart_quantity(ctx, current_user_id(), book_id, data.get("quantity"))
    return ok("cart updated", _cart_payload(ctx, current_user_id()))


@bp.delete("/items/<int:book_id>")
@login_required
def remove_item(book_id: int):
    ctx = service_context()
    removed = cart_service.remove_from_cart(ctx, current_user_id(), book_id)
    return ok("removed from cart" if removed else "not in cart", _cart_payload(ctx, current_user_id()))


@bp.post("/coupon")
@login_required
def apply_coupon():
    code = (json_body().get("code") or "").strip()
    if not code:
        raise InvalidInput("code is required")
    ctx = service_context()
    coupon_service.apply_coupon(ctx, current_user_id(), code)
    return ok("coupon applied", _cart_payload(ctx, current_user_id()))


@bp.delete("/coupon")
@login_required
def remove_coupon():
    ctx = service_context()
    coupon_service.remove_coupon(ctx, current_user_id())
    return ok("coupon removed", _cart_payload(ctx, current_user_id()))


@bp.get("/offers/<int:book_id>")
@login_required
def book_offers(book_id: int):
    book = db.session.get(Book, book_id)
    if book is None:
        raise NotFound("book not found", book_id=book_id)
    breakdown = compute_offer_breakdown(service_context(), book.id, book.category_id)
    return ok("offers", {"book_id": book.id, **breakdown.as_dict()})
