# bookstore/services/order_service.py
"""
Order placement and the order lifecycle.

Every public operation is one transaction. Steps that move stock or money are
guarded by a persisted flag or status that is compare-and-set in the same
transaction, so a retried or concurrent call can never restore stock or
refund twice; it gets ``Conflict`` instead.
"""
import uuid
from datetime import timedelta

import structlog
from sqlalchemy import or_, update

from ..errors import Conflict, InsufficientStock, InvalidInput, NotFound
from ..model import (
    Address,
    Book,
    DeliveryCharge,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    RequestStatus,
)
from ..utils.db import atomic, compare_and_set
from ..utils.money import D, ZERO, Money, allocate, round_money
from . import wallet_service
from .cart_service import clear_cart, compute_cart
from .coupon_service import active_coupon_for, check_coupon, redeem_coupon, release_coupon
from .lifecycle import (
    HAPPY_PATH,
    PRE_SHIPMENT,
    check_order_transition,
    move_item_cancellation,
    move_item_return,
    move_order,
)

logger = structlog.get_logger(__name__)


# ---- helpers ---------------------------------------------------------------

def _order_code(now) -> str:
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def _parse_payment_method(value) -> PaymentMethod:
    try:
        return PaymentMethod(str(value or "").strip().lower())
    except ValueError:
        raise InvalidInput(
            "payment_method must be one of: " + ", ".join(m.value for m in PaymentMethod),
            payment_method=value,
        )


def _parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    raw = str(value or "").strip().lower()
    for status in OrderStatus:
        if status.value.lower() == raw or status.name.lower() == raw:
            return status
    raise InvalidInput("unknown order status", status=value)


def _require_reason(reason, what="reason") -> str:
    reason = (reason or "").strip()
    if not reason:
        raise InvalidInput(f"{what} is required")
    return reason


def _load_order(session, order_id, user_id=None) -> Order:
    q = session.query(Order).filter(Order.id == order_id)
    if user_id is not None:
        q = q.filter(Order.user_id == user_id)
    order = q.with_for_update().first()
    if order is None:
        raise NotFound("order not found", order_id=order_id)
    return order


def _get_item(order: Order, item_id) -> OrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise NotFound("order item not found", order_id=order.id, item_id=item_id)


def _refund_reference(order, item=None) -> str:
    if item is None:
        return f"REFUND-ORDER-{order.id}"
    return f"REFUND-ORDER-{order.id}-ITEM-{item.id}"


def _delivery_charge(ctx, pincode, order_total) -> Money:
    row = (
        ctx.session.query(DeliveryCharge)
        .filter(DeliveryCharge.pincode == pincode, DeliveryCharge.is_active.is_(True))
        .first()
    )
    if row is None:
        return round_money(ctx.policy.default_delivery_charge)
    threshold = D(row.min_order_amount)
    if threshold > 0 and D(order_total) >= threshold:
        return ZERO
    return round_money(row.charge)


def _restore_stock(session, item: OrderItem) -> bool:
    """Put the item's copies back on the shelf, at most once."""
    if not compare_and_set(session, item, OrderItem.stock_restored, False, True):
        return False
    session.execute(
        update(Book)
        .where(Book.id == item.book_id)
        .values(stock=Book.stock + item.quantity)
        .execution_options(synchronize_session=False)
    )
    book = session.get(Book, item.book_id)
    if book is not None:
        session.expire(book, ["stock"])
    logger.info("Stock restored", order_item_id=item.id, book_id=item.book_id, quantity=item.quantity)
    return True


def _add_order_refund(ctx, order: Order, amount, status: RefundStatus):
    ctx.session.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(refund_amount=Order.refund_amount + amount, refund_status=status, refunded_at=ctx.now())
        .execution_options(synchronize_session=False)
    )
    ctx.session.expire(order, ["refund_amount", "refund_status", "refunded_at", "updated_at"])


def _credit_refund(ctx, order, amount, reference, description):
    amount = round_money(amount)
    if amount <= 0:
        return None
    return wallet_service.credit(
        ctx, order.user_id, amount, description=description, order_id=order.id, reference=reference
    )


def _refund_item(ctx, order: Order, item: OrderItem) -> Money:
    """Refund one cancelled or returned line if anything was paid for it."""
    session = ctx.session
    if not order.payment_captured:
        compare_and_set(session, item, OrderItem.refund_status, RefundStatus.NONE, RefundStatus.NOT_APPLICABLE)
        return ZERO

    amount = min(item.refundable_amount(), order.outstanding_refund())
    if not compare_and_set(
        session, item, OrderItem.refund_status, RefundStatus.NONE, RefundStatus.COMPLETED,
        refund_amount=amount, refunded_at=ctx.now(),
    ):
        return ZERO
    _credit_refund(ctx, order, amount, _refund_reference(order, item),
                   f"Refund for item #{item.id} of order {order.code}")
    _add_order_refund(ctx, order, amount, RefundStatus.PARTIAL)
    logger.info("Item refunded", order_id=order.id, order_item_id=item.id, amount=str(amount))
    return amount


def _refund_outstanding(ctx, order: Order, description) -> Money:
    """Refund whatever of the order's payment has not been returned yet."""
    if not order.payment_captured:
        compare_and_set(ctx.session, order, Order.refund_status, RefundStatus.NONE, RefundStatus.NOT_APPLICABLE)
        for item in order.items:
            compare_and_set(ctx.session, item, OrderItem.refund_status, RefundStatus.NONE, RefundStatus.NOT_APPLICABLE)
        return ZERO
    amount = order.outstanding_refund()
    if amount > 0:
        _credit_refund(ctx, order, amount, _refund_reference(order), description)
    _add_order_refund(ctx, order, amount, RefundStatus.COMPLETED)
    for item in order.items:
        compare_and_set(
            ctx.session, item, OrderItem.refund_status, RefundStatus.NONE, RefundStatus.COMPLETED,
            refund_amount=item.refundable_amount(), refunded_at=ctx.now(),
        )
    logger.info("Order refunded", order_id=order.id, amount=str(amount))
    return amount


def _refresh_request_flags(order: Order):
    order.has_item_cancellation_requests = any(
        i.cancellation_status == RequestStatus.PENDING for i in order.items
    )
    order.has_item_return_requests = any(
        i.return_status == RequestStatus.PENDING for i in order.items
    )


def _refresh_refund_status(ctx, order: Order):
    refundable = [i for i in order.items if i.refund_status != RefundStatus.NOT_APPLICABLE]
    if refundable and all(i.refund_status == RefundStatus.COMPLETED for i in refundable):
        compare_and_set(ctx.session, order, Order.refund_status, RefundStatus.PARTIAL, RefundStatus.COMPLETED)


def _check_cancellation_window(ctx, order: Order):
    window = ctx.policy.cancellation_window
    if window is not None and ctx.now() - order.created_at > window:
        raise Conflict("cancellation window has closed", order_id=order.id)


def _check_return_window(ctx, order: Order):
    window = ctx.policy.return_window
    if window is None or order.delivered_at is None:
        return
    if ctx.now() - order.delivered_at > window:
        raise Conflict("return window has closed", order_id=order.id, delivered_at=order.delivered_at.isoformat())


# ---- placement -------------------------------------------------------------

def place_order(ctx, user_id, address_id, payment_method) -> Order:
    """
    Turn the user's cart into an order.

    All or nothing: stock is decremented, the coupon consumed, the wallet
    debited (for wallet payments) and the cart cleared in the same
    transaction, or none of it happens.
    """
    method = _parse_payment_method(payment_method)
    session = ctx.session

    with atomic(session):
        cart = compute_cart(ctx, user_id)
        if cart.dropped:
            line = cart.dropped[0]
            raise NotFound(f"cart line {line.book_id}: {line.reason}", book_id=line.book_id, reason=line.reason)
        if cart.is_empty:
            raise InvalidInput("cart is empty")

        address = session.get(Address, address_id)
        if address is None or address.user_id != user_id:
            raise NotFound("address not found", address_id=address_id)

        ids = [line.book_id for line in cart.lines]
        books = {
            b.id: b
            for b in session.query(Book).filter(Book.id.in_(ids)).with_for_update().all()
        }
        for line in cart.lines:
            available = books[line.book_id].stock
            if available < line.quantity:
                raise InsufficientStock(
                    f"not enough stock for '{line.title}'",
                    book_id=line.book_id,
                    requested=line.quantity,
                    available=available,
                )

        if cart.coupon_error:
            check_coupon(ctx, active_coupon_for(ctx, user_id), user_id, cart.subtotal)

        delivery = _delivery_charge(ctx, address.pincode, cart.final_total)
        tax = round_money(cart.final_total * D(ctx.policy.tax_rate))
        total_payable = round_money(cart.final_total + tax + delivery)

        for line in cart.lines:
            result = session.execute(
                update(Book)
                .where(Book.id == line.book_id, Book.stock >= line.quantity)
                .values(stock=Book.stock - line.quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.expire(books[line.book_id], ["stock"])
                raise InsufficientStock(
                    f"not enough stock for '{line.title}'",
                    book_id=line.book_id,
                    requested=line.quantity,
                    available=books[line.book_id].stock,
                )
            session.expire(books[line.book_id], ["stock"])

        now = ctx.now()
        order = Order(
            code=_order_code(now),
            user_id=user_id,
            address_id=address.id,
            status=OrderStatus.PLACED,
            subtotal=cart.subtotal,
            product_discount=cart.product_discount,
            category_discount=cart.category_discount,
            coupon_id=cart.coupon.id if cart.coupon else None,
            coupon_code=cart.coupon.code if cart.coupon else None,
            coupon_discount=cart.coupon_discount,
            final_total=cart.final_total,
            delivery_charge=delivery,
            tax=tax,
            total_payable=total_payable,
            payment_method=method,
            payment_status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        # shares follow what each line costs after offers, so none exceeds its line
        coupon_shares = allocate(cart.coupon_discount, [line.line_total for line in cart.lines])
        taxable = [max(ZERO, line.line_total - share) for line, share in zip(cart.lines, coupon_shares)]
        tax_shares = allocate(tax, taxable)
        for line, coupon_share, tax_share in zip(cart.lines, coupon_shares, tax_shares):
            order.items.append(OrderItem(
                book_id=line.book_id,
                title=line.title,
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount=line.discount,
                line_total=line.line_total,
                coupon_share=coupon_share,
                tax_share=tax_share,
            ))
        session.add(order)
        session.flush()

        if cart.coupon:
            redeem_coupon(ctx, user_id, cart.coupon.id, order_id=order.id)

        if method == PaymentMethod.WALLET:
            reference = None
            if total_payable > 0:
                txn = wallet_service.debit(
                    ctx, user_id, total_payable,
                    description=f"Payment for order {order.code}",
                    order_id=order.id,
                    reference=f"PAYMENT-ORDER-{order.id}",
                )
                reference = txn.reference
            order.payment_status = PaymentStatus.CAPTURED
            order.payment_reference = reference

        clear_cart(session, user_id)

    logger.info(
        "Order placed",
        order_id=order.id,
        user_id=user_id,
        payment_method=method.value,
        total_payable=str(total_payable),
    )
    return order


def confirm_payment(ctx, order_id, payment_reference, user_id=None) -> Order:
    reference = _require_reason(payment_reference, "payment_reference")
    session = ctx.session
    with atomic(session):
        order = _load_order(session, order_id, user_id)
        if order.payment_method != PaymentMethod.ONLINE:
            raise Conflict("order is not paid online", order_id=order.id, payment_method=order.payment_method.value)
        if order.status not in PRE_SHIPMENT:
            raise Conflict(f"cannot take payment for a {order.status.value} order", order_id=order.id)
        if not compare_and_set(
            session, order, Order.payment_status, PaymentStatus.PENDING, PaymentStatus.CAPTURED,
            payment_reference=reference,
        ):
            raise Conflict("payment already settled", order_id=order.id)
    logger.info("Payment captured", order_id=order_id, payment_reference=reference)
    return order


def get_order(ctx, order_id, user_id=None) -> Order:
    q = ctx.session.query(Order).filter(Order.id == order_id)
    if user_id is not None:
        q = q.filter(Order.user_id == user_id)
    order = q.first()
    if order is None:
        raise NotFound("order not found", order_id=order_id)
    return order


def _page(q, page, limit, default_limit) -> dict:
    page = max(1, int(page or 1))
    limit = min(max(1, int(limit or default_limit)), 100)
    total = q.count()
    rows = (
        q.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"items": rows, "total": total, "page": page, "limit": limit}


def list_orders(ctx, user_id, page=1, limit=10, status=None) -> dict:
    """The user's orders, newest first, optionally filtered by status."""
    q = ctx.session.query(Order).filter(Order.user_id == user_id)
    if status:
        q = q.filter(Order.status == _parse_status(status))
    return _page(q, page, limit, 10)


PENDING_KINDS = ("cancellation", "return")


def list_pending_requests(ctx, kind, page=1, limit=20) -> dict:
    """
    Orders waiting on an admin decision.

    ``cancellation``: orders with item cancellations pending.
    ``return``: orders with item returns pending or a whole-order return requested.
    """
    kind = (kind or "").strip().lower()
    q = ctx.session.query(Order)
    if kind == "cancellation":
        q = q.filter(Order.has_item_cancellation_requests.is_(True))
    elif kind == "return":
        q = q.filter(or_(
            Order.has_item_return_requests.is_(True),
            Order.status == OrderStatus.RETURN_REQUESTED,
        ))
    else:
        raise InvalidInput("kind must be one of: " + ", ".join(PENDING_KINDS), kind=kind)
    return _page(q, page, limit, 20)


# ---- admin status moves ----------------------------------------------------

def update_order_status(ctx, order_id, status) -> Order:
    target = _parse_status(status)
    if target not in HAPPY_PATH[1:]:
        raise InvalidInput(
            f"{target.value} is not set directly; use the cancellation or return operations",
            status=target.value,
        )
    session = ctx.session
    with atomic(session):
        order = _load_order(session, order_id)
        check_order_transition(order, target)
        if target == OrderStatus.SHIPPED and order.has_item_cancellation_requests:
            raise Conflict("order has pending item cancellations", order_id=order.id)

        extra = {}
        if target == OrderStatus.DELIVERED:
            extra["delivered_at"] = ctx.now()
            if order.payment_method == PaymentMethod.COD and order.payment_status == PaymentStatus.PENDING:
                extra["payment_status"] = PaymentStatus.CAPTURED
        move_order(session, order, target, **extra)
    logger.info("Order status updated", order_id=order_id, status=target.value)
    return order


# ---- cancellation ----------------------------------------------------------

def cancel_order(ctx, user_id, order_id, reason=None) -> Order:
    session = ctx.session
    reason = (reason or "").strip() or None
    with atomic(session):
        order = _load_order(session, order_id, user_id)
        if order.status not in PRE_SHIPMENT:
            raise Conflict(f"cannot cancel a {order.status.value} order", order_id=order.id)
        _check_cancellation_window(ctx, order)

        for item in order.items:
            if item.cancellation_status == RequestStatus.PENDING:
                move_item_cancellation(session, item, RequestStatus.APPROVED)
        move_order(session, order, OrderStatus.CANCELLED, cancellation_reason=reason)

        for item in order.items:
            _restore_stock(session, item)
        _refund_outstanding(ctx, order, f"Refund for cancelled order {order.code}")
        release_coupon(ctx, order)
        _refresh_request_flags(order)

    logger.info("Order cancelled", order_id=order_id, user_id=user_id)
    return order


def request_item_cancellation(ctx, user_id, order_id, item_id, reason=None) -> OrderItem:
    session = ctx.session
    reason = (reason or "").strip() or None
    with atomic(session):
        order = _load_order(session, order_id, user_id)
        if order.status not in PRE_SHIPMENT:
            raise Conflict(f"cannot cancel items of a {order.status.value} order", order_id=order.id)
        _check_cancellation_window(ctx, order)
        item = _get_item(order, item_id)
        move_item_cancellation(session, item, RequestStatus.PENDING, cancellation_reason=reason)
        _refresh_request_flags(order)
    logger.info("Item cancellation requested", order_id=order_id, order_item_id=item_id)
    return item


def _finish_if_all_cancelled(ctx, order: Order):
    if not all(i.is_cancelled for i in order.items):
        return
    _refund_outstanding(ctx, order, f"Refund for cancelled order {order.code}")
    target = OrderStatus.REFUNDED if D(order.refund_amount) > 0 else OrderStatus.CANCELLED
    move_order(ctx.session, order, target, cancellation_reason="all items cancelled")
    release_coupon(ctx, order)


def review_item_cancellation(ctx, order_id, item_id, approve, reason=None) -> OrderItem:
    session = ctx.session
    with atomic(session):
        order = _load_order(session, order_id)
        item = _get_item(order, item_id)
        if approve:
            if item.cancellation_status == RequestStatus.PENDING and order.status not in PRE_SHIPMENT:
                raise Conflict(f"cannot cancel items of a {order.status.value} order", order_id=order.id)
            move_item_cancellation(session, item, RequestStatus.APPROVED)
            _restore_stock(session, item)
            _refund_item(ctx, order, item)
            _finish_if_all_cancelled(ctx, order)
        else:
            move_item_cancellation(
                session, item, RequestStatus.REJECTED,
                cancellation_reject_reason=(reason or "").strip() or None,
            )
        _refresh_request_flags(order)
    logger.info("Item cancellation reviewed", order_id=order_id, order_item_id=item_id, approved=bool(approve))
    return item


# ---- returns ---------------------------------------------------------------

def _returnable(item: OrderItem) -> bool:
    return not item.is_cancelled and item.return_status == RequestStatus.NONE


def request_return(ctx, user_id, order_id, reason) -> Order:
    reason = _require_reason(reason)
    session = ctx.session
    with atomic(session):
        order = _load_order(session, order_id, user_id)
        check_order_transition(order, OrderStatus.RETURN_REQUESTED)
        _check_return_window(ctx, order)
        items = [i for i in order.items if _returnable(i)]
        if not items:
            raise Conflict("nothing left to return", order_id=order.id)
        for item in items:
            move_item_return(session, item, RequestStatus.PENDING, return_reason=reason)
        move_order(session, order, OrderStatus.RETURN_REQUESTED, return_reason=reason)
        _refresh_request_flags(order)
    logger.info("Return requested", order_id=order_id, user_id=user_id)
    return order


def request_item_return(ctx, user_id, order_id, item_id, reason) -> OrderItem:
    reason = _require_reason(reason)
    session = ctx.session
    with atomic(session):
        order = _load_order(session, order_id, user_id)
        if order.status != OrderStatus.DELIVERED:
            raise Conflict(f"cannot return items of a {order.status.value} order", order_id=order.id)
        _check_return_window(ctx, order)
        item = _get_item(order, item_id)
        if item.is_cancelled:
            raise Conflict("item was cancelled", order_item_id=item.id)
        move_item_return(session, item, RequestStatus.PENDING, return_reason=reason)
        _refresh_request_flags(order)
    logger.info("Item return requested", order_id=order_id, order_item_id=item_id)
    return item


def _approve_item_return(ctx, order, item, restock=True):
    move_item_return(ctx.session, item, RequestStatus.APPROVED)
    if restock:
        _restore_stock(ctx.session, item)
    _refund_item(ctx, order, item)


def _complete_return(ctx, order: Order):
    session = ctx.session
    move_order(session, order, OrderStatus.RETURN_APPROVED)
    move_order(session, order, OrderStatus.RETURN_COMPLETED)
    _refresh_refund_status(ctx, order)


def _finish_return_if_settled(ctx, order: Order, reason=None):
    if order.status != OrderStatus.RETURN_REQUESTED:
        return
    if any(i.return_status == RequestStatus.PENDING for i in order.items):
        return
    if any(i.return_status == RequestStatus.APPROVED for i in order.items):
        _complete_return(ctx, order)
    else:
        move_order(ctx.session, order, OrderStatus.RETURN_REJECTED,
                   return_reject_reason=reason or "all items rejected")


def review_item_return(ctx, order_id, item_id, approve, reason=None, restock=True) -> OrderItem:
    session = ctx.session
    with atomic(session):
        order = _load_order(session, order_id)
        item = _get_item(order, item_id)
        if approve:
            _approve_item_return(ctx, order, item, restock=restock)
        else:
            if item.return_status == RequestStatus.PENDING:
                reason = _require_reason(reason)
            move_item_return(session, item, RequestStatus.REJECTED, return_reject_reason=reason)
        _refresh_request_flags(order)
        _finish_return_if_settled(ctx, order, reason=None if approve else reason)
    logger.info(
        "Item return reviewed",
        order_id=order_id,
        order_item_id=item_id,
        approved=bool(approve),
        restock=bool(restock),
    )
    return item


def approve_return(ctx, order_id, restock=True) -> Order:
    session = ctx.session
    with atomic(session):
        order = _load_order(session, order_id)
        check_order_transition(order, OrderStatus.RETURN_APPROVED)
        for item in order.items:
            if item.return_status == RequestStatus.PENDING:
                _approve_item_return(ctx, order, item, restock=restock)
        _refresh_request_flags(order)
        if any(i.return_status == RequestStatus.APPROVED for i in order.items):
            _complete_return(ctx, order)
        else:
            # every item had already been rejected individually
            move_order(session, order, OrderStatus.RETURN_REJECTED, return_reject_reason="all items rejected")
    logger.info("Return approved", order_id=order_id)
    return order


def reject_return(ctx, order_id, reason) -> Order:
    reason = _require_reason(reason)
    session = ctx.session
    with atomic(session):
        order = _load_order(session, order_id)
        check_order_transition(order, OrderStatus.RETURN_REJECTED)
        for item in order.items:
            if item.return_status == RequestStatus.PENDING:
                move_item_return(session, item, RequestStatus.REJECTED, return_reject_reason=reason)
        move_order(session, order, OrderStatus.RETURN_REJECTED, return_reject_reason=reason)
        _refresh_request_flags(order)
    logger.info("Return rejected", order_id=order_id)
    return order


# ---- reconciliation --------------------------------------------------------

def expire_unpaid_orders(ctx, older_than: timedelta | None = None) -> list:
    """Cancel online orders whose payment never arrived; returns their ids."""
    cutoff = ctx.now() - (older_than if older_than is not None else ctx.policy.payment_timeout)
    session = ctx.session
    candidates = [
        oid for (oid,) in session.query(Order.id).filter(
            Order.payment_method == PaymentMethod.ONLINE,
            Order.payment_status == PaymentStatus.PENDING,
            Order.status.in_(list(PRE_SHIPMENT)),
            Order.created_at < cutoff,
        ).order_by(Order.id.asc()).all()
    ]

    expired = []
    for oid in candidates:
        with atomic(session):
            order = _load_order(session, oid)
            if order.status not in PRE_SHIPMENT:
                continue
            if not compare_and_set(session, order, Order.payment_status, PaymentStatus.PENDING, PaymentStatus.FAILED):
                continue
            for item in order.items:
                if item.cancellation_status == RequestStatus.PENDING:
                    move_item_cancellation(session, item, RequestStatus.APPROVED)
            move_order(session, order, OrderStatus.CANCELLED, cancellation_reason="payment not received")
            for item in order.items:
                _restore_stock(session, item)
            _refund_outstanding(ctx, order, f"Refund for expired order {order.code}")
            release_coupon(ctx, order)
            _refresh_request_flags(order)
        expired.append(oid)
        logger.info("Unpaid order expired", order_id=oid)
    return expired
