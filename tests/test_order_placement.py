from datetime import timedelta
from decimal import Decimal

import pytest

from bookstore.errors import Conflict, InsufficientFunds, InsufficientStock, InvalidInput, NotFound
from bookstore.extensions import db
from bookstore.model import (
    Book,
    CartItem,
    Coupon,
    CouponRedemption,
    CouponType,
    Order,
    OrderStatus,
    PaymentStatus,
    UserActiveCoupon,
    WalletTransaction,
)
from bookstore.services import coupon_service, order_service, wallet_service


class TestPlaceOrder:
    def test_cod_order(self, ctx, shop):
        s = shop.checkout(payment="cod")
        order = s.order

        assert order.status == OrderStatus.PLACED
        assert order.code.startswith("ORD-20250301-")
        assert order.subtotal == Decimal("1200.00")
        assert order.final_total == Decimal("1200.00")
        assert order.delivery_charge == Decimal("50.00")
        assert order.tax == Decimal("0.00")
        assert order.total_payable == Decimal("1250.00")
        assert order.payment_status == PaymentStatus.PENDING
        assert [b.stock for b in s.books] == [8, 9]
        assert db.session.query(CartItem).filter_by(user_id=s.user.id).count() == 0

        first, second = order.items
        assert (first.quantity, first.unit_price, first.line_total) == (2, Decimal("500.00"), Decimal("1000.00"))
        assert (second.quantity, second.line_total) == (1, Decimal("200.00"))

    def test_items_snapshot_offers(self, ctx, factory):
        user = factory.user()
        book = factory.book(price="500.00")
        factory.product_offer(book, 10)
        factory.category_offer(book.category_id, 5)
        factory.cart_item(user, book, 2)
        address = factory.address(user)

        order = order_service.place_order(ctx, user.id, address.id, "cod")

        assert order.product_discount == Decimal("100.00")
        assert order.category_discount == Decimal("50.00")
        assert order.final_total == Decimal("850.00")
        assert order.items[0].discount == Decimal("150.00")

    def test_pincode_delivery_charge_and_free_threshold(self, ctx, shop, factory):
        factory.delivery_charge("560001", charge="40.00", min_order_amount="1000")
        factory.delivery_charge("110001", charge="40.00", min_order_amount="0")

        free = shop.checkout()
        assert free.order.delivery_charge == Decimal("0.00")

        user = factory.user()
        factory.cart_item(user, factory.book(price="100.00"), 1)
        address = factory.address(user, pincode="110001")
        order = order_service.place_order(ctx, user.id, address.id, "cod")
        assert order.delivery_charge == Decimal("40.00")
        assert order.total_payable == Decimal("140.00")

    def test_free_delivery_threshold_uses_the_total_after_coupon(self, ctx, shop, factory):
        factory.delivery_charge("560001", charge="40.00", min_order_amount="1000")
        factory.coupon(code="FLAT300", ctype=CouponType.FLAT, value="300")

        s = shop.checkout(coupon_code="FLAT300")

        assert s.order.subtotal == Decimal("1200.00")
        assert s.order.final_total == Decimal("900.00")
        assert s.order.delivery_charge == Decimal("40.00")
        assert s.order.total_payable == Decimal("940.00")

    def test_tax_is_applied_and_spread_over_items(self, make_ctx, shop):
        s = shop.checkout(ctx=make_ctx(tax_rate=Decimal("0.05")))
        assert s.order.tax == Decimal("60.00")
        assert s.order.total_payable == Decimal("1310.00")
        assert sum(i.tax_share for i in s.order.items) == Decimal("60.00")

    def test_coupon_is_redeemed_and_shared(self, ctx, shop, factory):
        coupon = factory.coupon(code="SAVE10", value="10")
        s = shop.checkout(coupon_code="save10")
        order = s.order

        assert order.coupon_code == "SAVE10"
        assert order.coupon_discount == Decimal("120.00")
        assert order.final_total == Decimal("1080.00")
        assert [i.coupon_share for i in order.items] == [Decimal("100.00"), Decimal("20.00")]
        assert order.items[0].refundable_amount() == Decimal("900.00")

        assert db.session.get(Coupon, coupon.id).used_count == 1
        assert db.session.query(UserActiveCoupon).filter_by(user_id=s.user.id).count() == 0
        redemption = db.session.query(CouponRedemption).filter_by(user_id=s.user.id).one()
        assert redemption.order_id == order.id

    def test_flat_coupon_shares_add_up(self, ctx, factory):
        user = factory.user()
        factory.cart_item(user, factory.book(price="300.00"), 1)
        factory.cart_item(user, factory.book(price="100.00"), 1)
        address = factory.address(user)
        factory.coupon(code="FORTY", ctype=CouponType.FLAT, value="40")
        coupon_service.apply_coupon(ctx, user.id, "FORTY")

        order = order_service.place_order(ctx, user.id, address.id, "cod")

        assert [i.coupon_share for i in order.items] == [Decimal("30.00"), Decimal("10.00")]

    def test_insufficient_stock_names_the_line_and_changes_nothing(self, ctx, factory):
        user = factory.user()
        plenty = factory.book(stock=10)
        scarce = factory.book(stock=1)
        factory.cart_item(user, plenty, 1)
        factory.cart_item(user, scarce, 2)
        address = factory.address(user)

        with pytest.raises(InsufficientStock) as exc:
            order_service.place_order(ctx, user.id, address.id, "cod")

        assert exc.value.details == {"book_id": scarce.id, "requested": 2, "available": 1}
        assert (plenty.stock, scarce.stock) == (10, 1)
        assert db.session.query(Order).count() == 0
        assert db.session.query(CartItem).filter_by(user_id=user.id).count() == 2

    def test_dropped_line_blocks_placement(self, ctx, factory):
        user = factory.user()
        factory.cart_item(user, factory.book(), 1)
        factory.cart_item(user, 777, 1)
        address = factory.address(user)
        with pytest.raises(NotFound) as exc:
            order_service.place_order(ctx, user.id, address.id, "cod")
        assert exc.value.details["book_id"] == 777
        assert db.session.query(Order).count() == 0

    def test_empty_cart(self, ctx, factory):
        user = factory.user()
        with pytest.raises(InvalidInput, match="empty"):
            order_service.place_order(ctx, user.id, factory.address(user).id, "cod")

    def test_someone_elses_address(self, ctx, factory):
        user = factory.user()
        factory.cart_item(user, factory.book(), 1)
        other = factory.address(factory.user())
        with pytest.raises(NotFound):
            order_service.place_order(ctx, user.id, other.id, "cod")

    def test_unknown_payment_method(self, ctx, factory):
        with pytest.raises(InvalidInput):
            order_service.place_order(ctx, 1, 1, "cheque")

    def test_expired_staged_coupon_blocks_placement(self, ctx, factory, clock):
        user = factory.user()
        factory.cart_item(user, factory.book(), 1)
        address = factory.address(user)
        factory.coupon(code="BRIEF", expires_in_days=1)
        coupon_service.apply_coupon(ctx, user.id, "BRIEF")
        clock.advance(days=2)

        with pytest.raises(InvalidInput, match="expired"):
            order_service.place_order(ctx, user.id, address.id, "cod")
        assert db.session.query(Order).count() == 0


class TestWalletPayment:
    def test_wallet_payment_is_captured_at_placement(self, ctx, shop):
        s = shop.checkout(payment="wallet", fund="2000")

        assert s.order.payment_status == PaymentStatus.CAPTURED
        assert s.order.payment_reference == f"PAYMENT-ORDER-{s.order.id}"
        assert wallet_service.wallet_balance(ctx, s.user.id) == Decimal("750.00")

    def test_short_wallet_aborts_everything(self, ctx, factory, shop):
        user = factory.user()
        book = factory.book(price="500.00", stock=5)
        factory.cart_item(user, book, 1)
        address = factory.address(user)
        coupon = factory.coupon(code="KEEP", value="10")
        coupon_service.apply_coupon(ctx, user.id, "KEEP")
        shop.fund(user, "100")

        with pytest.raises(InsufficientFunds):
            order_service.place_order(ctx, user.id, address.id, "wallet")

        assert book.stock == 5
        assert db.session.get(Coupon, coupon.id).used_count == 0
        assert db.session.query(UserActiveCoupon).filter_by(user_id=user.id).count() == 1
        assert db.session.query(Order).count() == 0
        assert wallet_service.wallet_balance(ctx, user.id) == Decimal("100.00")
        assert db.session.query(WalletTransaction).count() == 1


class TestPaymentConfirmation:
    def test_online_payment_captured_once(self, ctx, shop):
        s = shop.checkout(payment="online")
        order_service.confirm_payment(ctx, s.order.id, "pay_123", user_id=s.user.id)
        assert s.order.payment_status == PaymentStatus.CAPTURED
        assert s.order.payment_reference == "pay_123"
        with pytest.raises(Conflict):
            order_service.confirm_payment(ctx, s.order.id, "pay_456", user_id=s.user.id)

    def test_cod_cannot_be_confirmed_online(self, ctx, shop):
        s = shop.checkout(payment="cod")
        with pytest.raises(Conflict):
            order_service.confirm_payment(ctx, s.order.id, "pay_1")

    def test_cod_is_captured_on_delivery(self, ctx, shop, clock):
        s = shop.checkout(payment="cod")
        shop.deliver(s.order)
        assert s.order.status == OrderStatus.DELIVERED
        assert s.order.payment_status == PaymentStatus.CAPTURED
        assert s.order.delivered_at == clock()


class TestStatusUpdates:
    def test_cannot_skip_ahead(self, ctx, shop):
        s = shop.checkout()
        with pytest.raises(Conflict):
            order_service.update_order_status(ctx, s.order.id, "Delivered")

    def test_branch_states_are_not_set_directly(self, ctx, shop):
        s = shop.checkout()
        with pytest.raises(InvalidInput):
            order_service.update_order_status(ctx, s.order.id, "Cancelled")

    def test_unknown_status(self, ctx, shop):
        s = shop.checkout()
        with pytest.raises(InvalidInput):
            order_service.update_order_status(ctx, s.order.id, "Teleported")


class TestExpireUnpaidOrders:
    def test_stale_online_orders_are_cancelled(self, ctx, shop, clock):
        stale = shop.checkout(payment="online")
        cod = shop.checkout(payment="cod")
        clock.advance(minutes=31)

        expired = order_service.expire_unpaid_orders(ctx)

        assert expired == [stale.order.id]
        assert stale.order.status == OrderStatus.CANCELLED
        assert stale.order.payment_status == PaymentStatus.FAILED
        assert [b.stock for b in stale.books] == [10, 10]
        assert cod.order.status == OrderStatus.PLACED
        with pytest.raises(Conflict):
            order_service.confirm_payment(ctx, stale.order.id, "late")

    def test_paid_and_fresh_orders_are_left_alone(self, ctx, shop, clock):
        paid = shop.checkout(payment="online")
        order_service.confirm_payment(ctx, paid.order.id, "pay_ok")
        clock.advance(minutes=10)
        fresh = shop.checkout(payment="online")

        assert order_service.expire_unpaid_orders(ctx, older_than=timedelta(minutes=5)) == []
        assert fresh.order.status == OrderStatus.PLACED
        assert db.session.get(Book, paid.books[0].id).stock == 8


class TestOrderQueries:
    def test_list_orders_is_per_user_and_newest_first(self, ctx, shop, clock, factory):
        user = factory.user()
        first = shop.checkout(user=user)
        clock.advance(minutes=1)
        second = shop.checkout(user=user)
        shop.checkout()

        result = order_service.list_orders(ctx, user.id, page=1, limit=10)

        assert result["total"] == 2
        assert [o.id for o in result["items"]] == [second.order.id, first.order.id]

    def test_list_orders_paginates_and_filters(self, ctx, shop, factory):
        user = factory.user()
        orders = [shop.checkout(user=user).order for _ in range(3)]
        order_service.cancel_order(ctx, user.id, orders[0].id)

        page = order_service.list_orders(ctx, user.id, page=2, limit=2)
        assert page["total"] == 3
        assert len(page["items"]) == 1

        cancelled = order_service.list_orders(ctx, user.id, status="cancelled")
        assert [o.id for o in cancelled["items"]] == [orders[0].id]
        with pytest.raises(InvalidInput):
            order_service.list_orders(ctx, user.id, status="lost")

    def test_pending_requests(self, ctx, shop):
        cancelling = shop.checkout()
        item = cancelling.order.items[0]
        order_service.request_item_cancellation(ctx, cancelling.user.id, cancelling.order.id, item.id)

        returning = shop.checkout()
        shop.deliver(returning.order)
        order_service.request_return(ctx, returning.user.id, returning.order.id, "wrong edition")

        shop.checkout()

        pending = order_service.list_pending_requests(ctx, "cancellation")
        assert [o.id for o in pending["items"]] == [cancelling.order.id]
        pending = order_service.list_pending_requests(ctx, "return")
        assert [o.id for o in pending["items"]] == [returning.order.id]

        order_service.approve_return(ctx, returning.order.id)
        assert order_service.list_pending_requests(ctx, "return")["total"] == 0
        with pytest.raises(InvalidInput):
            order_service.list_pending_requests(ctx, "refund")
