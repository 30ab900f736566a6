from decimal import Decimal

import pytest

from bookstore.errors import Conflict, InvalidInput
from bookstore.model import OrderStatus, RefundStatus, RequestStatus
from bookstore.services import order_service, wallet_service


@pytest.fixture()
def delivered(shop):
    s = shop.checkout(payment="cod")
    shop.deliver(s.order)
    return s


class TestRequestReturn:
    def test_reason_is_mandatory(self, ctx, delivered):
        with pytest.raises(InvalidInput):
            order_service.request_return(ctx, delivered.user.id, delivered.order.id, "  ")

    def test_only_after_delivery(self, ctx, shop):
        s = shop.checkout()
        with pytest.raises(Conflict):
            order_service.request_return(ctx, s.user.id, s.order.id, "damaged")
        with pytest.raises(Conflict):
            order_service.request_item_return(ctx, s.user.id, s.order.id, s.order.items[0].id, "damaged")

    def test_return_window(self, ctx, delivered, clock):
        clock.advance(days=8)
        with pytest.raises(Conflict, match="window"):
            order_service.request_return(ctx, delivered.user.id, delivered.order.id, "too late")

    def test_whole_order_request_marks_every_item(self, ctx, delivered):
        order_service.request_return(ctx, delivered.user.id, delivered.order.id, "wrong edition")

        order = delivered.order
        assert order.status == OrderStatus.RETURN_REQUESTED
        assert order.return_reason == "wrong edition"
        assert order.has_item_return_requests is True
        assert {i.return_status for i in order.items} == {RequestStatus.PENDING}


class TestWholeOrderDecision:
    def test_approve_restocks_and_refunds(self, ctx, delivered):
        order = delivered.order
        order_service.request_return(ctx, delivered.user.id, order.id, "wrong edition")

        order_service.approve_return(ctx, order.id)

        assert order.status == OrderStatus.RETURN_COMPLETED
        assert order.refund_status == RefundStatus.COMPLETED
        assert order.refund_amount == Decimal("1200.00")
        assert {i.return_status for i in order.items} == {RequestStatus.APPROVED}
        assert [b.stock for b in delivered.books] == [10, 10]
        assert wallet_service.wallet_balance(ctx, delivered.user.id) == Decimal("1200.00")
        assert order.has_item_return_requests is False

    def test_approve_retry_conflicts(self, ctx, delivered):
        order = delivered.order
        order_service.request_return(ctx, delivered.user.id, order.id, "wrong edition")
        order_service.approve_return(ctx, order.id)

        with pytest.raises(Conflict):
            order_service.approve_return(ctx, order.id)

        assert [b.stock for b in delivered.books] == [10, 10]
        assert wallet_service.wallet_balance(ctx, delivered.user.id) == Decimal("1200.00")

    def test_reject_is_terminal(self, ctx, delivered):
        order = delivered.order
        order_service.request_return(ctx, delivered.user.id, order.id, "wrong edition")

        order_service.reject_return(ctx, order.id, "used copy")

        assert order.status == OrderStatus.RETURN_REJECTED
        assert order.return_reject_reason == "used copy"
        assert {i.return_status for i in order.items} == {RequestStatus.REJECTED}
        assert [b.stock for b in delivered.books] == [8, 9]
        with pytest.raises(Conflict):
            order_service.request_return(ctx, delivered.user.id, order.id, "please")

    def test_reject_needs_reason(self, ctx, delivered):
        order_service.request_return(ctx, delivered.user.id, delivered.order.id, "wrong edition")
        with pytest.raises(InvalidInput):
            order_service.reject_return(ctx, delivered.order.id, "")


class TestItemReturns:
    def test_approved_without_restock(self, ctx, delivered):
        order = delivered.order
        item = order.items[0]
        order_service.request_item_return(ctx, delivered.user.id, order.id, item.id, "torn cover")

        order_service.review_item_return(ctx, order.id, item.id, approve=True, restock=False)

        assert item.return_status == RequestStatus.APPROVED
        assert item.stock_restored is False
        assert delivered.books[0].stock == 8
        assert item.refund_amount == Decimal("1000.00")
        assert order.status == OrderStatus.DELIVERED
        assert order.refund_status == RefundStatus.PARTIAL
        assert wallet_service.wallet_balance(ctx, delivered.user.id) == Decimal("1000.00")

    def test_rejection_needs_reason_and_is_final(self, ctx, delivered):
        order = delivered.order
        item = order.items[1]
        order_service.request_item_return(ctx, delivered.user.id, order.id, item.id, "not as described")

        with pytest.raises(InvalidInput):
            order_service.review_item_return(ctx, order.id, item.id, approve=False)
        order_service.review_item_return(ctx, order.id, item.id, approve=False, reason="no defect found")

        assert item.return_status == RequestStatus.REJECTED
        assert item.return_reject_reason == "no defect found"
        with pytest.raises(Conflict):
            order_service.request_item_return(ctx, delivered.user.id, order.id, item.id, "again")

    def test_review_retry_conflicts(self, ctx, delivered):
        order = delivered.order
        item = order.items[1]
        order_service.request_item_return(ctx, delivered.user.id, order.id, item.id, "damaged")
        order_service.review_item_return(ctx, order.id, item.id, approve=True)

        with pytest.raises(Conflict):
            order_service.review_item_return(ctx, order.id, item.id, approve=True)

        assert delivered.books[1].stock == 10
        assert wallet_service.wallet_balance(ctx, delivered.user.id) == Decimal("200.00")

    def test_item_reviews_finish_a_whole_order_return(self, ctx, delivered):
        order = delivered.order
        first, second = order.items
        order_service.request_return(ctx, delivered.user.id, order.id, "wrong edition")

        order_service.review_item_return(ctx, order.id, first.id, approve=True)
        assert order.status == OrderStatus.RETURN_REQUESTED
        order_service.review_item_return(ctx, order.id, second.id, approve=False, reason="used")

        assert order.status == OrderStatus.RETURN_COMPLETED
        assert order.refund_amount == Decimal("1000.00")
        assert order.refund_status == RefundStatus.PARTIAL

    def test_rejecting_every_item_rejects_the_return(self, ctx, delivered):
        order = delivered.order
        order_service.request_return(ctx, delivered.user.id, order.id, "wrong edition")
        for item in order.items:
            order_service.review_item_return(ctx, order.id, item.id, approve=False, reason="used")

        assert order.status == OrderStatus.RETURN_REJECTED
        assert order.return_reject_reason == "used"
