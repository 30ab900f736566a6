from datetime import timedelta
from decimal import Decimal

from bookstore.services.offer_service import (
    apply_offer_to_price,
    compute_offer_breakdown,
    stack_offers,
)


class TestStacking:
    def test_additive_sums_both_axes(self):
        b = stack_offers(10, 5)
        assert (b.product_percent, b.category_percent, b.applied_percent) == (10.0, 5.0, 15.0)
        assert b.applied_type == "product+category"

    def test_nothing_applies(self):
        b = stack_offers(0, 0)
        assert b.applied_percent == 0.0
        assert b.applied_type == "none"

    def test_single_axis_types(self):
        assert stack_offers(10, 0).applied_type == "product"
        assert stack_offers(0, 7).applied_type == "category"

    def test_sum_over_hundred_is_clamped_on_category_axis(self):
        b = stack_offers(80, 40)
        assert b.applied_percent == 100.0
        assert b.product_percent == 80.0
        assert b.category_percent == 20.0
        assert b.product_percent + b.category_percent == b.applied_percent

    def test_out_of_range_percents_are_clamped(self):
        b = stack_offers(150, -5)
        assert b.product_percent == 100.0
        assert b.category_percent == 0.0
        assert b.applied_percent == 100.0

    def test_best_keeps_only_the_larger_axis(self):
        b = stack_offers(10, 25, stacking="best")
        assert (b.product_percent, b.category_percent, b.applied_percent) == (0.0, 25.0, 25.0)
        assert b.applied_type == "category"

    def test_best_tie_goes_to_product(self):
        b = stack_offers(10, 10, stacking="best")
        assert (b.product_percent, b.category_percent) == (10.0, 0.0)


class TestApplyOfferToPrice:
    def test_discounted_price(self):
        assert apply_offer_to_price(Decimal("500.00"), 15) == Decimal("425.00")

    def test_rounds_half_away_from_zero(self):
        # 0.25 * 0.9 = 0.225
        assert apply_offer_to_price(Decimal("0.25"), 10) == Decimal("0.23")

    def test_percent_is_clamped(self):
        assert apply_offer_to_price(Decimal("80.00"), 120) == Decimal("0.00")
        assert apply_offer_to_price(Decimal("80.00"), -10) == Decimal("80.00")


class TestComputeOfferBreakdown:
    def test_reads_active_offers(self, ctx, factory):
        book = factory.book()
        factory.product_offer(book, 10)
        factory.category_offer(book.category_id, 5)

        b = compute_offer_breakdown(ctx, book.id, book.category_id)
        assert b.product_percent == 10.0
        assert b.category_percent == 5.0
        assert b.applied_percent == 15.0

    def test_inactive_and_out_of_window_offers_are_ignored(self, ctx, factory, clock):
        book = factory.book()
        factory.product_offer(book, 30, active=False)
        factory.category_offer(book.category_id, 20, days=1)
        clock.advance(days=2)

        b = compute_offer_breakdown(ctx, book.id, book.category_id)
        assert b.applied_percent == 0.0
        assert b.applied_type == "none"

    def test_window_bounds_are_inclusive(self, ctx, factory, clock):
        book = factory.book()
        factory.product_offer(book, 12, days=3)
        b = compute_offer_breakdown(ctx, book.id, book.category_id, at=clock() + timedelta(days=3))
        assert b.product_percent == 12.0

    def test_largest_of_several_product_offers_wins(self, ctx, factory):
        book = factory.book()
        factory.product_offer(book, 5)
        factory.product_offer(book, 15)
        assert compute_offer_breakdown(ctx, book.id, book.category_id).product_percent == 15.0

    def test_best_policy(self, make_ctx, factory):
        book = factory.book()
        factory.product_offer(book, 10)
        factory.category_offer(book.category_id, 5)
        b = compute_offer_breakdown(make_ctx(offer_stacking="best"), book.id, book.category_id)
        assert (b.product_percent, b.category_percent, b.applied_percent) == (10.0, 0.0, 10.0)
