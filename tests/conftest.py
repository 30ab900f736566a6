"""Shared fixtures: an app on in-memory SQLite, a service context and row factories."""

import dataclasses
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from bookstore import create_app
from bookstore.config import TestConfig
from bookstore.extensions import db
from bookstore.model import (
    Address,
    Book,
    CartItem,
    Category,
    CategoryOffer,
    Coupon,
    CouponType,
    DeliveryCharge,
    OrderStatus,
    ProductOffer,
    User,
)
from bookstore.services import coupon_service, order_service, wallet_service
from bookstore.services.context import ServiceContext
from bookstore.utils.db import atomic

NOW = datetime(2025, 3, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def overrides():
    return {}


@pytest.fixture()
def app(overrides):
    app = create_app(TestConfig, overrides)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def ctx(app, clock):
    return ServiceContext(session=db.session, policy=app.extensions["policy"], clock=clock)


@pytest.fixture()
def make_ctx(app, clock):
    """Context with some policy switches flipped."""
    def _make(**changes):
        policy = dataclasses.replace(app.extensions["policy"], **changes)
        return ServiceContext(session=db.session, policy=policy, clock=clock)
    return _make


class Factory:
    """Small row builders; every helper commits so services start from stored state."""

    def __init__(self, clock):
        self.clock = clock
        self._seq = 0

    def _next(self):
        self._seq += 1
        return self._seq

    def _save(self, obj):
        db.session.add(obj)
        db.session.commit()
        return obj

    def user(self, role="user"):
        n = self._next()
        return self._save(User(email=f"user{n}@example.com", name=f"User {n}", role=role))

    def category(self, name=None):
        return self._save(Category(name=name or f"Category {self._next()}"))

    def book(self, price="500.00", stock=10, category=None, active=True, title=None):
        category = category or self.category()
        return self._save(Book(
            title=title or f"Book {self._next()}",
            author="Someone",
            price=Decimal(price),
            stock=stock,
            active=active,
            category_id=category.id,
        ))

    def product_offer(self, book, percent, active=True, days=10):
        now = self.clock()
        return self._save(ProductOffer(
            book_id=book.id,
            discount_percent=percent,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=days),
            active=active,
        ))

    def category_offer(self, category_id, percent, active=True, days=10):
        now = self.clock()
        return self._save(CategoryOffer(
            category_id=category_id,
            discount_percent=percent,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=days),
            active=active,
        ))

    def coupon(self, code="SAVE10", ctype=CouponType.PERCENT, value="10", min_order_value="0",
               max_discount=None, usage_limit=5, used_count=0, active=True, expires_in_days=30):
        return self._save(Coupon(
            code=code,
            ctype=ctype,
            value=Decimal(value),
            min_order_value=Decimal(min_order_value),
            max_discount=Decimal(max_discount) if max_discount is not None else None,
            expires_at=self.clock() + timedelta(days=expires_in_days),
            usage_limit=usage_limit,
            used_count=used_count,
            active=active,
        ))

    def address(self, user, pincode="560001"):
        return self._save(Address(user_id=user.id, name=user.name, line1="1 Main Road", city="Bengaluru",
                                  pincode=pincode))

    def delivery_charge(self, pincode, charge="40.00", min_order_amount="0", is_active=True):
        return self._save(DeliveryCharge(
            pincode=pincode,
            charge=Decimal(charge),
            min_order_amount=Decimal(min_order_amount),
            is_active=is_active,
        ))

    def cart_item(self, user, book_or_id, quantity=1):
        book_id = book_or_id if isinstance(book_or_id, int) else book_or_id.id
        return self._save(CartItem(user_id=user.id, book_id=book_id, quantity=quantity))


@pytest.fixture()
def factory(app, clock):
    return Factory(clock)


class Shop:
    """Drives a user through checkout so lifecycle tests can start from a placed order."""

    def __init__(self, ctx, factory):
        self.ctx = ctx
        self.factory = factory

    def fund(self, user, amount):
        with atomic(db.session):
            wallet_service.credit(self.ctx, user.id, amount, description="opening balance")

    def checkout(self, payment="cod", lines=(("500.00", 2), ("200.00", 1)), fund=None, user=None,
                 coupon_code=None, ctx=None):
        ctx = ctx or self.ctx
        user = user or self.factory.user()
        books = []
        for price, quantity in lines:
            book = self.factory.book(price=price, stock=10)
            self.factory.cart_item(user, book, quantity)
            books.append(book)
        address = self.factory.address(user)
        if fund:
            self.fund(user, fund)
        if coupon_code:
            coupon_service.apply_coupon(ctx, user.id, coupon_code)
        order = order_service.place_order(ctx, user.id, address.id, payment)
        return SimpleNamespace(user=user, books=books, address=address, order=order)

    def deliver(self, order, ctx=None):
        for status in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            order_service.update_order_status(ctx or self.ctx, order.id, status)


@pytest.fixture()
def shop(ctx, factory):
    return Shop(ctx, factory)
