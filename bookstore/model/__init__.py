# ------ bookstore/model/__init__.py ------

from .user import User
from .category import Category
from .book import Book
from .offer import ProductOffer, CategoryOffer
from .coupon import Coupon, CouponType, UserActiveCoupon, CouponRedemption
from .cart import CartItem
from .address import Address, DeliveryCharge
from .order import (
    Order,
    OrderItem,
    OrderStatus,
    RequestStatus,
    RefundStatus,
    PaymentMethod,
    PaymentStatus,
)
from .wallet import Wallet, WalletTransaction, TransactionType, TransactionStatus
from .types import ValueEnum

__all__ = [
    "User",
    "Category",
    "Book",
    "ProductOffer",
    "CategoryOffer",
    "Coupon",
    "CouponType",
    "UserActiveCoupon",
    "CouponRedemption",
    "CartItem",
    "Address",
    "DeliveryCharge",
    "Order",
    "OrderItem",
    "OrderStatus",
    "RequestStatus",
    "RefundStatus",
    "PaymentMethod",
    "PaymentStatus",
    "Wallet",
    "WalletTransaction",
    "TransactionType",
    "TransactionStatus",
    "ValueEnum",
]
