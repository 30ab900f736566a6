from enum import Enum

from ..extensions import db
from ..utils.clock import utcnow
from ..utils.money import D, ZERO, round_money
from .types import ValueEnum


class OrderStatus(str, Enum):
    PLACED = "Placed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"
    RETURN_REQUESTED = "Return Requested"
    RETURN_APPROVED = "Return Approved"
    RETURN_COMPLETED = "Return Completed"
    RETURN_REJECTED = "Return Rejected"


class RequestStatus(str, Enum):
    """Per-item cancellation / return sub-state."""
    NONE = "none"
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class RefundStatus(str, Enum):
    NONE = "none"
    PARTIAL = "partial"            # order level: some items refunded
    COMPLETED = "completed"
    NOT_APPLICABLE = "not_applicable"   # nothing was captured


class PaymentMethod(str, Enum):
    COD = "cod"
    ONLINE = "online"
    WALLET = "wallet"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), unique=True, index=True)  # e.g., "ORD-20251022-1A2B3C4D"
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    address_id = db.Column(db.Integer, db.ForeignKey("address.id"), nullable=False)
    status = db.Column(ValueEnum(OrderStatus), nullable=False, default=OrderStatus.PLACED, index=True)

    # Money snapshot
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    product_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    category_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupon.id"), nullable=True)
    coupon_code = db.Column(db.String(64), nullable=True)
    coupon_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    final_total = db.Column(db.Numeric(12, 2), nullable=False)
    delivery_charge = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_payable = db.Column(db.Numeric(12, 2), nullable=False)

    # Payment
    payment_method = db.Column(ValueEnum(PaymentMethod, 16), nullable=False)
    payment_status = db.Column(ValueEnum(PaymentStatus, 16), nullable=False, default=PaymentStatus.PENDING)
    payment_reference = db.Column(db.String(128), nullable=True)

    # Cancellation / return / refund
    cancellation_reason = db.Column(db.String(500))
    return_reason = db.Column(db.String(500))
    return_reject_reason = db.Column(db.String(500))
    refund_status = db.Column(ValueEnum(RefundStatus, 16), nullable=False, default=RefundStatus.NONE)
    refund_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)   # cumulative
    refunded_at = db.Column(db.DateTime)
    has_item_cancellation_requests = db.Column(db.Boolean, nullable=False, default=False)
    has_item_return_requests = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    delivered_at = db.Column(db.DateTime)

    items = db.relationship(
        "OrderItem",
        backref="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id.asc()",
    )

    @property
    def payment_captured(self) -> bool:
        return self.payment_status == PaymentStatus.CAPTURED

    def outstanding_refund(self):
        """What the customer paid and has not yet been given back."""
        return round_money(max(ZERO, D(self.total_payable) - D(self.refund_amount)))

    def as_api(self):
        return {
            "id": self.id,
            "code": self.code,
            "status": self.status.value,
            "payment": {
                "method": self.payment_method.value,
                "status": self.payment_status.value,
                "reference": self.payment_reference,
            },
            "money": {
                "subtotal": str(self.subtotal),
                "product_discount": str(self.product_discount),
                "category_discount": str(self.category_discount),
                "coupon_code": self.coupon_code,
                "coupon_discount": str(self.coupon_discount),
                "final_total": str(self.final_total),
                "delivery_charge": str(self.delivery_charge),
                "tax": str(self.tax),
                "total_payable": str(self.total_payable),
            },
            "refund": {
                "status": self.refund_status.value,
                "amount": str(self.refund_amount),
                "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            },
            "cancellation_reason": self.cancellation_reason,
            "return_reason": self.return_reason,
            "return_reject_reason": self.return_reject_reason,
            "has_item_cancellation_requests": self.has_item_cancellation_requests,
            "has_item_return_requests": self.has_item_return_requests,
            "items": [i.as_api() for i in self.items],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey("book.id"), nullable=False, index=True)
    title = db.Column(db.String(255))

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)      # product + category offers
    line_total = db.Column(db.Numeric(12, 2), nullable=False)
    coupon_share = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_share = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    cancellation_status = db.Column(ValueEnum(RequestStatus, 16), nullable=False, default=RequestStatus.NONE)
    cancellation_reason = db.Column(db.String(500))
    cancellation_reject_reason = db.Column(db.String(500))
    return_status = db.Column(ValueEnum(RequestStatus, 16), nullable=False, default=RequestStatus.NONE)
    return_reason = db.Column(db.String(500))
    return_reject_reason = db.Column(db.String(500))

    refund_status = db.Column(ValueEnum(RefundStatus, 16), nullable=False, default=RefundStatus.NONE)
    refund_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    refunded_at = db.Column(db.DateTime)
    stock_restored = db.Column(db.Boolean, nullable=False, default=False)

    @property
    def cancellation_requested(self) -> bool:
        return self.cancellation_status != RequestStatus.NONE

    @property
    def return_requested(self) -> bool:
        return self.return_status != RequestStatus.NONE

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation_status == RequestStatus.APPROVED

    def refundable_amount(self):
        # what the customer actually paid for this line
        return round_money(max(ZERO, D(self.line_total) - D(self.coupon_share) + D(self.tax_share)))

    def as_api(self):
        return {
            "id": self.id,
            "book_id": self.book_id,
            "title": self.title,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "discount": str(self.discount),
            "line_total": str(self.line_total),
            "coupon_share": str(self.coupon_share),
            "tax_share": str(self.tax_share),
            "cancellation": {
                "status": self.cancellation_status.value,
                "reason": self.cancellation_reason,
                "reject_reason": self.cancellation_reject_reason,
            },
            "return": {
                "status": self.return_status.value,
                "reason": self.return_reason,
                "reject_reason": self.return_reject_reason,
            },
            "refund": {
                "status": self.refund_status.value,
                "amount": str(self.refund_amount),
                "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            },
            "stock_restored": self.stock_restored,
        }
