
from enum import Enum

from sqlalchemy.sql import func

from ..extensions import db
from .types import ValueEnum


class CouponType(str, Enum):
    FLAT = "flat"
    PERCENT = "percent"


class Coupon(db.Model):
    __tablename__ = "coupon"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)

    ctype = db.Column(ValueEnum(CouponType, 16), nullable=False, default=CouponType.PERCENT)
    value = db.Column(db.Numeric(12, 2), nullable=False)

    min_order_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    max_discount = db.Column(db.Numeric(12, 2), nullable=True)   # percent coupons only; null = uncapped
    expires_at = db.Column(db.DateTime, nullable=False)

    usage_limit = db.Column(db.Integer, nullable=False, default=1)
    used_count = db.Column(db.Integer, nullable=False, default=0)
    active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    __table_args__ = (
        # codes are unique regardless of case
        db.Index("ix_coupon_code_lower", func.lower(code), unique=True),
        db.CheckConstraint("used_count >= 0 AND used_count <= usage_limit", name="ck_coupon_usage"),
    )

    def as_api(self):
        return {
            "id": self.id,
            "code": self.code,
            "type": self.ctype.value,
            "value": str(self.value),
            "min_order_value": str(self.min_order_value),
            "max_discount": str(self.max_discount) if self.max_discount is not None else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "usage_limit": self.usage_limit,
            "used_count": self.used_count,
            "active": self.active,
        }


class UserActiveCoupon(db.Model):
    """The single coupon staged for a user's next checkout."""
    __tablename__ = "user_active_coupon"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, unique=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupon.id", ondelete="CASCADE"), nullable=False, index=True)
    applied_at = db.Column(db.DateTime, nullable=False, server_default=func.now())

    coupon = db.relationship("Coupon", lazy="joined")


class CouponRedemption(db.Model):
    __tablename__ = "coupon_redemption"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupon.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    redeemed_at = db.Column(db.DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        db.UniqueConstraint("user_id", "coupon_id", name="uq_coupon_redemption_user_coupon"),
    )
