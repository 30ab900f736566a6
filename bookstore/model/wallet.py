# bookstore/model/wallet.py
from enum import Enum

from ..extensions import db
from ..utils.clock import utcnow
from .types import ValueEnum


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class Wallet(db.Model):
    __tablename__ = "wallet"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, unique=True)
    balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def as_api(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "balance": str(self.balance),
        }


class WalletTransaction(db.Model):
    """Ledger row. Amount is always positive; the type carries the sign."""
    __tablename__ = "wallet_transaction"

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallet.id"), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    ttype = db.Column(ValueEnum(TransactionType, 8), nullable=False)
    status = db.Column(ValueEnum(TransactionStatus, 16), nullable=False, default=TransactionStatus.COMPLETED)
    description = db.Column(db.String(255))
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    reference = db.Column(db.String(128), nullable=True, unique=True)   # idempotency key when set
    gateway_payment_id = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_wallet_transaction_amount_positive"),
    )

    def signed_amount(self):
        return self.amount if self.ttype == TransactionType.CREDIT else -self.amount

    def as_api(self):
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "amount": str(self.amount),
            "type": self.ttype.value,
            "status": self.status.value,
            "description": self.description,
            "order_id": self.order_id,
            "reference": self.reference,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
