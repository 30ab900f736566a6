# bookstore/model/address.py
from ..extensions import db


class Address(db.Model):
    __tablename__ = "address"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    name = db.Column(db.String(120))
    line1 = db.Column(db.String(255), nullable=False)
    city = db.Column(db.String(120), nullable=False)
    pincode = db.Column(db.String(16), nullable=False, index=True)

    def as_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "line1": self.line1,
            "city": self.city,
            "pincode": self.pincode,
        }


class DeliveryCharge(db.Model):
    __tablename__ = "delivery_charge"

    id = db.Column(db.Integer, primary_key=True)
    pincode = db.Column(db.String(16), nullable=False, unique=True)
    charge = db.Column(db.Numeric(12, 2), nullable=False)
    min_order_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)   # free delivery at or above; 0 = never free
    is_active = db.Column(db.Boolean, nullable=False, default=True)
