# bookstore/model/cart.py
from sqlalchemy.sql import func

from ..extensions import db


class CartItem(db.Model):
    __tablename__ = "cart_item"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, nullable=False, index=True)   # no FK: the book may disappear from the catalog
    quantity = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    __table_args__ = (
        db.UniqueConstraint("user_id", "book_id", name="uq_cart_item_user_book"),
        db.CheckConstraint("quantity > 0", name="ck_cart_item_quantity"),
    )
