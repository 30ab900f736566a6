# bookstore/model/book.py
from sqlalchemy.sql import func

from ..extensions import db


class Book(db.Model):
    """Catalog row. Only price, stock and category are read here; stock is
    changed exclusively through conditional SQL updates."""
    __tablename__ = "book"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False, index=True)
    author = db.Column(db.String(255))
    price = db.Column(db.Numeric(12, 2), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    active = db.Column(db.Boolean, nullable=False, default=True)

    category_id = db.Column(db.Integer, db.ForeignKey("category.id"), nullable=False, index=True)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_book_stock_non_negative"),
    )

    def as_api(self):
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "price": str(self.price),
            "stock": self.stock,
            "active": self.active,
            "category_id": self.category_id,
        }
