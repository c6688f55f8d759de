from datetime import datetime

from campus_market.extensions import db


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    # Seller's desired proceeds; buyer-facing totals are derived by the pricing engine.
    price = db.Column(db.Numeric(14, 2), nullable=False)

    is_available = db.Column(db.Boolean, nullable=False, default=True)
    is_sold = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "title": self.title or "",
            "description": self.description or "",
            "price": float(self.price or 0),
            "is_available": bool(self.is_available),
            "is_sold": bool(self.is_sold),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
