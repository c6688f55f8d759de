from datetime import datetime

from campus_market.extensions import db


class Negotiation(db.Model):
    __tablename__ = "negotiations"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    original_price = db.Column(db.Numeric(14, 2), nullable=False)
    offer_price = db.Column(db.Numeric(14, 2), nullable=False)
    counter_offer_price = db.Column(db.Numeric(14, 2), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    message = db.Column(db.Text, nullable=True)
    seller_message = db.Column(db.Text, nullable=True)

    accepted_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def agreed_price(self):
        if self.counter_offer_price is not None:
            return self.counter_offer_price
        return self.offer_price

    def to_dict(self):
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "original_price": float(self.original_price or 0),
            "offer_price": float(self.offer_price or 0),
            "counter_offer_price": float(self.counter_offer_price) if self.counter_offer_price is not None else None,
            "status": self.status or "pending",
            "message": self.message or "",
            "seller_message": self.seller_message or "",
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
