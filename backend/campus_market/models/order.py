from datetime import datetime
import json

from campus_market.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(40), nullable=False, unique=True, index=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    negotiation_id = db.Column(db.Integer, db.ForeignKey("negotiations.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=1)

    # Buyer-facing total, snapshotted at creation and never recomputed.
    total_amount = db.Column(db.Numeric(14, 2), nullable=False)

    # Pricing snapshot
    seller_price = db.Column(db.Numeric(14, 2), nullable=False)
    platform_commission = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    payment_fee = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    seller_receives = db.Column(db.Numeric(14, 2), nullable=False)
    commission_rate = db.Column(db.Numeric(6, 4), nullable=False)
    payment_method = db.Column(db.String(32), nullable=False, default="CARD")

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)

    delivery_method = db.Column(db.String(16), nullable=False, default="meetup")  # pickup | delivery | meetup
    delivery_address = db.Column(db.String(500), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def pricing_dict(self) -> dict:
        return {
            "sellerPrice": float(self.seller_price or 0),
            "platformCommission": float(self.platform_commission or 0),
            "paymentFee": float(self.payment_fee or 0),
            "buyerPays": float(self.total_amount or 0),
            "sellerReceives": float(self.seller_receives or 0),
            "commissionRate": float(self.commission_rate or 0),
        }

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_number": self.order_number or "",
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "product_id": int(self.product_id),
            "negotiation_id": int(self.negotiation_id) if self.negotiation_id is not None else None,
            "quantity": int(self.quantity or 1),
            "total_amount": float(self.total_amount or 0),
            "payment_method": self.payment_method or "CARD",
            "pricing": self.pricing_dict(),
            "status": self.status or "pending",
            "delivery_method": self.delivery_method or "meetup",
            "delivery_address": self.delivery_address or "",
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class OrderStatusHistory(db.Model):
    __tablename__ = "order_status_history"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False)
    # NULL means a system actor (webhook, settlement job, admin resolution).
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    actor_type = db.Column(db.String(16), nullable=False, default="user")
    note = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "status": self.status or "",
            "changed_by": int(self.changed_by) if self.changed_by is not None else None,
            "actor_type": self.actor_type or "user",
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OrderOutboxEvent(db.Model):
    __tablename__ = "order_outbox_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    event_type = db.Column(db.String(40), nullable=False)  # order_placed | status_changed
    status = db.Column(db.String(32), nullable=False)
    payload_json = db.Column(db.Text, nullable=True)

    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    dispatched_at = db.Column(db.DateTime, nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def payload(self) -> dict:
        raw = self.payload_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            pass
        return {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "event_type": self.event_type or "",
            "status": self.status or "",
            "payload": self.payload(),
            "attempts": int(self.attempts or 0),
            "last_error": self.last_error or "",
            "dispatched_at": self.dispatched_at.isoformat() if self.dispatched_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
