from datetime import datetime
import json

from campus_market.extensions import db


class GatewayPayment(db.Model):
    __tablename__ = "gateway_payments"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    provider = db.Column(db.String(32), nullable=False, default="squad")
    transaction_ref = db.Column(db.String(80), nullable=False, unique=True, index=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="NGN")
    # wallet_deposit | boost_payment | featured_payment | escrow_payment | checkout_payment
    purpose = db.Column(db.String(32), nullable=False, default="wallet_deposit")
    payment_channel = db.Column(db.String(16), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | successful | failed
    checkout_url = db.Column(db.String(1024), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def metadata_dict(self) -> dict:
        try:
            parsed = json.loads(self.metadata_json or "{}")
            return parsed if isinstance(parsed, dict) else {}
        except Exception:
            return {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "provider": self.provider or "squad",
            "transaction_ref": self.transaction_ref or "",
            "amount": float(self.amount or 0),
            "currency": self.currency or "NGN",
            "purpose": self.purpose or "",
            "payment_channel": self.payment_channel or "",
            "status": self.status or "pending",
            "checkout_url": self.checkout_url or "",
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class GatewayTransfer(db.Model):
    __tablename__ = "gateway_transfers"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    provider = db.Column(db.String(32), nullable=False, default="squad")
    transaction_ref = db.Column(db.String(80), nullable=False, unique=True, index=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    bank_code = db.Column(db.String(16), nullable=False)
    account_number = db.Column(db.String(16), nullable=False)
    account_name = db.Column(db.String(160), nullable=False)
    narration = db.Column(db.String(255), nullable=True)
    # pending | processing | successful | failed | manual_review
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    failure_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "provider": self.provider or "squad",
            "transaction_ref": self.transaction_ref or "",
            "amount": float(self.amount or 0),
            "bank_code": self.bank_code or "",
            "account_number": self.account_number or "",
            "account_name": self.account_name or "",
            "narration": self.narration or "",
            "status": self.status or "pending",
            "failure_reason": self.failure_reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
