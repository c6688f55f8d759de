from datetime import datetime

from campus_market.extensions import db


class Wallet(db.Model):
    __tablename__ = "wallets"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    escrow_balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "balance": float(self.balance or 0),
            "escrow_balance": float(self.escrow_balance or 0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Transaction(db.Model):
    __tablename__ = "transactions"

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False, index=True)

    # deposit | withdrawal | sale | purchase | refund | escrow_hold | escrow_release |
    # escrow_refund | referral_bonus | welcome_bonus
    type = db.Column(db.String(32), nullable=False, index=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | completed | failed
    description = db.Column(db.String(255), nullable=True)

    reference_id = db.Column(db.String(64), nullable=True, index=True)
    external_reference = db.Column(db.String(128), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "wallet_id": int(self.wallet_id),
            "type": self.type or "",
            "amount": float(self.amount or 0),
            "status": self.status or "pending",
            "description": self.description or "",
            "reference_id": self.reference_id or "",
            "external_reference": self.external_reference or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
