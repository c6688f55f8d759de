from __future__ import annotations

from datetime import datetime

from flask import current_app

from campus_market.errors import ForbiddenError, NotFoundError, ValidationError
from campus_market.extensions import db
from campus_market.models import Negotiation, Product, User
from campus_market.services.pricing import get_pricing_engine
from campus_market.utils.money import parse_amount


class NegotiationStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"
    CANCELLED = "cancelled"

    ALL = (PENDING, ACCEPTED, REJECTED, COUNTERED, CANCELLED)


def _load(negotiation_id: int) -> Negotiation:
    negotiation = db.session.get(Negotiation, int(negotiation_id))
    if negotiation is None:
        raise NotFoundError("Negotiation not found")
    return negotiation


def _save(negotiation: Negotiation, action: str, user_id: int) -> Negotiation:
    negotiation.updated_at = datetime.utcnow()
    db.session.add(negotiation)
    db.session.commit()
    current_app.logger.info(
        "negotiation_%s negotiation_id=%s by=%s status=%s", action, int(negotiation.id), int(user_id), negotiation.status
    )
    return negotiation


def create_negotiation(buyer_id: int, *, product_id, offer_price, message: str | None = None) -> Negotiation:
    if not product_id:
        raise ValidationError("Product ID is required")
    offer = parse_amount(offer_price, "offerPrice")
    product = db.session.get(Product, int(product_id))
    if product is None:
        raise NotFoundError("Product not found")
    if not product.is_available or product.is_sold:
        raise ValidationError("Product is not available for negotiation")
    if int(product.seller_id) == int(buyer_id):
        raise ValidationError("You cannot make an offer on your own product")
    if offer > product.price:
        raise ValidationError("Offer price cannot be higher than the original price")

    negotiation = Negotiation(
        product_id=int(product.id),
        buyer_id=int(buyer_id),
        seller_id=int(product.seller_id),
        original_price=product.price,
        offer_price=offer,
        message=(message or "").strip() or None,
        status=NegotiationStatus.PENDING,
    )
    db.session.add(negotiation)
    db.session.commit()
    current_app.logger.info(
        "negotiation_created negotiation_id=%s product_id=%s buyer_id=%s offer=%s",
        int(negotiation.id),
        int(product.id),
        int(buyer_id),
        offer,
    )
    return negotiation


def accept_negotiation(negotiation_id: int, user_id: int) -> Negotiation:
    """Seller accepts a pending offer; the buyer accepts a seller's counter."""
    negotiation = _load(negotiation_id)
    uid = int(user_id)
    if negotiation.status == NegotiationStatus.COUNTERED:
        if uid != int(negotiation.buyer_id):
            raise ForbiddenError("Only the buyer can accept a counter offer")
    else:
        if uid != int(negotiation.seller_id):
            raise ForbiddenError("Only the seller can accept an offer")
        if negotiation.status != NegotiationStatus.PENDING:
            raise ValidationError(f"Cannot accept a negotiation with status '{negotiation.status}'")
    negotiation.status = NegotiationStatus.ACCEPTED
    negotiation.accepted_at = datetime.utcnow()
    return _save(negotiation, "accepted", uid)


def reject_negotiation(negotiation_id: int, user_id: int) -> Negotiation:
    negotiation = _load(negotiation_id)
    if int(user_id) != int(negotiation.seller_id):
        raise ForbiddenError("Only the seller can reject an offer")
    if negotiation.status != NegotiationStatus.PENDING:
        raise ValidationError(f"Cannot reject a negotiation with status '{negotiation.status}'")
    negotiation.status = NegotiationStatus.REJECTED
    negotiation.rejected_at = datetime.utcnow()
    return _save(negotiation, "rejected", user_id)


def counter_negotiation(negotiation_id: int, user_id: int, *, counter_price, counter_message: str | None = None) -> Negotiation:
    price = parse_amount(counter_price, "counterPrice")
    negotiation = _load(negotiation_id)
    if int(user_id) != int(negotiation.seller_id):
        raise ForbiddenError("Only the seller can make a counter offer")
    if negotiation.status != NegotiationStatus.PENDING:
        raise ValidationError(f"Cannot counter a negotiation with status '{negotiation.status}'")
    if price < negotiation.offer_price:
        raise ValidationError("Counter price cannot be lower than the buyer's offer")
    if price > negotiation.original_price:
        raise ValidationError("Counter price cannot be higher than the original price")
    negotiation.status = NegotiationStatus.COUNTERED
    negotiation.counter_offer_price = price
    negotiation.seller_message = (counter_message or "").strip() or None
    return _save(negotiation, "countered", user_id)


def cancel_negotiation(negotiation_id: int, user_id: int) -> Negotiation:
    negotiation = _load(negotiation_id)
    if int(user_id) != int(negotiation.buyer_id):
        raise ForbiddenError("Only the buyer can cancel an offer")
    if negotiation.status not in (NegotiationStatus.PENDING, NegotiationStatus.COUNTERED):
        raise ValidationError(f"Cannot cancel a negotiation with status '{negotiation.status}'")
    negotiation.status = NegotiationStatus.CANCELLED
    return _save(negotiation, "cancelled", user_id)


def get_negotiation_for_party(negotiation_id: int, user_id: int) -> Negotiation:
    negotiation = _load(negotiation_id)
    if int(user_id) not in (int(negotiation.buyer_id), int(negotiation.seller_id)):
        raise ForbiddenError("You do not have access to this negotiation")
    return negotiation


def list_received(seller_id: int, status: str | None = None) -> list[Negotiation]:
    q = Negotiation.query.filter_by(seller_id=int(seller_id))
    if status:
        q = q.filter_by(status=status.strip().lower())
    return q.order_by(Negotiation.created_at.desc(), Negotiation.id.desc()).all()


def list_sent(buyer_id: int) -> list[Negotiation]:
    return (
        Negotiation.query.filter_by(buyer_id=int(buyer_id))
        .order_by(Negotiation.created_at.desc(), Negotiation.id.desc())
        .all()
    )


def _party(user: User | None) -> dict | None:
    if user is None:
        return None
    return {"id": int(user.id), "name": user.name or ""}


def negotiation_payload(negotiation: Negotiation, *, detail: bool = False) -> dict:
    """Negotiation with product, parties and the buyer-facing price of the current deal."""
    body = negotiation.to_dict()
    product = db.session.get(Product, int(negotiation.product_id))
    if product is not None:
        summary = {"id": int(product.id), "title": product.title, "price": float(product.price)}
        if detail:
            summary["description"] = product.description or ""
        body["product"] = summary
    else:
        body["product"] = None
    body["buyer"] = _party(db.session.get(User, int(negotiation.buyer_id)))
    body["seller"] = _party(db.session.get(User, int(negotiation.seller_id)))
    body["pricing"] = get_pricing_engine().calculate_negotiation_pricing(negotiation.agreed_price()).to_dict()
    return body
