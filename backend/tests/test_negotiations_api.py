from __future__ import annotations

import os
import time
import unittest
from decimal import Decimal

from campus_market import create_app
from campus_market.extensions import db
from campus_market.models import Product, User
from campus_market.utils.jwt_utils import create_token


class NegotiationsApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
            stamp = int(time.time() * 1000)
            seller = User(name="Seller", email=f"neg-seller-{stamp}@campus.test")
            seller.set_password("Passw0rd!")
            buyer = User(name="Buyer", email=f"neg-buyer-{stamp}@campus.test")
            buyer.set_password("Passw0rd!")
            outsider = User(name="Outsider", email=f"neg-outsider-{stamp}@campus.test")
            outsider.set_password("Passw0rd!")
            db.session.add_all([seller, buyer, outsider])
            db.session.commit()
            product = Product(seller_id=int(seller.id), title="Mini fridge", price=Decimal("10000"))
            db.session.add(product)
            db.session.commit()
            cls.seller_id = int(seller.id)
            cls.buyer_id = int(buyer.id)
            cls.outsider_id = int(outsider.id)
            cls.product_id = int(product.id)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_db_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = cls._prev_db_url

    def _headers(self, user_id: int) -> dict:
        return {"Authorization": f"Bearer {create_token(int(user_id))}"}

    def _offer(self, price) -> dict:
        res = self.client.post(
            "/api/negotiations",
            json={"productId": self.product_id, "offerPrice": price, "message": "Would you take this?"},
            headers=self._headers(self.buyer_id),
        )
        self.assertEqual(res.status_code, 201, res.get_json())
        self.assertEqual(res.get_json()["message"], "Offer sent successfully")
        return res.get_json()["negotiation"]

    def _post(self, negotiation_id: int, action: str, user_id: int, body: dict | None = None):
        return self.client.post(
            f"/api/negotiations/{negotiation_id}/{action}",
            json=body or {},
            headers=self._headers(user_id),
        )

    def test_offer_cannot_exceed_original_price(self):
        res = self.client.post(
            "/api/negotiations",
            json={"productId": self.product_id, "offerPrice": 12000},
            headers=self._headers(self.buyer_id),
        )
        self.assertEqual(res.status_code, 400)

    def test_seller_cannot_offer_on_own_product(self):
        res = self.client.post(
            "/api/negotiations",
            json={"productId": self.product_id, "offerPrice": 9000},
            headers=self._headers(self.seller_id),
        )
        self.assertEqual(res.status_code, 400)

    def test_offer_carries_buyer_facing_pricing(self):
        negotiation = self._offer(8000)
        self.assertEqual(negotiation["status"], "pending")
        self.assertAlmostEqual(negotiation["pricing"]["sellerPrice"], 8000.0)
        self.assertAlmostEqual(negotiation["pricing"]["platformCommission"], 800.0)
        self.assertEqual(negotiation["product"]["title"], "Mini fridge")

    def test_seller_accepts_pending_offer(self):
        negotiation = self._offer(8000)
        self.assertEqual(self._post(negotiation["id"], "accept", self.buyer_id).status_code, 403)
        res = self._post(negotiation["id"], "accept", self.seller_id)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["negotiation"]["status"], "accepted")
        self.assertEqual(self._post(negotiation["id"], "reject", self.seller_id).status_code, 400)

    def test_counter_then_buyer_accepts(self):
        negotiation = self._offer(7000)
        res = self._post(negotiation["id"], "counter", self.seller_id, {"counterPrice": 6500})
        self.assertEqual(res.status_code, 400)
        res = self._post(negotiation["id"], "counter", self.seller_id, {"counterPrice": 11000})
        self.assertEqual(res.status_code, 400)
        res = self._post(negotiation["id"], "counter", self.seller_id, {"counterPrice": 9000, "message": "Meet me halfway"})
        self.assertEqual(res.status_code, 200)
        body = res.get_json()["negotiation"]
        self.assertEqual(body["status"], "countered")
        self.assertAlmostEqual(body["pricing"]["sellerPrice"], 9000.0)

        self.assertEqual(self._post(negotiation["id"], "accept", self.seller_id).status_code, 403)
        res = self._post(negotiation["id"], "accept", self.buyer_id)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["negotiation"]["status"], "accepted")

    def test_buyer_can_cancel_counter(self):
        negotiation = self._offer(7000)
        self._post(negotiation["id"], "counter", self.seller_id, {"counterPrice": 9500})
        self.assertEqual(self._post(negotiation["id"], "cancel", self.seller_id).status_code, 403)
        res = self._post(negotiation["id"], "cancel", self.buyer_id)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["negotiation"]["status"], "cancelled")

    def test_reject_is_seller_only(self):
        negotiation = self._offer(5000)
        self.assertEqual(self._post(negotiation["id"], "reject", self.buyer_id).status_code, 403)
        res = self._post(negotiation["id"], "reject", self.seller_id)
        self.assertEqual(res.get_json()["negotiation"]["status"], "rejected")

    def test_lists_and_detail(self):
        negotiation = self._offer(6000)
        res = self.client.get("/api/negotiations/received?status=pending", headers=self._headers(self.seller_id))
        self.assertIn(negotiation["id"], [n["id"] for n in res.get_json()["negotiations"]])
        res = self.client.get("/api/negotiations/received?status=bogus", headers=self._headers(self.seller_id))
        self.assertEqual(res.status_code, 400)
        res = self.client.get("/api/negotiations/sent", headers=self._headers(self.buyer_id))
        self.assertIn(negotiation["id"], [n["id"] for n in res.get_json()["negotiations"]])
        res = self.client.get(f"/api/negotiations/{negotiation['id']}", headers=self._headers(self.outsider_id))
        self.assertEqual(res.status_code, 403)
        res = self.client.get(f"/api/negotiations/{negotiation['id']}", headers=self._headers(self.buyer_id))
        self.assertEqual(res.get_json()["negotiation"]["product"]["description"], "")

    def test_order_uses_accepted_price(self):
        negotiation = self._offer(8000)
        self._post(negotiation["id"], "accept", self.seller_id)
        res = self.client.post(
            "/api/orders",
            json={"productId": self.product_id, "negotiationId": negotiation["id"], "paymentMethod": "BANK_TRANSFER"},
            headers=self._headers(self.buyer_id),
        )
        self.assertEqual(res.status_code, 201, res.get_json())
        order = res.get_json()["order"]
        self.assertEqual(order["negotiation_id"], negotiation["id"])
        self.assertAlmostEqual(order["total_amount"], 8880.0)

    def test_order_ignores_unaccepted_negotiation(self):
        negotiation = self._offer(8000)
        res = self.client.post(
            "/api/orders",
            json={"productId": self.product_id, "negotiationId": negotiation["id"], "paymentMethod": "BANK_TRANSFER"},
            headers=self._headers(self.buyer_id),
        )
        order = res.get_json()["order"]
        self.assertIsNone(order["negotiation_id"])
        self.assertAlmostEqual(order["total_amount"], 11100.0)


if __name__ == "__main__":
    unittest.main()
