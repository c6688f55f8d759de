from __future__ import annotations

import os
import time
import unittest
from decimal import Decimal

from campus_market import create_app
from campus_market.extensions import db
from campus_market.integrations.payments.mock_provider import MockPaymentsProvider
from campus_market.jobs.order_settlement_runner import run_order_settlement
from campus_market.models import Order, Product, User, Wallet
from campus_market.services.order_lifecycle import OrderStatus, allowed_transitions
from campus_market.services.pricing import PricingConfig, PricingEngine
from campus_market.services.reconciliation_service import recompute_wallet_balances
from campus_market.utils.jwt_utils import create_token


class OrdersApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.app.extensions["payments_provider"] = MockPaymentsProvider()
        with cls.app.app_context():
            db.create_all()
            stamp = int(time.time() * 1000)
            seller = User(name="Seller", email=f"seller-{stamp}@campus.test")
            seller.set_password("Passw0rd!")
            buyer = User(name="Buyer", email=f"buyer-{stamp}@campus.test")
            buyer.set_password("Passw0rd!")
            outsider = User(name="Outsider", email=f"outsider-{stamp}@campus.test")
            outsider.set_password("Passw0rd!")
            db.session.add_all([seller, buyer, outsider])
            db.session.commit()
            product = Product(seller_id=int(seller.id), title="Reading lamp", price=Decimal("10000"))
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

    def _create_order(self) -> dict:
        res = self.client.post(
            "/api/orders",
            json={"productId": self.product_id, "paymentMethod": "BANK_TRANSFER"},
            headers=self._headers(self.buyer_id),
        )
        self.assertEqual(res.status_code, 201)
        return res.get_json()["order"]

    def _pay(self, order_id: int) -> None:
        res = self.client.post(
            "/api/squad/initialize",
            json={"purpose": "escrow_payment", "orderId": order_id},
            headers=self._headers(self.buyer_id),
        )
        self.assertEqual(res.status_code, 200)
        reference = res.get_json()["reference"]
        res = self.client.get(f"/api/squad/verify/{reference}", headers=self._headers(self.buyer_id))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["paymentStatus"], "successful")

    def _set_status(self, order_id: int, user_id: int, status: str):
        return self.client.put(
            f"/api/orders/{order_id}/status",
            json={"status": status},
            headers=self._headers(user_id),
        )

    def _wallet(self, user_id: int) -> Wallet:
        with self.app.app_context():
            wallet = Wallet.query.filter_by(user_id=int(user_id)).first()
            if wallet is not None:
                db.session.expunge(wallet)
            return wallet

    def test_create_order_snapshots_pricing(self):
        order = self._create_order()
        self.assertEqual(order["status"], "pending")
        self.assertAlmostEqual(order["total_amount"], 11100.0)
        self.assertAlmostEqual(order["pricing"]["sellerReceives"], 9000.0)
        self.assertEqual(order["allowed_transitions"], ["cancelled", "paid"])
        self.assertEqual(order["product"]["title"], "Reading lamp")

    def test_create_order_requires_product(self):
        res = self.client.post("/api/orders", json={}, headers=self._headers(self.buyer_id))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["message"], "Product ID is required")

    def test_seller_cannot_buy_own_product(self):
        res = self.client.post("/api/orders", json={"productId": self.product_id}, headers=self._headers(self.seller_id))
        self.assertEqual(res.status_code, 400)

    def test_paid_is_refused_on_user_path(self):
        order = self._create_order()
        res = self._set_status(order["id"], self.buyer_id, "paid")
        self.assertEqual(res.status_code, 403)

    def test_outsider_cannot_view_or_update(self):
        order = self._create_order()
        res = self.client.get(f"/api/orders/{order['id']}", headers=self._headers(self.outsider_id))
        self.assertEqual(res.status_code, 403)
        res = self.client.get(f"/api/orders/{order['id']}/history", headers=self._headers(self.outsider_id))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["message"], "You don't have permission to view this order history")
        res = self._set_status(order["id"], self.outsider_id, "cancelled")
        self.assertEqual(res.status_code, 403)

    def test_illegal_transition_lists_allowed_targets(self):
        order = self._create_order()
        res = self._set_status(order["id"], self.seller_id, "shipped")
        self.assertEqual(res.status_code, 400)
        body = res.get_json()
        self.assertEqual(body["error"], "InvalidTransition")
        self.assertEqual(body["allowedTransitions"], ["cancelled", "paid"])

        res = self._set_status(order["id"], self.buyer_id, "shipped")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "InvalidTransition")

    def test_full_escrow_flow_to_settlement(self):
        order = self._create_order()
        order_id = int(order["id"])
        self._pay(order_id)

        res = self.client.get(f"/api/orders/{order_id}", headers=self._headers(self.seller_id))
        self.assertEqual(res.get_json()["order"]["status"], "paid")
        seller_wallet = self._wallet(self.seller_id)
        escrow_before = Decimal(str(seller_wallet.escrow_balance))
        balance_before = Decimal(str(seller_wallet.balance))

        self.assertEqual(self._set_status(order_id, self.buyer_id, "seller_confirmed").status_code, 403)
        for status in ("seller_confirmed", "preparing", "shipped", "delivered"):
            res = self._set_status(order_id, self.seller_id, status)
            self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(self._set_status(order_id, self.seller_id, "buyer_confirmed").status_code, 403)
        self.assertEqual(self._set_status(order_id, self.buyer_id, "completed").status_code, 400)
        self.assertEqual(self._set_status(order_id, self.buyer_id, "buyer_confirmed").status_code, 200)
        res = self._set_status(order_id, self.seller_id, "completed")
        self.assertEqual(res.status_code, 403)

        res = self.client.get(f"/api/orders/{order_id}/history", headers=self._headers(self.buyer_id))
        statuses = [row["status"] for row in res.get_json()["history"]]
        self.assertEqual(
            statuses,
            ["pending", "paid", "seller_confirmed", "preparing", "shipped", "delivered", "buyer_confirmed"],
        )

        with self.app.app_context():
            result = run_order_settlement()
            self.assertGreaterEqual(result["completed"], 1)
            self.assertEqual(db.session.get(Order, order_id).status, "completed")

        seller_wallet = self._wallet(self.seller_id)
        self.assertEqual(Decimal(str(seller_wallet.escrow_balance)), escrow_before - Decimal("9000"))
        self.assertEqual(Decimal(str(seller_wallet.balance)), balance_before + Decimal("9000"))

        res = self._set_status(order_id, self.buyer_id, "disputed")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["allowedTransitions"], [])

        with self.app.app_context():
            summary = recompute_wallet_balances()
            self.assertEqual(summary["drift_count"], 0, summary["drift_items"])

    def test_cancel_after_payment_refunds_buyer(self):
        order = self._create_order()
        order_id = int(order["id"])
        self._pay(order_id)
        buyer_before = self._wallet(self.buyer_id)
        buyer_balance = Decimal(str(buyer_before.balance)) if buyer_before is not None else Decimal("0")

        res = self._set_status(order_id, self.buyer_id, "cancelled")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "cancelled")

        buyer_after = self._wallet(self.buyer_id)
        self.assertEqual(Decimal(str(buyer_after.balance)), buyer_balance + Decimal("11100"))

        with self.app.app_context():
            summary = recompute_wallet_balances()
            self.assertEqual(summary["drift_count"], 0, summary["drift_items"])

    def test_admin_resolves_dispute_with_refund(self):
        order = self._create_order()
        order_id = int(order["id"])
        self._pay(order_id)
        self.assertEqual(self._set_status(order_id, self.buyer_id, "disputed").status_code, 200)

        res = self.client.post(
            f"/api/admin/orders/{order_id}/resolve",
            json={"outcome": "refunded"},
            headers=self._headers(self.buyer_id),
        )
        self.assertEqual(res.status_code, 403)

        with self.app.app_context():
            admin = User(name="Admin", email=f"admin-{int(time.time() * 1000)}@campus.test", role="admin")
            admin.set_password("Passw0rd!")
            db.session.add(admin)
            db.session.commit()
            admin_id = int(admin.id)

        res = self.client.post(
            f"/api/admin/orders/{order_id}/resolve",
            json={"outcome": "refunded"},
            headers=self._headers(admin_id),
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["order"]["status"], "refunded")

    def test_unknown_status_on_missing_order_is_404(self):
        res = self._set_status(987654, self.buyer_id, "teleported")
        self.assertEqual(res.status_code, 404)

    def test_every_illegal_pair_is_refused_by_the_endpoint(self):
        order = self._create_order()
        order_id = int(order["id"])
        try:
            for current in OrderStatus.ALL:
                with self.app.app_context():
                    db.session.get(Order, order_id).status = current
                    db.session.commit()
                allowed = set(allowed_transitions(current))
                for target in OrderStatus.ALL:
                    if target in allowed:
                        continue
                    for user_id in (self.buyer_id, self.seller_id):
                        res = self._set_status(order_id, user_id, target)
                        self.assertEqual(res.status_code, 400, (current, target, res.get_json()))
                        self.assertEqual(res.get_json()["error"], "InvalidTransition")
        finally:
            # Parked outside the funded states so escrow reconciliation ignores it.
            with self.app.app_context():
                db.session.get(Order, order_id).status = OrderStatus.CANCELLED
                db.session.commit()

    def test_commission_change_keeps_order_snapshot(self):
        order = self._create_order()
        original = self.app.extensions["pricing_engine"]
        self.app.extensions["pricing_engine"] = PricingEngine(PricingConfig(commission_rate=Decimal("0.25")))
        try:
            res = self.client.get(f"/api/orders/{order['id']}", headers=self._headers(self.buyer_id))
            snapshot = res.get_json()["order"]
            self.assertAlmostEqual(snapshot["total_amount"], 11100.0)
            self.assertAlmostEqual(snapshot["pricing"]["sellerReceives"], 9000.0)
            self.assertAlmostEqual(snapshot["pricing"]["platformCommission"], 1000.0)
            self.assertAlmostEqual(snapshot["pricing"]["commissionRate"], 0.10)
        finally:
            self.app.extensions["pricing_engine"] = original

    def test_full_commission_order_can_be_paid_and_refunded(self):
        original = self.app.extensions["pricing_engine"]
        self.app.extensions["pricing_engine"] = PricingEngine(PricingConfig(commission_rate=Decimal("1")))
        try:
            order = self._create_order()
        finally:
            self.app.extensions["pricing_engine"] = original
        order_id = int(order["id"])
        self.assertAlmostEqual(order["pricing"]["sellerReceives"], 0.0)
        self.assertAlmostEqual(order["total_amount"], 20100.0)

        seller_wallet = self._wallet(self.seller_id)
        escrow_before = Decimal(str(seller_wallet.escrow_balance)) if seller_wallet is not None else Decimal("0")
        self._pay(order_id)
        res = self.client.get(f"/api/orders/{order_id}", headers=self._headers(self.buyer_id))
        self.assertEqual(res.get_json()["order"]["status"], "paid")
        seller_wallet = self._wallet(self.seller_id)
        escrow_after = Decimal(str(seller_wallet.escrow_balance)) if seller_wallet is not None else Decimal("0")
        self.assertEqual(escrow_after, escrow_before)

        buyer_wallet = self._wallet(self.buyer_id)
        buyer_balance = Decimal(str(buyer_wallet.balance)) if buyer_wallet is not None else Decimal("0")
        res = self._set_status(order_id, self.buyer_id, "cancelled")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(Decimal(str(self._wallet(self.buyer_id).balance)), buyer_balance + Decimal("20100"))

        with self.app.app_context():
            summary = recompute_wallet_balances()
            self.assertEqual(summary["drift_count"], 0, summary["drift_items"])

    def test_buyer_and_seller_lists(self):
        order = self._create_order()
        res = self.client.get("/api/orders/buyer", headers=self._headers(self.buyer_id))
        self.assertIn(order["id"], [o["id"] for o in res.get_json()["orders"]])
        res = self.client.get("/api/orders/seller", headers=self._headers(self.seller_id))
        self.assertIn(order["id"], [o["id"] for o in res.get_json()["orders"]])
        res = self.client.get("/api/orders/buyer", headers=self._headers(self.outsider_id))
        self.assertEqual(res.get_json()["orders"], [])

    def test_requires_authentication(self):
        res = self.client.get("/api/orders/buyer")
        self.assertEqual(res.status_code, 401)


if __name__ == "__main__":
    unittest.main()
