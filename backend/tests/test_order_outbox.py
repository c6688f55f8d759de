from __future__ import annotations

import os
import smtplib
import time
import unittest
from decimal import Decimal
from unittest import mock

from campus_market import create_app
from campus_market.extensions import db
from campus_market.jobs.outbox_runner import run_outbox_flush
from campus_market.models import Notification, OrderOutboxEvent, Product, User
from campus_market.services.order_lifecycle import transition_order
from campus_market.services.order_service import create_order


class OrderOutboxTestCase(unittest.TestCase):
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
            seller = User(name="Seller", email=f"outbox-seller-{stamp}@campus.test")
            seller.set_password("Passw0rd!")
            buyer = User(name="Buyer", email=f"outbox-buyer-{stamp}@campus.test")
            buyer.set_password("Passw0rd!")
            db.session.add_all([seller, buyer])
            db.session.commit()
            product = Product(seller_id=int(seller.id), title="Bicycle", price=Decimal("25000"))
            db.session.add(product)
            db.session.commit()
            cls.seller_id = int(seller.id)
            cls.buyer_id = int(buyer.id)
            cls.seller_email = seller.email
            cls.buyer_email = buyer.email
            cls.product_id = int(product.id)

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

    def test_order_placed_notifies_seller_inline(self):
        with self.app.app_context():
            order = create_order(buyer_id=self.buyer_id, product_id=self.product_id)
            event = OrderOutboxEvent.query.filter_by(order_id=int(order.id), event_type="order_placed").first()
            self.assertIsNotNone(event.dispatched_at)
            self.assertEqual(int(event.attempts), 1)
            note = (
                Notification.query.filter_by(user_id=self.seller_id)
                .filter(Notification.message.contains(order.order_number))
                .first()
            )
            self.assertIsNotNone(note)
            self.assertEqual(note.title, "New Order Received!")

    def test_failed_delivery_is_recorded_and_flushed_later(self):
        with self.app.app_context():
            with mock.patch(
                "campus_market.services.order_events._deliver", side_effect=RuntimeError("smtp down")
            ):
                order = create_order(buyer_id=self.buyer_id, product_id=self.product_id)
            event = OrderOutboxEvent.query.filter_by(order_id=int(order.id)).first()
            self.assertIsNone(event.dispatched_at)
            self.assertIn("smtp down", event.last_error)
            event_id = int(event.id)

            result = run_outbox_flush()
            self.assertGreaterEqual(result["delivered"], 1)
            self.assertEqual(result["failed"], 0)
            db.session.expire_all()
            self.assertIsNotNone(db.session.get(OrderOutboxEvent, event_id).dispatched_at)

    def test_refused_seller_email_does_not_resend_buyer_email(self):
        sent = []

        def fake_send(to, **fields):
            sent.append(to)
            if to == self.seller_email:
                raise smtplib.SMTPRecipientsRefused({to: (550, b"mailbox unavailable")})
            return True

        with self.app.app_context():
            with mock.patch("campus_market.services.order_events.send_order_email", side_effect=fake_send):
                order = create_order(buyer_id=self.buyer_id, product_id=self.product_id)
                transition_order(int(order.id), self.buyer_id, "cancelled")
                for _ in range(4):
                    run_outbox_flush()

            self.assertEqual(sent.count(self.buyer_email), 1)
            self.assertEqual(sent.count(self.seller_email), 1)
            event = OrderOutboxEvent.query.filter_by(order_id=int(order.id), event_type="status_changed").first()
            self.assertIsNotNone(event.dispatched_at)
            self.assertIsNone(event.last_error)


if __name__ == "__main__":
    unittest.main()
