import unittest

from campus_market.services.order_lifecycle import (
    ALLOWED_TRANSITIONS,
    REQUIRED_ACTOR,
    TRANSITIONS,
    Actor,
    OrderStatus,
    allowed_transitions,
    required_actor,
)


class OrderStateMachineTestCase(unittest.TestCase):
    def test_every_status_has_an_entry(self):
        self.assertEqual(set(ALLOWED_TRANSITIONS.keys()), set(OrderStatus.ALL))

    def test_terminal_states_have_no_exits(self):
        for status in OrderStatus.TERMINAL:
            with self.subTest(status=status):
                self.assertEqual(allowed_transitions(status), frozenset())

    def test_every_non_terminal_state_reaches_somewhere(self):
        for status in set(OrderStatus.ALL) - OrderStatus.TERMINAL:
            with self.subTest(status=status):
                self.assertTrue(allowed_transitions(status))

    def test_pending_only_pays_or_cancels(self):
        self.assertEqual(allowed_transitions("pending"), frozenset({"paid", "cancelled"}))

    def test_delivered_cannot_be_cancelled(self):
        self.assertEqual(allowed_transitions("delivered"), frozenset({"buyer_confirmed", "disputed"}))

    def test_dispute_resolves_to_refund_or_completion(self):
        self.assertEqual(allowed_transitions("disputed"), frozenset({"refunded", "completed"}))

    def test_required_actors(self):
        self.assertEqual(required_actor("paid"), Actor.SYSTEM)
        self.assertEqual(required_actor("completed"), Actor.SYSTEM)
        self.assertEqual(required_actor("refunded"), Actor.SYSTEM)
        self.assertEqual(required_actor("buyer_confirmed"), Actor.BUYER)
        self.assertEqual(required_actor("cancelled"), Actor.BOTH)
        self.assertEqual(required_actor("disputed"), Actor.BOTH)
        for status in ("seller_confirmed", "preparing", "ready_for_pickup", "shipped", "out_for_delivery", "delivered"):
            with self.subTest(status=status):
                self.assertEqual(required_actor(status), Actor.SELLER)

    def test_pending_has_no_required_actor(self):
        self.assertIsNone(required_actor("pending"))

    def test_lookup_is_case_insensitive(self):
        self.assertEqual(allowed_transitions(" PAID "), allowed_transitions("paid"))
        self.assertEqual(allowed_transitions("bogus"), frozenset())

    def test_actor_table_is_consistent_with_transitions(self):
        for t in TRANSITIONS:
            self.assertEqual(REQUIRED_ACTOR[t.to_status], t.actor)

    def test_funded_statuses_are_reachable_from_paid(self):
        seen = set()
        frontier = ["paid"]
        while frontier:
            status = frontier.pop()
            if status in seen:
                continue
            seen.add(status)
            frontier.extend(allowed_transitions(status))
        self.assertTrue(OrderStatus.FUNDED <= seen)
        self.assertNotIn("pending", seen)


if __name__ == "__main__":
    unittest.main()
