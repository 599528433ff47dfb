#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Tests for webhook reconciliation."""

import asyncio
import json

from absl.testing import absltest
import db
import db_testing
from enums import OrderStatus
from exceptions import InvalidRequestError
from exceptions import WebhookSignatureError
from services import notification_service
from services.cart_service import CartService
from services.download_service import DownloadService
from services.fee_calculator import FeeCalculator
from services.fulfillment_service import FulfillmentService
from services.notification_service import Notifier
from services.order_service import OrderService
from services.payment_gateway import MockGateway
from services.payment_gateway import sign_payload
from services.webhook_processor import WebhookProcessor

_SECRET = "whsec_test"


class RecordingNotifier(Notifier):
  """Notifier that keeps sent events in memory."""

  def __init__(self):
    super().__init__(url=None)
    self.sent = []

  async def notify(self, event_type, order, extra=None):
    self.sent.append((event_type, order.id))
    return True

  def events(self):
    return [event_type for event_type, _ in self.sent]


def _payload(event_id, event_type, **data):
  return json.dumps({"id": event_id, "type": event_type, "data": data}).encode()


class WebhookProcessorTest(db_testing.DatabaseTestCase):

  def setUp(self):
    super().setUp()
    self.gateway = MockGateway(webhook_secret=_SECRET)
    self.notifier = RecordingNotifier()
    self.run_async(
        self.seed_products(db_testing.DESK, db_testing.CHAIR, db_testing.CONSULT)
    )

  async def _handle(self, payload, signature=None):
    if signature is None:
      signature = sign_payload(payload, _SECRET)
    async with self.products_session_factory() as products_session:
      async with self.transactions_session_factory() as session:
        order_service = OrderService(session, FeeCalculator("0.10"))
        fulfillment = FulfillmentService(
            order_service,
            DownloadService(products_session, session),
            self.notifier,
            CartService(products_session, session),
        )
        processor = WebhookProcessor(
            session, self.gateway, order_service, fulfillment, self.notifier
        )
        return await processor.handle(payload, signature)

  async def _ledger(self, event_id):
    async with self.transactions_session_factory() as session:
      return await db.get_payment_event(session, event_id)

  async def _grants(self, order_id):
    async with self.transactions_session_factory() as session:
      return await db.get_grants_for_order(session, order_id)

  def _processing_order(self):
    return self.run_async(
        self.create_order(
            status=OrderStatus.PROCESSING, payment_reference="sess_1"
        )
    )

  def _succeeded(self, event_id="evt_1", amount=27500):
    return _payload(
        event_id,
        "payment_succeeded",
        payment_reference="sess_1",
        amount=amount,
    )

  def test_payment_succeeded_fulfills_order(self):
    self.run_async(
        self.seed_cart("buyer_1", "prod_desk", "prod_chair", "prod_consult")
    )
    order = self._processing_order()

    ack = self.run_async(self._handle(self._succeeded()))

    self.assertEqual(ack.status, "ok")
    self.assertFalse(ack.duplicate)
    self.assertEqual(ack.outcome, "applied")
    reloaded = self.run_async(self.load_order(order.id))
    self.assertEqual(reloaded.status, OrderStatus.COMPLETED.value)
    self.assertIsNotNone(reloaded.paid_at)
    self.assertLen(self.run_async(self._grants(order.id)), 2)
    self.assertEqual(
        self.notifier.events(),
        [notification_service.ORDER_PAID, notification_service.ORDER_COMPLETED],
    )
    ledger = self.run_async(self._ledger("evt_1"))
    self.assertEqual(ledger.outcome, "applied")
    self.assertIsNotNone(ledger.processed_at)

    async def remaining_cart():
      async with self.transactions_session_factory() as session:
        return [c.product_id for c in await db.get_cart_items(session, "buyer_1")]

    # Only the purchased items leave the cart.
    self.assertEqual(self.run_async(remaining_cart()), ["prod_consult"])

  def test_redelivery_is_acknowledged_without_effects(self):
    order = self._processing_order()
    self.run_async(self._handle(self._succeeded()))
    version = self.run_async(self.load_order(order.id)).version

    ack = self.run_async(self._handle(self._succeeded()))

    self.assertTrue(ack.duplicate)
    self.assertEqual(ack.outcome, "duplicate")
    self.assertEqual(self.run_async(self.load_order(order.id)).version, version)
    self.assertLen(self.notifier.sent, 2)

  def test_concurrent_deliveries_apply_once(self):
    order = self._processing_order()

    async def run():
      return await asyncio.gather(
          *(self._handle(self._succeeded()) for _ in range(4))
      )

    acks = self.run_async(run())

    self.assertIn("applied", [ack.outcome for ack in acks])
    reloaded = self.run_async(self.load_order(order.id))
    self.assertEqual(reloaded.status, OrderStatus.COMPLETED.value)
    self.assertEqual(
        sorted(self.notifier.events()),
        [notification_service.ORDER_COMPLETED, notification_service.ORDER_PAID],
    )
    self.assertLen(self.run_async(self._grants(order.id)), 2)
    ledger = self.run_async(self._ledger("evt_1"))
    self.assertEqual(ledger.outcome, "applied")
    self.assertIsNotNone(ledger.processed_at)

  def test_concurrent_deliveries_across_orders(self):
    orders = [
        self.run_async(
            self.create_order(
                status=OrderStatus.PROCESSING, payment_reference=f"sess_{i}"
            )
        )
        for i in range(5)
    ]

    async def run():
      deliveries = []
      for i in range(5):
        payload = _payload(
            f"evt_{i}",
            "payment_succeeded",
            payment_reference=f"sess_{i}",
            amount=27500,
        )
        deliveries.extend(self._handle(payload) for _ in range(4))
      return await asyncio.gather(*deliveries)

    acks = self.run_async(run())

    self.assertLen(acks, 20)
    outcomes = [ack.outcome for ack in acks]
    self.assertEqual(outcomes.count("applied"), 5)
    self.assertNotIn("anomaly", outcomes)
    for i, order in enumerate(orders):
      reloaded = self.run_async(self.load_order(order.id))
      self.assertEqual(reloaded.status, OrderStatus.COMPLETED.value)
      self.assertLen(self.run_async(self._grants(order.id)), 2)
      ledger = self.run_async(self._ledger(f"evt_{i}"))
      self.assertEqual(ledger.outcome, "applied")
    self.assertLen(self.notifier.sent, 10)

  def test_stamped_outcome_is_not_overwritten(self):
    order = self._processing_order()
    self.run_async(self._handle(self._succeeded()))
    stamped_at = self.run_async(self._ledger("evt_1")).processed_at

    async def restamp():
      async with self.transactions_session_factory() as session:
        stamped = await db.mark_payment_event_processed(
            session, "evt_1", "ignored", "late"
        )
        await session.commit()
        return stamped

    self.assertFalse(self.run_async(restamp()))
    ledger = self.run_async(self._ledger("evt_1"))
    self.assertEqual(ledger.outcome, "applied")
    self.assertEqual(ledger.processed_at, stamped_at)
    self.assertIsNone(ledger.detail)
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.COMPLETED.value,
    )

  def test_ignored_outcome_gives_way_to_applied(self):
    async def stamp(outcome):
      async with self.transactions_session_factory() as session:
        stamped = await db.mark_payment_event_processed(
            session, "evt_1", outcome
        )
        await session.commit()
        return stamped

    async def record():
      async with self.transactions_session_factory() as session:
        await db.insert_payment_event(
            session, "evt_1", "payment_succeeded", "sess_1"
        )
        await session.commit()

    self.run_async(record())
    self.assertTrue(self.run_async(stamp("ignored")))
    stamped_at = self.run_async(self._ledger("evt_1")).processed_at

    self.assertTrue(self.run_async(stamp("applied")))
    self.assertFalse(self.run_async(stamp("applied")))
    ledger = self.run_async(self._ledger("evt_1"))
    self.assertEqual(ledger.outcome, "applied")
    self.assertEqual(ledger.processed_at, stamped_at)

  def test_distinct_events_for_same_payment_apply_once(self):
    order = self._processing_order()
    self.run_async(self._handle(self._succeeded("evt_1")))

    ack = self.run_async(self._handle(self._succeeded("evt_2")))

    self.assertFalse(ack.duplicate)
    self.assertEqual(ack.outcome, "ignored")
    self.assertLen(self.notifier.sent, 2)
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.COMPLETED.value,
    )

  def test_success_before_session_event_attaches_reference(self):
    order = self.run_async(self.create_order())
    payload = _payload(
        "evt_early",
        "payment_succeeded",
        order_id=order.id,
        payment_reference="sess_early",
        amount=27500,
    )

    ack = self.run_async(self._handle(payload))

    self.assertEqual(ack.outcome, "applied")
    reloaded = self.run_async(self.load_order(order.id))
    self.assertEqual(reloaded.status, OrderStatus.COMPLETED.value)
    self.assertEqual(reloaded.payment_reference, "sess_early")

  def test_success_on_refunded_order_is_an_anomaly(self):
    order = self.run_async(
        self.create_order(status=OrderStatus.REFUNDED, payment_reference="sess_1")
    )

    ack = self.run_async(self._handle(self._succeeded()))

    self.assertEqual(ack.outcome, "anomaly")
    reloaded = self.run_async(self.load_order(order.id))
    self.assertEqual(reloaded.status, OrderStatus.REFUNDED.value)
    self.assertIsNone(reloaded.paid_at)
    self.assertEqual(self.notifier.sent, [])
    ledger = self.run_async(self._ledger("evt_1"))
    self.assertEqual(ledger.outcome, "anomaly")
    self.assertIn("REFUNDED", ledger.detail)

  def test_success_on_cancelled_order_is_an_anomaly(self):
    order = self.run_async(
        self.create_order(
            status=OrderStatus.CANCELLED, payment_reference="sess_1"
        )
    )
    ack = self.run_async(self._handle(self._succeeded()))
    self.assertEqual(ack.outcome, "anomaly")
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.CANCELLED.value,
    )

  def test_wrong_amount_is_an_anomaly(self):
    order = self._processing_order()
    ack = self.run_async(self._handle(self._succeeded(amount=100)))
    self.assertEqual(ack.outcome, "anomaly")
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.PROCESSING.value,
    )

  def test_unknown_order_is_an_anomaly(self):
    payload = _payload(
        "evt_x", "payment_succeeded", payment_reference="sess_nope", amount=1
    )
    ack = self.run_async(self._handle(payload))
    self.assertEqual(ack.outcome, "anomaly")

  def test_unprocessed_ledger_entry_is_reprocessed(self):
    order = self._processing_order()

    async def crash_after_insert():
      async with self.transactions_session_factory() as session:
        await db.insert_payment_event(
            session, "evt_1", "payment_succeeded", "sess_1"
        )
        await session.commit()

    self.run_async(crash_after_insert())

    ack = self.run_async(self._handle(self._succeeded()))

    self.assertFalse(ack.duplicate)
    self.assertEqual(ack.outcome, "applied")
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.COMPLETED.value,
    )

  def test_bad_signature_is_rejected_before_recording(self):
    payload = self._succeeded()
    with self.assertRaises(WebhookSignatureError):
      self.run_async(self._handle(payload, signature="deadbeef"))
    self.assertIsNone(self.run_async(self._ledger("evt_1")))

  def test_malformed_body_is_rejected(self):
    payload = b"not json"
    with self.assertRaises(InvalidRequestError):
      self.run_async(self._handle(payload))

  def test_unhandled_event_type_is_ignored(self):
    ack = self.run_async(self._handle(_payload("evt_u", "customer.updated")))
    self.assertEqual(ack.outcome, "ignored")
    ledger = self.run_async(self._ledger("evt_u"))
    self.assertIsNotNone(ledger.processed_at)

  def test_session_expired_cancels_order(self):
    order = self._processing_order()
    ack = self.run_async(
        self._handle(
            _payload("evt_exp", "session_expired", payment_reference="sess_1")
        )
    )
    self.assertEqual(ack.outcome, "applied")
    reloaded = self.run_async(self.load_order(order.id))
    self.assertEqual(reloaded.status, OrderStatus.CANCELLED.value)
    self.assertEqual(reloaded.cancellation_reason, "session_expired")
    self.assertEqual(
        self.notifier.events(), [notification_service.ORDER_CANCELLED]
    )

  def test_refund_revokes_downloads(self):
    order = self._processing_order()
    self.run_async(self._handle(self._succeeded()))

    ack = self.run_async(
        self._handle(
            _payload("evt_ref", "payment_refunded", payment_reference="sess_1")
        )
    )

    self.assertEqual(ack.outcome, "applied")
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.REFUNDED.value,
    )
    grants = self.run_async(self._grants(order.id))
    self.assertTrue(grants)
    self.assertFalse(any(g.is_active for g in grants))
    self.assertEqual(
        self.notifier.events()[-1], notification_service.ORDER_REFUNDED
    )

  def test_dispute_lifecycle(self):
    order = self._processing_order()
    self.run_async(self._handle(self._succeeded()))

    ack = self.run_async(
        self._handle(
            _payload(
                "evt_d1",
                "dispute_opened",
                order_id=order.id,
                reason="fraudulent",
            )
        )
    )
    self.assertEqual(ack.outcome, "applied")
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.DISPUTED.value,
    )

    ack = self.run_async(
        self._handle(_payload("evt_d2", "dispute_won", order_id=order.id))
    )
    self.assertEqual(ack.outcome, "applied")
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.COMPLETED.value,
    )
    # A won dispute keeps the downloads.
    self.assertTrue(
        all(g.is_active for g in self.run_async(self._grants(order.id)))
    )

  def test_lost_dispute_refunds_and_revokes(self):
    order = self._processing_order()
    self.run_async(self._handle(self._succeeded()))
    self.run_async(
        self._handle(_payload("evt_d1", "dispute_opened", order_id=order.id))
    )

    ack = self.run_async(
        self._handle(_payload("evt_d2", "dispute_lost", order_id=order.id))
    )

    self.assertEqual(ack.outcome, "applied")
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.REFUNDED.value,
    )
    self.assertFalse(
        any(g.is_active for g in self.run_async(self._grants(order.id)))
    )

  def test_payment_failed_only_notifies(self):
    order = self._processing_order()
    ack = self.run_async(
        self._handle(
            _payload(
                "evt_f",
                "payment_failed",
                payment_reference="sess_1",
                reason="insufficient funds",
            )
        )
    )
    self.assertEqual(ack.outcome, "applied")
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.PROCESSING.value,
    )
    self.assertEqual(
        self.notifier.events(), [notification_service.PAYMENT_FAILED]
    )

  def test_payment_failed_notifies_once_across_deliveries(self):
    self._processing_order()
    payload = _payload(
        "evt_f", "payment_failed", payment_reference="sess_1", reason="expired"
    )

    async def run():
      return await asyncio.gather(*(self._handle(payload) for _ in range(4)))

    self.run_async(run())
    self.run_async(self._handle(payload))

    self.assertEqual(
        self.notifier.events(), [notification_service.PAYMENT_FAILED]
    )
    self.assertEqual(self.run_async(self._ledger("evt_f")).outcome, "applied")

  def test_unprocessed_failure_is_notified_when_reprocessed(self):
    self._processing_order()

    async def crash_after_insert():
      async with self.transactions_session_factory() as session:
        await db.insert_payment_event(
            session, "evt_f", "payment_failed", "sess_1"
        )
        await session.commit()

    self.run_async(crash_after_insert())
    self.run_async(
        self._handle(
            _payload("evt_f", "payment_failed", payment_reference="sess_1")
        )
    )

    self.assertEqual(
        self.notifier.events(), [notification_service.PAYMENT_FAILED]
    )

  def test_non_integer_amount_is_rejected(self):
    self._processing_order()
    payload = _payload(
        "evt_bad",
        "payment_succeeded",
        payment_reference="sess_1",
        amount="275.00",
    )
    with self.assertRaises(InvalidRequestError):
      self.run_async(self._handle(payload))
    self.assertIsNone(self.run_async(self._ledger("evt_bad")))


if __name__ == "__main__":
  absltest.main()
