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

"""Tests for checkout, capture and cancellation."""

import asyncio

from absl.testing import absltest
import db
import db_testing
from enums import OrderStatus
from exceptions import EmptyCartError
from exceptions import GatewayTimeoutError
from exceptions import IdempotencyConflictError
from exceptions import InvalidTransitionError
from exceptions import PaymentDeclinedError
from exceptions import PaymentSessionExpiredError
from models import CheckoutRequest
from models import CheckoutResponse
from services import notification_service
from services.cart_service import CartService
from services.checkout_service import CheckoutService
from services.download_service import DownloadService
from services.fee_calculator import FeeCalculator
from services.fulfillment_service import FulfillmentService
from services.notification_service import Notifier
from services.order_service import OrderService
from services.payment_gateway import MockGateway


class RecordingNotifier(Notifier):

  def __init__(self):
    super().__init__(url=None)
    self.events = []

  async def notify(self, event_type, order, extra=None):
    self.events.append(event_type)
    return True


class CheckoutServiceTest(db_testing.DatabaseTestCase):

  def setUp(self):
    super().setUp()
    self.gateway = MockGateway()
    self.notifier = RecordingNotifier()
    self.run_async(self.seed_products())
    self.run_async(self.seed_cart("buyer_1", "prod_desk", "prod_chair"))

  async def _call(self, method, *args, gateway=None, **kwargs):
    async with self.products_session_factory() as products_session:
      async with self.transactions_session_factory() as session:
        cart_service = CartService(products_session, session)
        order_service = OrderService(session, FeeCalculator("0.10"))
        fulfillment = FulfillmentService(
            order_service,
            DownloadService(products_session, session),
            self.notifier,
            cart_service,
        )
        service = CheckoutService(
            session,
            cart_service,
            order_service,
            fulfillment,
            gateway or self.gateway,
            self.notifier,
        )
        return await getattr(service, method)(*args, **kwargs)

  async def _orders(self):
    async with self.transactions_session_factory() as session:
      return await db.list_orders(session)

  async def _cart(self, buyer_reference="buyer_1"):
    async with self.transactions_session_factory() as session:
      items = await db.get_cart_items(session, buyer_reference)
      return [item.product_id for item in items]

  def test_checkout_opens_payment_session(self):
    response = self.run_async(
        self._call("checkout", CheckoutRequest(buyer_reference="buyer_1"))
    )

    self.assertEqual(response.total_amount, 27500)
    self.assertEqual(response.currency, "USD")
    self.assertRegex(response.order_number, r"^ORD-\d{8}-001$")
    self.assertStartsWith(response.payment_reference, "mock_sess_")
    self.assertIn(response.payment_reference, response.redirect_url)

    order = self.run_async(self.load_order(response.order_id))
    self.assertEqual(order.status, OrderStatus.PROCESSING.value)
    self.assertEqual(order.payment_reference, response.payment_reference)
    self.assertEqual(order.gateway, "mock")
    self.assertEqual(self.notifier.events, [notification_service.ORDER_CREATED])
    # Items stay in the cart until the payment is confirmed.
    self.assertEqual(self.run_async(self._cart()), ["prod_desk", "prod_chair"])

  def test_checkout_of_selected_items(self):
    response = self.run_async(
        self._call(
            "checkout",
            CheckoutRequest(buyer_reference="buyer_1", product_ids=["prod_desk"]),
        )
    )
    self.assertEqual(response.total_amount, 11000)

  def test_empty_cart(self):
    with self.assertRaises(EmptyCartError):
      self.run_async(
          self._call("checkout", CheckoutRequest(buyer_reference="nobody"))
      )
    self.assertEqual(self.run_async(self._orders()), [])

  def test_idempotent_replay(self):
    req = CheckoutRequest(buyer_reference="buyer_1")
    first = self.run_async(self._call("checkout", req, "key-1"))
    second = self.run_async(self._call("checkout", req, "key-1"))

    self.assertEqual(first, second)
    self.assertLen(self.run_async(self._orders()), 1)

  def test_concurrent_requests_with_same_key_share_one_order(self):
    req = CheckoutRequest(buyer_reference="buyer_1")

    async def run():
      return await asyncio.gather(
          *(self._call("checkout", req, "same-key") for _ in range(4))
      )

    responses = self.run_async(run())

    self.assertTrue(all(isinstance(r, CheckoutResponse) for r in responses))
    self.assertLen({r.order_id for r in responses}, 1)
    orders = self.run_async(self._orders())
    live = [o for o in orders if o.status != OrderStatus.CANCELLED.value]
    self.assertLen(live, 1)
    self.assertEqual(live[0].id, responses[0].order_id)
    self.assertEqual(live[0].status, OrderStatus.PROCESSING.value)
    for order in orders:
      if order.id != live[0].id:
        self.assertEqual(order.cancellation_reason, "duplicate_request")
    self.assertEqual(
        self.notifier.events, [notification_service.ORDER_CREATED]
    )

  def test_idempotency_key_reuse_with_other_request(self):
    self.run_async(
        self._call("checkout", CheckoutRequest(buyer_reference="buyer_1"), "k")
    )
    with self.assertRaises(IdempotencyConflictError):
      self.run_async(
          self._call(
              "checkout",
              CheckoutRequest(
                  buyer_reference="buyer_1", product_ids=["prod_desk"]
              ),
              "k",
          )
      )

  def test_declined_session_cancels_order(self):
    gateway = MockGateway(fail_with=PaymentDeclinedError("card declined"))

    with self.assertRaises(PaymentDeclinedError):
      self.run_async(
          self._call(
              "checkout",
              CheckoutRequest(buyer_reference="buyer_1"),
              gateway=gateway,
          )
      )

    (order,) = self.run_async(self._orders())
    self.assertEqual(order.status, OrderStatus.CANCELLED.value)
    self.assertEqual(order.cancellation_reason, "PAYMENT_DECLINED")
    self.assertEqual(
        self.notifier.events,
        [
            notification_service.ORDER_CREATED,
            notification_service.ORDER_CANCELLED,
        ],
    )

  def test_timeout_leaves_order_pending_and_replay_resumes(self):
    slow = MockGateway(timeout_seconds=0.01, delay_seconds=1)
    req = CheckoutRequest(buyer_reference="buyer_1")

    with self.assertRaises(GatewayTimeoutError):
      self.run_async(self._call("checkout", req, "key-1", gateway=slow))

    (order,) = self.run_async(self._orders())
    self.assertEqual(order.status, OrderStatus.PENDING.value)
    self.assertIsNone(order.payment_reference)

    response = self.run_async(self._call("checkout", req, "key-1"))

    self.assertEqual(response.order_id, order.id)
    self.assertIsNotNone(response.payment_reference)
    self.assertLen(self.run_async(self._orders()), 1)
    self.assertEqual(
        self.run_async(self.load_order(order.id)).status,
        OrderStatus.PROCESSING.value,
    )

  def test_start_payment_requires_pending_order(self):
    order = self.run_async(self.create_order(status=OrderStatus.CANCELLED))
    with self.assertRaises(InvalidTransitionError):
      self.run_async(self._call("start_payment", order.id))

  def test_capture_fulfills_order(self):
    response = self.run_async(
        self._call("checkout", CheckoutRequest(buyer_reference="buyer_1"))
    )

    order = self.run_async(self._call("capture", response.order_id))

    self.assertEqual(order.status, OrderStatus.COMPLETED.value)
    self.assertEqual(self.run_async(self._cart()), [])
    self.assertEqual(
        self.notifier.events,
        [
            notification_service.ORDER_CREATED,
            notification_service.ORDER_PAID,
            notification_service.ORDER_COMPLETED,
        ],
    )
    # Capturing again is harmless.
    again = self.run_async(self._call("capture", response.order_id))
    self.assertEqual(again.version, order.version)

  def test_capture_of_expired_session_cancels_order(self):
    response = self.run_async(
        self._call("checkout", CheckoutRequest(buyer_reference="buyer_1"))
    )
    self.gateway.expire(response.payment_reference)

    with self.assertRaises(PaymentSessionExpiredError):
      self.run_async(self._call("capture", response.order_id))

    order = self.run_async(self.load_order(response.order_id))
    self.assertEqual(order.status, OrderStatus.CANCELLED.value)
    self.assertEqual(order.cancellation_reason, "session_expired")

  def test_capture_requires_payment_session(self):
    order = self.run_async(self.create_order())
    with self.assertRaises(InvalidTransitionError):
      self.run_async(self._call("capture", order.id))

  def test_cancel(self):
    order = self.run_async(self.create_order())
    cancelled = self.run_async(self._call("cancel", order.id))
    self.assertEqual(cancelled.status, OrderStatus.CANCELLED.value)
    self.assertEqual(cancelled.cancellation_reason, "cancelled_by_buyer")
    self.assertEqual(
        self.notifier.events, [notification_service.ORDER_CANCELLED]
    )


if __name__ == "__main__":
  absltest.main()
