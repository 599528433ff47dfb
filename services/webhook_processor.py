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

"""Reconciliation of payment gateway webhooks.

Gateways deliver events at least once, possibly out of order and possibly
concurrently. The processor turns that into at-most-once business effects:

1. The signature is verified before the body is trusted.
2. The event ID is recorded in the `payment_events` ledger. An event already
   marked processed is acknowledged as a duplicate without side effects.
3. The event is dispatched to the order state machine, whose transitions are
   idempotent, so an unprocessed ledger row (a concurrent delivery or a crash
   mid-processing) can safely be processed again.
4. The ledger row is stamped with the outcome once. A concurrent delivery
   that finds the row stamped is acknowledged as a duplicate; the only later
   change is replacing an `ignored` outcome with what a concurrent delivery
   actually applied.

Business rejections (an illegal transition, a wrong amount, an unknown order)
are acknowledged and kept as anomalies for operator review; redelivering them
would never succeed. Infrastructure failures propagate so the gateway retries.
"""

import logging
from typing import Optional, Tuple

import db
from enums import EventOutcome
from enums import OrderStatus
from enums import PaymentAction
from exceptions import AmountMismatchError
from exceptions import InvalidTransitionError
from exceptions import OrderNotPaidError
from exceptions import ResourceNotFoundError
from models import GatewayEvent
from models import WebhookAck
from services import notification_service
from services.fulfillment_service import FulfillmentService
from services.notification_service import Notifier
from services.order_service import OrderService
from services.payment_gateway import PaymentGateway
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Errors that mean "this event can never be applied", as opposed to "try
# again later".
BUSINESS_REJECTIONS = (
    InvalidTransitionError,
    AmountMismatchError,
    ResourceNotFoundError,
    OrderNotPaidError,
)


class WebhookProcessor:
  """Applies verified gateway events to orders exactly once."""

  def __init__(
      self,
      transactions_session: AsyncSession,
      gateway: PaymentGateway,
      order_service: OrderService,
      fulfillment_service: FulfillmentService,
      notifier: Notifier,
  ):
    self.transactions_session = transactions_session
    self.gateway = gateway
    self.order_service = order_service
    self.fulfillment_service = fulfillment_service
    self.notifier = notifier

  async def handle(
      self, payload: bytes, signature: Optional[str]
  ) -> WebhookAck:
    """Processes one webhook delivery.

    Args:
      payload: The raw request body, exactly as signed by the gateway.
      signature: The gateway's signature header value.

    Returns:
      The acknowledgement to send back to the gateway.

    Raises:
      WebhookSignatureError: If the signature does not verify.
      InvalidRequestError: If the body is not a valid event.
    """
    self.gateway.verify_signature(payload, signature)
    event = await self.gateway.parse_event(payload)

    if await self._already_processed(event):
      return self._duplicate(event)

    order_id = None
    try:
      order_id, outcome, detail = await self._dispatch(event)
    except BUSINESS_REJECTIONS as e:
      await self.transactions_session.rollback()
      logger.warning(
          "Payment event %s (%s) rejected: %s",
          event.event_id,
          event.event_type,
          e.message,
      )
      outcome, detail = EventOutcome.ANOMALY, e.message

    stamped = await db.mark_payment_event_processed(
        self.transactions_session, event.event_id, outcome.value, detail
    )
    await self.transactions_session.commit()
    if not stamped:
      return self._duplicate(event)
    logger.info(
        "Processed %s event %s: %s",
        event.event_type,
        event.event_id,
        outcome.value,
    )

    if event.action == PaymentAction.PAYMENT_FAILED and order_id:
      order = await self.order_service.get(order_id)
      await self.notifier.notify(
          notification_service.PAYMENT_FAILED, order, {"reason": event.reason}
      )
    return WebhookAck(outcome=outcome.value)

  def _duplicate(self, event: GatewayEvent) -> WebhookAck:
    logger.info(
        "Duplicate delivery of %s event %s", event.event_type, event.event_id
    )
    return WebhookAck(duplicate=True, outcome=EventOutcome.DUPLICATE.value)

  async def _already_processed(self, event: GatewayEvent) -> bool:
    """Records the event in the ledger and reports whether it is done.

    An unprocessed row means an earlier attempt crashed or a concurrent
    delivery is in flight; either way processing it again is safe.
    """
    existing = await db.get_payment_event(
        self.transactions_session, event.event_id
    )
    if existing:
      return existing.processed_at is not None

    try:
      await db.insert_payment_event(
          self.transactions_session,
          event.event_id,
          event.event_type,
          event.order_id or event.payment_reference,
      )
      await self.transactions_session.commit()
    except IntegrityError:
      await self.transactions_session.rollback()
      existing = await db.get_payment_event(
          self.transactions_session, event.event_id
      )
      return existing is not None and existing.processed_at is not None
    return False

  async def _resolve_order(self, event: GatewayEvent) -> db.Order:
    if event.order_id:
      return await self.order_service.get(event.order_id)
    if event.payment_reference:
      return await self.order_service.get_by_payment_reference(
          event.payment_reference
      )
    raise ResourceNotFoundError(
        f"Event {event.event_id} does not reference an order"
    )

  async def _dispatch(
      self, event: GatewayEvent
  ) -> Tuple[Optional[str], EventOutcome, Optional[str]]:
    """Applies an event to its order.

    Returns:
      The order ID, the outcome and an optional detail for the ledger.
    """
    if event.action is None:
      return (
          None,
          EventOutcome.IGNORED,
          f"Unhandled event type {event.event_type}",
      )

    order = await self._resolve_order(event)
    # Transitions may roll the session back; keep plain values only.
    order_id, status, total = order.id, order.status, order.total_amount
    action = event.action
    changed = False

    if action == PaymentAction.SESSION_CREATED:
      if not event.payment_reference:
        raise ResourceNotFoundError(
            f"Event {event.event_id} has no payment reference"
        )
      _, changed = await self.order_service.attach_payment_reference(
          order_id, event.payment_reference, self.gateway.name
      )

    elif action == PaymentAction.PAYMENT_SUCCEEDED:
      # The success can overtake the session-created event.
      if status == OrderStatus.PENDING and event.payment_reference:
        await self.order_service.attach_payment_reference(
            order_id, event.payment_reference, self.gateway.name
        )
      if event.amount is None:
        raise AmountMismatchError(order_id, total, 0)
      _, changed = await self.fulfillment_service.fulfill(
          order_id, event.amount
      )

    elif action in (
        PaymentAction.SESSION_EXPIRED,
        PaymentAction.PAYMENT_CANCELED,
    ):
      order, changed = await self.order_service.cancel(
          order_id, reason=event.reason or action.value
      )
      if changed:
        await self.notifier.notify(
            notification_service.ORDER_CANCELLED, order
        )

    elif action == PaymentAction.PAYMENT_REFUNDED:
      _, changed = await self.fulfillment_service.refund(order_id)

    elif action == PaymentAction.DISPUTE_OPENED:
      order, changed = await self.order_service.dispute(order_id)
      if changed:
        await self.notifier.notify(
            notification_service.ORDER_DISPUTED,
            order,
            {"reason": event.reason},
        )

    elif action in (PaymentAction.DISPUTE_WON, PaymentAction.DISPUTE_LOST):
      _, changed = await self.fulfillment_service.resolve_dispute(
          order_id, seller_won=action == PaymentAction.DISPUTE_WON
      )

    elif action == PaymentAction.PAYMENT_FAILED:
      # The buyer is notified once the ledger entry is stamped.
      return order_id, EventOutcome.APPLIED, event.reason

    if changed:
      return order_id, EventOutcome.APPLIED, None
    return (
        order_id,
        EventOutcome.IGNORED,
        f"Order already reflects {action.value}",
    )
