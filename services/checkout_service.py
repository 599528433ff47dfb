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

"""Checkout service turning carts into orders with open payment sessions.

This module provides the `CheckoutService` class, which encapsulates the
business logic for starting a purchase: snapshotting the cart, creating the
PENDING order and opening a payment session with the configured gateway. It
also exposes the buyer-facing follow-ups on an order (retrying the payment
session, synchronous capture and cancellation).

Key responsibilities include:
- Creating orders with `Idempotency-Key` support.
- Handling gateway failures: declined or expired sessions cancel the order,
  while timeouts and network errors leave it PENDING for a retry.
- Confirming payments synchronously for gateways that redirect back.
"""

import hashlib
import json
import logging
from typing import Any, Optional, Tuple

import db
from enums import CaptureStatus
from enums import OrderStatus
from exceptions import GatewayNetworkError
from exceptions import IdempotencyConflictError
from exceptions import InvalidTransitionError
from exceptions import PaymentDeclinedError
from exceptions import PaymentSessionExpiredError
from models import CheckoutRequest
from models import CheckoutResponse
from models import PaymentSession
from pydantic import BaseModel
from services import notification_service
from services.cart_service import CartService
from services.fulfillment_service import FulfillmentService
from services.notification_service import Notifier
from services.order_service import OrderService
from services.payment_gateway import PaymentGateway
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class CheckoutService:
  """Service for starting and confirming purchases."""

  def __init__(
      self,
      transactions_session: AsyncSession,
      cart_service: CartService,
      order_service: OrderService,
      fulfillment_service: FulfillmentService,
      gateway: PaymentGateway,
      notifier: Notifier,
  ):
    self.transactions_session = transactions_session
    self.cart_service = cart_service
    self.order_service = order_service
    self.fulfillment_service = fulfillment_service
    self.gateway = gateway
    self.notifier = notifier

  def _compute_hash(self, data: Any) -> str:
    """Computes SHA256 hash of the JSON-serialized data."""
    if isinstance(data, BaseModel):
      # model_dump_json cannot sort keys; dump to a dict for stable hashing.
      json_str = json.dumps(data.model_dump(mode="json"), sort_keys=True)
    else:
      json_str = json.dumps(data, sort_keys=True)
    return hashlib.sha256(json_str.encode("utf-8")).hexdigest()

  def _response(
      self, order: db.Order, payment_session: Optional[PaymentSession]
  ) -> CheckoutResponse:
    return CheckoutResponse(
        order_id=order.id,
        order_number=order.order_number,
        total_amount=order.total_amount,
        currency=order.currency,
        redirect_url=payment_session.redirect_url if payment_session else None,
        payment_reference=order.payment_reference,
    )

  async def checkout(
      self,
      checkout_req: CheckoutRequest,
      idempotency_key: Optional[str] = None,
  ) -> CheckoutResponse:
    """Creates an order from the buyer's cart and opens a payment session.

    A replay with the same idempotency key returns the stored response. If
    the earlier attempt created the order but failed to open the session, the
    replay retries the session for that same order.

    Raises:
      EmptyCartError: If nothing in the cart can be bought.
      IdempotencyConflictError: If the key was used for a different request.
      GatewayError: If the gateway refused or could not be reached.
    """
    logger.info("Starting checkout for %s", checkout_req.buyer_reference)

    request_hash = None
    if idempotency_key:
      request_hash = self._compute_hash(checkout_req)
      existing_record = await db.get_idempotency_record(
          self.transactions_session, idempotency_key
      )
      if existing_record:
        if existing_record.request_hash != request_hash:
          raise IdempotencyConflictError(
              "Idempotency key reused with different parameters"
          )
        cached = CheckoutResponse(**existing_record.response_body)
        if cached.payment_reference:
          return cached
        logger.info("Resuming payment session for order %s", cached.order_id)
        return await self._open_and_record(cached.order_id, idempotency_key)

    snapshot = await self.cart_service.snapshot(
        checkout_req.buyer_reference, checkout_req.product_ids
    )
    order = await self.order_service.create(snapshot)
    order_id = order.id

    if idempotency_key:
      try:
        await db.save_idempotency_record(
            self.transactions_session,
            idempotency_key,
            request_hash,
            201,
            self._response(order, None).model_dump(mode="json"),
        )
        await self.transactions_session.commit()
      except IntegrityError:
        # A concurrent request with the same key won; answer with its order.
        await self.transactions_session.rollback()
        await self.order_service.cancel(order_id, reason="duplicate_request")
        return await self._replay(idempotency_key, request_hash)

    await self.notifier.notify(notification_service.ORDER_CREATED, order)
    return await self._open_and_record(order_id, idempotency_key)

  async def _replay(
      self, idempotency_key: str, request_hash: str
  ) -> CheckoutResponse:
    """Returns the response stored under a key another request saved."""
    record = await db.get_idempotency_record(
        self.transactions_session, idempotency_key
    )
    if record.request_hash != request_hash:
      raise IdempotencyConflictError(
          "Idempotency key reused with different parameters"
      )
    return CheckoutResponse(**record.response_body)

  async def _open_and_record(
      self, order_id: str, idempotency_key: Optional[str]
  ) -> CheckoutResponse:
    try:
      order, payment_session = await self.start_payment(order_id)
    except InvalidTransitionError:
      if not idempotency_key:
        raise
      # Another request with the same key may have opened the session.
      order = await self.order_service.get(order_id)
      if not order.payment_reference:
        raise
      record = await db.get_idempotency_record(
          self.transactions_session, idempotency_key
      )
      cached = CheckoutResponse(**record.response_body)
      return cached if cached.payment_reference else self._response(order, None)
    response = self._response(order, payment_session)
    if idempotency_key:
      await db.update_idempotency_record(
          self.transactions_session,
          idempotency_key,
          response.model_dump(mode="json"),
      )
      await self.transactions_session.commit()
    return response

  async def start_payment(
      self, order_id: str
  ) -> Tuple[db.Order, PaymentSession]:
    """Opens a gateway session for a PENDING order.

    Raises:
      InvalidTransitionError: If the order is no longer PENDING.
      PaymentDeclinedError: The order was cancelled.
      PaymentSessionExpiredError: The order was cancelled.
      GatewayNetworkError: The order stays PENDING and can be retried.
    """
    order = await self.order_service.get(order_id)
    if order.status != OrderStatus.PENDING:
      raise InvalidTransitionError(
          order.id, order.status, OrderStatus.PROCESSING.value
      )

    try:
      payment_session = await self.gateway.create_session(order)
    except (PaymentDeclinedError, PaymentSessionExpiredError) as e:
      logger.warning(
          "Gateway refused session for order %s: %s", order.id, e.message
      )
      order, changed = await self.order_service.cancel(order.id, reason=e.code)
      if changed:
        await self.notifier.notify(
            notification_service.ORDER_CANCELLED, order
        )
      raise
    except GatewayNetworkError as e:
      logger.warning(
          "Gateway unavailable for order %s, leaving it PENDING: %s",
          order.id,
          e.message,
      )
      raise

    order, _ = await self.order_service.attach_payment_reference(
        order.id, payment_session.external_reference, self.gateway.name
    )
    return order, payment_session

  async def capture(self, order_id: str) -> db.Order:
    """Confirms the payment of an order synchronously.

    Returns:
      The order after capture. It stays PROCESSING while the gateway still
      waits for the buyer.

    Raises:
      InvalidTransitionError: If the order has no open payment session.
      PaymentDeclinedError: If the gateway declined the payment.
      PaymentSessionExpiredError: The order was cancelled.
    """
    order = await self.order_service.get(order_id)
    if order.status in (OrderStatus.PAID, OrderStatus.COMPLETED):
      return order
    if order.status != OrderStatus.PROCESSING or not order.payment_reference:
      raise InvalidTransitionError(
          order.id, order.status, OrderStatus.PAID.value
      )

    try:
      result = await self.gateway.capture(order.payment_reference)
    except PaymentSessionExpiredError:
      order, changed = await self.order_service.cancel(
          order.id, reason="session_expired"
      )
      if changed:
        await self.notifier.notify(
            notification_service.ORDER_CANCELLED, order
        )
      raise

    if result.status == CaptureStatus.SUCCEEDED:
      order, _ = await self.fulfillment_service.fulfill(
          order.id, result.amount_received
      )
    elif result.status == CaptureStatus.DECLINED:
      await self.notifier.notify(notification_service.PAYMENT_FAILED, order)
      raise PaymentDeclinedError(f"Payment for order {order.id} was declined")
    return order

  async def cancel(
      self, order_id: str, reason: Optional[str] = None
  ) -> db.Order:
    """Cancels an unpaid order on the buyer's request."""
    order, changed = await self.order_service.cancel(
        order_id, reason=reason or "cancelled_by_buyer"
    )
    if changed:
      await self.notifier.notify(notification_service.ORDER_CANCELLED, order)
    return order
