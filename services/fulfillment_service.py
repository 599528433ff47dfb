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

"""Fulfillment service for paid orders.

This module encapsulates what happens after the gateway confirms money moved:
the order is marked paid, download grants are issued, the order completes and
the purchased items leave the buyer's cart. It also reverses fulfillment when
a payment is refunded or a dispute is lost.
"""

import logging
from typing import Optional, Tuple

import db
from enums import OrderStatus
from services import notification_service
from services.cart_service import CartService
from services.download_service import DownloadService
from services.notification_service import Notifier
from services.order_service import OrderService

logger = logging.getLogger(__name__)


class FulfillmentService:
  """Service for handling fulfillment logic."""

  def __init__(
      self,
      order_service: OrderService,
      download_service: DownloadService,
      notifier: Notifier,
      cart_service: Optional[CartService] = None,
  ):
    self.order_service = order_service
    self.download_service = download_service
    self.notifier = notifier
    self.cart_service = cart_service

  async def fulfill(
      self, order_id: str, amount_received: int
  ) -> Tuple[db.Order, bool]:
    """Marks an order paid and delivers it.

    Safe to repeat: an order left PAID by an interrupted earlier attempt is
    picked up where it stopped, and a COMPLETED order is returned unchanged.

    Args:
      order_id: The order the payment belongs to.
      amount_received: The captured amount in minor units.

    Returns:
      The order and whether this call changed it.
    """
    order, paid_now = await self.order_service.mark_paid(
        order_id, amount_received
    )
    if paid_now:
      await self.notifier.notify(notification_service.ORDER_PAID, order)

    if order.status != OrderStatus.PAID:
      return order, paid_now

    # A grant collision rolls the session back and expires `order`.
    await self.download_service.issue_grants(order_id)
    order, completed_now = await self.order_service.complete(order_id)
    if completed_now:
      await self.notifier.notify(notification_service.ORDER_COMPLETED, order)
      if self.cart_service:
        await self.cart_service.remove_items(
            order.buyer_reference,
            [item["product_id"] for item in order.line_items],
        )
    return order, paid_now or completed_now

  async def refund(self, order_id: str) -> Tuple[db.Order, bool]:
    """Refunds an order and revokes its downloads."""
    order, changed = await self.order_service.refund(order_id)
    await self.download_service.revoke_grants(order_id)
    if changed:
      await self.notifier.notify(notification_service.ORDER_REFUNDED, order)
    return order, changed

  async def resolve_dispute(
      self, order_id: str, seller_won: bool
  ) -> Tuple[db.Order, bool]:
    """Closes a dispute; a lost dispute refunds the buyer."""
    order, changed = await self.order_service.resolve_dispute(
        order_id, seller_won
    )
    if order.status == OrderStatus.REFUNDED:
      await self.download_service.revoke_grants(order_id)
    if changed:
      await self.notifier.notify(
          notification_service.DISPUTE_RESOLVED,
          order,
          {"seller_won": seller_won},
      )
    return order, changed
