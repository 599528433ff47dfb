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

"""Fire-and-forget order notifications."""

import logging
from typing import Any, Dict, Optional

import db
import httpx

logger = logging.getLogger(__name__)

ORDER_CREATED = "order_created"
ORDER_PAID = "order_paid"
ORDER_COMPLETED = "order_completed"
ORDER_CANCELLED = "order_cancelled"
ORDER_REFUNDED = "order_refunded"
ORDER_DISPUTED = "order_disputed"
DISPUTE_RESOLVED = "dispute_resolved"
PAYMENT_FAILED = "payment_failed"


class Notifier:
  """Posts order events to an HTTP endpoint.

  Delivery failures are logged and never raised: a notification must not
  undo or block the state change it reports.
  """

  def __init__(
      self,
      url: Optional[str] = None,
      http_client: Optional[httpx.AsyncClient] = None,
      timeout_seconds: float = 5.0,
  ):
    self.url = url
    self.http_client = http_client
    self.timeout_seconds = timeout_seconds

  def _payload(
      self, event_type: str, order: db.Order, extra: Optional[Dict[str, Any]]
  ) -> Dict[str, Any]:
    payload = {
        "event_type": event_type,
        "order_id": order.id,
        "order_number": order.order_number,
        "buyer_reference": order.buyer_reference,
        "status": order.status,
        "total_amount": order.total_amount,
        "currency": order.currency,
    }
    if extra:
      payload.update(extra)
    return payload

  async def notify(
      self,
      event_type: str,
      order: db.Order,
      extra: Optional[Dict[str, Any]] = None,
  ) -> bool:
    """Sends one notification.

    Returns:
      True if the endpoint accepted it, False if nothing was sent or the
      delivery failed.
    """
    if not self.url:
      logger.debug("No notification URL, dropping %s", event_type)
      return False

    payload = self._payload(event_type, order, extra)
    try:
      if self.http_client is not None:
        response = await self.http_client.post(
            self.url, json=payload, timeout=self.timeout_seconds
        )
      else:
        async with httpx.AsyncClient() as client:
          response = await client.post(
              self.url, json=payload, timeout=self.timeout_seconds
          )
      response.raise_for_status()
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error(
          "Failed to notify %s of %s for order %s: %s",
          self.url,
          event_type,
          order.id,
          e,
      )
      return False
    return True
