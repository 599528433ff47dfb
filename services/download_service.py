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

"""Download grants for purchased digital products.

A grant lets the buyer fetch one product's file a limited number of times
before an expiry date. Redemption is a single compare-and-increment statement,
so concurrent downloads can never exceed the limit.
"""

import datetime
import logging
import secrets
from typing import List, Tuple

import db
from enums import OrderStatus
from exceptions import OrderNotPaidError
from exceptions import ResourceNotFoundError
from exceptions import TokenExhaustedError
from exceptions import TokenExpiredError
from exceptions import TokenNotFoundError
from exceptions import TokenRevokedError
from models import DownloadResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DOWNLOADABLE_STATUSES = (OrderStatus.PAID, OrderStatus.COMPLETED)


class DownloadService:
  """Issues and redeems download grants."""

  def __init__(
      self,
      products_session: AsyncSession,
      transactions_session: AsyncSession,
      download_limit: int = 5,
      download_ttl_days: int = 30,
  ):
    self.products_session = products_session
    self.transactions_session = transactions_session
    self.download_limit = download_limit
    self.download_ttl = datetime.timedelta(days=download_ttl_days)

  async def issue_grants(
      self, order_id: str
  ) -> Tuple[List[db.DownloadGrant], bool]:
    """Creates one grant per purchased product that has a file.

    Issuing is idempotent: if the order already has grants they are returned
    unchanged. Concurrent callers collapse to a single batch through the
    `(order_id, product_id)` unique key.

    Args:
      order_id: A PAID or COMPLETED order.

    Returns:
      The order's grants and whether this call created them.

    Raises:
      ResourceNotFoundError: If the order does not exist.
      OrderNotPaidError: If the order is not PAID or COMPLETED.
    """
    order = await db.get_order(self.transactions_session, order_id)
    if not order:
      raise ResourceNotFoundError(f"Order {order_id} not found")
    if order.status not in DOWNLOADABLE_STATUSES:
      raise OrderNotPaidError(order.id, order.status)

    existing = await db.get_grants_for_order(
        self.transactions_session, order_id
    )
    if existing:
      return existing, False

    product_ids = [item["product_id"] for item in order.line_items]
    products = await db.get_products(self.products_session, product_ids)

    now = db.utcnow()
    grants = []
    for product_id in product_ids:
      product = products.get(product_id)
      if not product or not product.file_reference:
        logger.info(
            "No file for product %s in order %s, skipping grant",
            product_id,
            order.order_number,
        )
        continue
      grants.append(
          db.DownloadGrant(
              token=secrets.token_urlsafe(32),
              order_id=order.id,
              product_id=product_id,
              buyer_reference=order.buyer_reference,
              file_reference=product.file_reference,
              download_limit=self.download_limit,
              download_count=0,
              expires_at=db.to_timestamp(now + self.download_ttl),
              is_active=True,
              created_at=db.to_timestamp(now),
          )
      )

    if not grants:
      return [], False

    self.transactions_session.add_all(grants)
    try:
      await self.transactions_session.commit()
    except IntegrityError:
      await self.transactions_session.rollback()
      logger.info("Grants for order %s were issued concurrently", order_id)
      return (
          await db.get_grants_for_order(self.transactions_session, order_id),
          False,
      )

    logger.info(
        "Issued %d download grants for order %s",
        len(grants),
        order.order_number,
    )
    return grants, True

  async def redeem(self, token: str) -> DownloadResponse:
    """Consumes one download of a grant.

    Raises:
      TokenNotFoundError: If the token does not exist.
      TokenExpiredError: If the grant is past its expiry.
      TokenExhaustedError: If every allowed download was used.
      TokenRevokedError: If the grant was revoked, e.g. by a refund.
    """
    grant = await db.get_grant(self.transactions_session, token)
    if not grant:
      raise TokenNotFoundError()

    now = db.to_timestamp(db.utcnow())
    consumed = await db.increment_grant_download(
        self.transactions_session, token, now
    )
    if consumed:
      await self.transactions_session.commit()
      return DownloadResponse(
          file_reference=consumed.file_reference,
          downloads_remaining=consumed.download_limit - consumed.download_count,
          expires_at=consumed.expires_at,
      )

    await self.transactions_session.rollback()
    grant = await db.get_grant(self.transactions_session, token)
    if grant.expires_at < now:
      if grant.is_active:
        await db.deactivate_grant(self.transactions_session, token)
        await self.transactions_session.commit()
      raise TokenExpiredError()
    if grant.download_count >= grant.download_limit:
      raise TokenExhaustedError()
    raise TokenRevokedError()

  async def list_grants(self, order_id: str) -> List[db.DownloadGrant]:
    return await db.get_grants_for_order(self.transactions_session, order_id)

  async def revoke_grants(self, order_id: str) -> int:
    """Deactivates all grants of an order."""
    revoked = await db.revoke_grants(self.transactions_session, order_id)
    await self.transactions_session.commit()
    if revoked:
      logger.info("Revoked %d download grants of order %s", revoked, order_id)
    return revoked

  async def deactivate_expired(self) -> int:
    """Deactivates every grant past its expiry."""
    count = await db.deactivate_expired_grants(
        self.transactions_session, db.to_timestamp(db.utcnow())
    )
    await self.transactions_session.commit()
    if count:
      logger.info("Deactivated %d expired download grants", count)
    return count
