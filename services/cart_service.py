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

"""Cart access and checkout snapshots."""

import logging
from typing import List, Optional

import db
from exceptions import ResourceNotFoundError
from models import CartSnapshot
from models import SnapshotLineItem
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class CartService:
  """Reads buyer carts and freezes them into snapshots for checkout."""

  def __init__(
      self,
      products_session: AsyncSession,
      transactions_session: AsyncSession,
  ):
    self.products_session = products_session
    self.transactions_session = transactions_session

  async def add_item(self, buyer_reference: str, product_id: str) -> None:
    """Adds a catalog product to the buyer's cart."""
    product = await db.get_product(self.products_session, product_id)
    if not product:
      raise ResourceNotFoundError(f"Product {product_id} not found")
    await db.add_cart_item(
        self.transactions_session, buyer_reference, product_id
    )
    await self.transactions_session.commit()

  async def snapshot(
      self,
      buyer_reference: str,
      product_ids: Optional[List[str]] = None,
  ) -> CartSnapshot:
    """Captures the buyer's cart with current catalog prices.

    Args:
      buyer_reference: The buyer whose cart is read.
      product_ids: Optional subset of the cart to check out. Products that are
        not in the cart are ignored.

    Returns:
      A frozen snapshot in the order items were added. It is empty when the
      cart (or the selected subset) is empty.
    """
    cart_items = await db.get_cart_items(
        self.transactions_session, buyer_reference
    )
    if product_ids is not None:
      wanted = set(product_ids)
      cart_items = [c for c in cart_items if c.product_id in wanted]

    products = await db.get_products(
        self.products_session, [c.product_id for c in cart_items]
    )

    items = []
    for cart_item in cart_items:
      product = products.get(cart_item.product_id)
      if not product:
        logger.warning(
            "Cart of %s references unknown product %s, skipping",
            buyer_reference,
            cart_item.product_id,
        )
        continue
      items.append(
          SnapshotLineItem(
              product_id=product.id,
              title=product.title,
              unit_price=product.price,
              seller_id=product.seller_id,
          )
      )
    return CartSnapshot(buyer_reference=buyer_reference, items=tuple(items))

  async def remove_items(
      self, buyer_reference: str, product_ids: List[str]
  ) -> int:
    """Removes purchased products from the buyer's cart."""
    if not product_ids:
      return 0
    removed = await db.remove_cart_items(
        self.transactions_session, buyer_reference, product_ids
    )
    await self.transactions_session.commit()
    return removed
