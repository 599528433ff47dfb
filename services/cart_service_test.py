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

"""Tests for cart snapshots."""

from absl.testing import absltest
import db
import db_testing
from exceptions import ResourceNotFoundError
from services.cart_service import CartService
from sqlalchemy import update


class CartServiceTest(db_testing.DatabaseTestCase):

  def setUp(self):
    super().setUp()
    self.run_async(self.seed_products())

  async def _call(self, method, *args):
    async with self.products_session_factory() as products_session:
      async with self.transactions_session_factory() as session:
        service = CartService(products_session, session)
        return await getattr(service, method)(*args)

  def test_snapshot_uses_current_prices(self):
    self.run_async(self._call("add_item", "buyer_1", "prod_desk"))
    self.run_async(self._call("add_item", "buyer_1", "prod_chair"))

    snapshot = self.run_async(self._call("snapshot", "buyer_1"))

    self.assertEqual(snapshot.buyer_reference, "buyer_1")
    self.assertEqual(snapshot.product_ids, ["prod_desk", "prod_chair"])
    self.assertEqual([i.unit_price for i in snapshot.items], [10000, 15000])
    self.assertEqual(snapshot.items[1].seller_id, "seller_b")

  def test_snapshot_is_not_affected_by_later_price_changes(self):
    self.run_async(self._call("add_item", "buyer_1", "prod_desk"))
    snapshot = self.run_async(self._call("snapshot", "buyer_1"))

    async def raise_price():
      async with self.products_session_factory() as session:
        await session.execute(
            update(db.Product)
            .where(db.Product.id == "prod_desk")
            .values(price=99900)
        )
        await session.commit()

    self.run_async(raise_price())

    self.assertEqual(snapshot.items[0].unit_price, 10000)

  def test_adding_twice_keeps_one_item(self):
    self.run_async(self._call("add_item", "buyer_1", "prod_desk"))
    self.run_async(self._call("add_item", "buyer_1", "prod_desk"))
    snapshot = self.run_async(self._call("snapshot", "buyer_1"))
    self.assertLen(snapshot.items, 1)

  def test_add_unknown_product(self):
    with self.assertRaises(ResourceNotFoundError):
      self.run_async(self._call("add_item", "buyer_1", "prod_missing"))

  def test_snapshot_of_subset(self):
    self.run_async(self.seed_cart("buyer_1", "prod_desk", "prod_chair"))
    snapshot = self.run_async(
        self._call("snapshot", "buyer_1", ["prod_chair", "prod_other"])
    )
    self.assertEqual(snapshot.product_ids, ["prod_chair"])

  def test_snapshot_skips_products_removed_from_catalog(self):
    self.run_async(self.seed_cart("buyer_1", "prod_desk", "prod_gone"))
    snapshot = self.run_async(self._call("snapshot", "buyer_1"))
    self.assertEqual(snapshot.product_ids, ["prod_desk"])

  def test_empty_cart(self):
    snapshot = self.run_async(self._call("snapshot", "buyer_1"))
    self.assertTrue(snapshot.is_empty)

  def test_remove_items(self):
    self.run_async(self.seed_cart("buyer_1", "prod_desk", "prod_chair"))
    self.run_async(self.seed_cart("buyer_2", "prod_desk"))

    removed = self.run_async(
        self._call("remove_items", "buyer_1", ["prod_desk"])
    )

    self.assertEqual(removed, 1)
    buyer_1 = self.run_async(self._call("snapshot", "buyer_1"))
    buyer_2 = self.run_async(self._call("snapshot", "buyer_2"))
    self.assertEqual(buyer_1.product_ids, ["prod_chair"])
    self.assertEqual(buyer_2.product_ids, ["prod_desk"])


if __name__ == "__main__":
  absltest.main()
