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

"""Shared fixtures for tests that need real SQLite databases."""

import asyncio
import os
import shutil
import tempfile
from typing import Any, Iterable, Optional

from absl.testing import absltest
import db
from enums import OrderStatus
from models import CartSnapshot
from models import SnapshotLineItem
from services.fee_calculator import FeeCalculator
from services.order_service import OrderService
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

DESK = ("prod_desk", "Walnut Desk Plans", 10000, "seller_a", "files/desk.pdf")
CHAIR = ("prod_chair", "Oak Chair Plans", 15000, "seller_b", "files/chair.pdf")
CONSULT = ("prod_consult", "Design Consultation", 5000, "seller_b", None)


class DatabaseTestCase(absltest.TestCase):
  """Creates temporary products and transactions databases per test.

  Engines use NullPool so every `asyncio.run` opens fresh connections bound to
  its own event loop.
  """

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.products_db = os.path.join(self.test_dir, "test_products.db")
    self.transactions_db = os.path.join(self.test_dir, "test_transactions.db")

    self.products_engine = create_async_engine(
        f"sqlite+aiosqlite:///{self.products_db}", poolclass=NullPool
    )
    self.products_session_factory = sessionmaker(
        self.products_engine, expire_on_commit=False, class_=AsyncSession
    )
    self.transactions_engine = create_async_engine(
        f"sqlite+aiosqlite:///{self.transactions_db}", poolclass=NullPool
    )
    self.transactions_session_factory = sessionmaker(
        self.transactions_engine, expire_on_commit=False, class_=AsyncSession
    )

    async def init_schemas() -> None:
      async with self.products_engine.begin() as conn:
        await conn.run_sync(db.ProductBase.metadata.create_all)
      async with self.transactions_engine.begin() as conn:
        await conn.run_sync(db.TransactionBase.metadata.create_all)

    asyncio.run(init_schemas())

  def tearDown(self) -> None:
    async def dispose_engines() -> None:
      await self.products_engine.dispose()
      await self.transactions_engine.dispose()

    asyncio.run(dispose_engines())
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def run_async(self, coro) -> Any:
    return asyncio.run(coro)

  async def seed_products(self, *products: Iterable[Any]) -> None:
    products = products or (DESK, CHAIR)
    async with self.products_session_factory() as session:
      for product_id, title, price, seller_id, file_reference in products:
        session.add(
            db.Product(
                id=product_id,
                title=title,
                price=price,
                seller_id=seller_id,
                file_reference=file_reference,
            )
        )
      await session.commit()

  async def seed_cart(self, buyer_reference: str, *product_ids: str) -> None:
    async with self.transactions_session_factory() as session:
      for product_id in product_ids:
        await db.add_cart_item(session, buyer_reference, product_id)
      await session.commit()

  async def create_order(
      self,
      *products: Iterable[Any],
      buyer_reference: str = "buyer_1",
      status: Optional[OrderStatus] = None,
      payment_reference: Optional[str] = None,
  ) -> db.Order:
    """Creates an order directly, optionally forcing its status."""
    products = products or (DESK, CHAIR)
    snapshot = CartSnapshot(
        buyer_reference=buyer_reference,
        items=tuple(
            SnapshotLineItem(
                product_id=p[0], title=p[1], unit_price=p[2], seller_id=p[3]
            )
            for p in products
        ),
    )
    async with self.transactions_session_factory() as session:
      order = await OrderService(session, FeeCalculator("0.10")).create(
          snapshot
      )
      if status or payment_reference:
        values = {}
        if status:
          values["status"] = status.value
        if payment_reference:
          values["payment_reference"] = payment_reference
          values["gateway"] = "mock"
        await session.execute(
            update(db.Order).where(db.Order.id == order.id).values(**values)
        )
        await session.commit()
        order = await db.get_order(session, order.id)
    return order

  async def load_order(self, order_id: str) -> db.Order:
    async with self.transactions_session_factory() as session:
      return await db.get_order(session, order_id)
