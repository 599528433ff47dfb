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

"""Database management and persistence layer for the order engine.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the services. It utilizes SQLAlchemy
with SQLite (via aiosqlite) and keeps the read-only product catalog apart from
the transactional data (carts, orders, the payment event ledger and download
grants).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup for both 'Products' and 'Transactions' databases.
- WAL Mode: Enables SQLite Write-Ahead Logging so request handlers and the
  maintenance scripts can use the databases concurrently.
- Atomic helpers: order transitions, download redemption and order number
  allocation are single conditional statements rather than read-then-write.
"""

import datetime
import logging
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import delete
from sqlalchemy import func
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import UniqueConstraint
from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

ProductBase = declarative_base()
TransactionBase = declarative_base()


def utcnow() -> datetime.datetime:
  return datetime.datetime.now(datetime.timezone.utc)


def to_timestamp(value: datetime.datetime) -> str:
  """Formats a datetime as a fixed-width UTC ISO string.

  Fixed width keeps lexical order equal to chronological order, which the
  expiry comparisons in SQL rely on. Naive values are taken as UTC.
  """
  if value.tzinfo is None:
    value = value.replace(tzinfo=datetime.timezone.utc)
  return value.astimezone(datetime.timezone.utc).isoformat(
      timespec="microseconds"
  )


def from_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
  if value is None:
    return None
  return datetime.datetime.fromisoformat(value)


class DatabaseManager:
  """Manages database engines and sessions without using global variables."""

  def __init__(self) -> None:
    self.products_engine: Optional[AsyncEngine] = None
    self.transactions_engine: Optional[AsyncEngine] = None
    self.products_session_factory: Optional[sessionmaker] = None
    self.transactions_session_factory: Optional[sessionmaker] = None

  async def _open(self, path: str, base) -> Tuple[AsyncEngine, sessionmaker]:
    """Opens one database in WAL mode and creates its missing tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=False)
    async with engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))
    async with engine.begin() as conn:
      await conn.run_sync(base.metadata.create_all)
    return engine, sessionmaker(
        engine, expire_on_commit=False, class_=AsyncSession
    )

  async def init_dbs(self, products_path: str, transactions_path: str) -> None:
    """Opens the catalog and transactions databases."""
    self.products_engine, self.products_session_factory = await self._open(
        products_path, ProductBase
    )
    (
        self.transactions_engine,
        self.transactions_session_factory,
    ) = await self._open(transactions_path, TransactionBase)

  async def close(self) -> None:
    """Closes all database engines."""
    if self.products_engine:
      await self.products_engine.dispose()
    if self.transactions_engine:
      await self.transactions_engine.dispose()


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


class Product(ProductBase):
  __tablename__ = "products"

  id = Column(String, primary_key=True)
  title = Column(String)
  price = Column(Integer)  # Price in cents
  seller_id = Column(String, index=True)
  file_reference = Column(String, nullable=True)  # Storage key of the file


class CartItem(TransactionBase):
  __tablename__ = "cart_items"
  __table_args__ = (UniqueConstraint("buyer_reference", "product_id"),)

  id = Column(Integer, primary_key=True, autoincrement=True)
  buyer_reference = Column(String, index=True)
  product_id = Column(String)
  added_at = Column(String)


class Order(TransactionBase):
  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  order_number = Column(String, unique=True)
  buyer_reference = Column(String, index=True)
  status = Column(String, index=True)
  version = Column(Integer, nullable=False, default=1)
  currency = Column(String)
  # Snapshot of the cart at checkout, prices in cents
  line_items = Column(JSON)
  subtotal = Column(Integer)
  platform_fee_rate = Column(String)  # Decimal string, e.g. "0.10"
  platform_fee = Column(Integer)
  seller_amount = Column(Integer)
  total_amount = Column(Integer)
  gateway = Column(String, nullable=True)
  payment_reference = Column(String, nullable=True, unique=True)
  cancellation_reason = Column(String, nullable=True)
  created_at = Column(String, index=True)
  paid_at = Column(String, nullable=True)
  completed_at = Column(String, nullable=True)
  cancelled_at = Column(String, nullable=True)
  refunded_at = Column(String, nullable=True)
  disputed_at = Column(String, nullable=True)


class OrderSequence(TransactionBase):
  __tablename__ = "order_sequences"

  day = Column(String, primary_key=True)  # YYYYMMDD, UTC
  value = Column(Integer, nullable=False)


class PaymentEvent(TransactionBase):
  __tablename__ = "payment_events"

  external_event_id = Column(String, primary_key=True)
  event_type = Column(String)
  order_reference = Column(String, nullable=True, index=True)
  received_at = Column(String)
  processed_at = Column(String, nullable=True)
  outcome = Column(String, nullable=True)
  detail = Column(String, nullable=True)


class DownloadGrant(TransactionBase):
  __tablename__ = "download_grants"
  __table_args__ = (UniqueConstraint("order_id", "product_id"),)

  token = Column(String, primary_key=True)
  order_id = Column(String, index=True)
  product_id = Column(String)
  buyer_reference = Column(String)
  file_reference = Column(String)
  download_limit = Column(Integer)
  download_count = Column(Integer, default=0)
  expires_at = Column(String)
  is_active = Column(Boolean, default=True)
  created_at = Column(String)
  last_download_at = Column(String, nullable=True)


class IdempotencyRecord(TransactionBase):
  __tablename__ = "idempotency_records"

  key = Column(String, primary_key=True)
  request_hash = Column(String)
  response_status = Column(Integer)
  response_body = Column(JSON)
  created_at = Column(String)


# --- Data Access Helpers ---


async def get_product(
    session: AsyncSession, product_id: str
) -> Optional[Product]:
  """Retrieves a product by ID."""
  return await session.get(Product, product_id)


async def get_products(
    session: AsyncSession, product_ids: Iterable[str]
) -> Dict[str, Product]:
  """Retrieves multiple products in a single query, keyed by ID."""
  result = await session.execute(
      select(Product).where(Product.id.in_(list(product_ids)))
  )
  return {p.id: p for p in result.scalars().all()}


async def get_cart_items(
    session: AsyncSession, buyer_reference: str
) -> List[CartItem]:
  """Retrieves a buyer's cart in the order items were added."""
  result = await session.execute(
      select(CartItem)
      .where(CartItem.buyer_reference == buyer_reference)
      .order_by(CartItem.added_at, CartItem.id)
  )
  return list(result.scalars().all())


async def add_cart_item(
    session: AsyncSession, buyer_reference: str, product_id: str
) -> None:
  """Adds a product to a buyer's cart; adding it twice is a no-op."""
  stmt = (
      sqlite_insert(CartItem)
      .values(
          buyer_reference=buyer_reference,
          product_id=product_id,
          added_at=to_timestamp(utcnow()),
      )
      .on_conflict_do_nothing(
          index_elements=[CartItem.buyer_reference, CartItem.product_id]
      )
  )
  await session.execute(stmt)


async def remove_cart_items(
    session: AsyncSession, buyer_reference: str, product_ids: List[str]
) -> int:
  """Removes the given products from a buyer's cart."""
  result = await session.execute(
      delete(CartItem)
      .where(CartItem.buyer_reference == buyer_reference)
      .where(CartItem.product_id.in_(product_ids))
  )
  return result.rowcount


async def next_order_sequence(session: AsyncSession, day: str) -> int:
  """Atomically advances and returns the order counter for a UTC day."""
  stmt = (
      sqlite_insert(OrderSequence)
      .values(day=day, value=1)
      .on_conflict_do_update(
          index_elements=[OrderSequence.day],
          set_={"value": OrderSequence.value + 1},
      )
      .returning(OrderSequence.value)
  )
  result = await session.execute(stmt)
  return result.scalar_one()


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID, bypassing any stale identity-map copy."""
  return await session.get(Order, order_id, populate_existing=True)


async def get_order_by_payment_reference(
    session: AsyncSession, payment_reference: str
) -> Optional[Order]:
  """Retrieves an order by its gateway payment reference."""
  result = await session.execute(
      select(Order)
      .where(Order.payment_reference == payment_reference)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def update_order_if_version(
    session: AsyncSession,
    order_id: str,
    expected_version: int,
    values: Dict[str, Any],
) -> bool:
  """Applies `values` only if the order is still at `expected_version`.

  Returns:
    True if the row was updated, False if another writer got there first.
  """
  stmt = (
      update(Order)
      .where(Order.id == order_id)
      .where(Order.version == expected_version)
      .values(version=Order.version + 1, **values)
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def list_stale_order_ids(
    session: AsyncSession, statuses: List[str], created_before: str
) -> List[str]:
  """Lists orders in `statuses` created before the given timestamp."""
  result = await session.execute(
      select(Order.id)
      .where(Order.status.in_(statuses))
      .where(Order.created_at < created_before)
      .order_by(Order.created_at)
  )
  return list(result.scalars().all())


async def count_orders_by_status(session: AsyncSession) -> Dict[str, int]:
  """Counts orders grouped by status."""
  result = await session.execute(
      select(Order.status, func.count(Order.id)).group_by(Order.status)
  )
  return {status: count for status, count in result.all()}


async def list_orders(
    session: AsyncSession, limit: int = 100
) -> List[Order]:
  """Lists the most recent orders."""
  result = await session.execute(
      select(Order).order_by(Order.created_at.desc()).limit(limit)
  )
  return list(result.scalars().all())


async def list_orders_for_buyer(
    session: AsyncSession,
    buyer_reference: str,
    status: Optional[str] = None,
    created_from: Optional[str] = None,
    created_to: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Order], int]:
  """Lists one buyer's orders, newest first.

  Returns:
    The requested page and the number of orders matching the filters.
  """
  conditions = [Order.buyer_reference == buyer_reference]
  if status:
    conditions.append(Order.status == status)
  if created_from:
    conditions.append(Order.created_at >= created_from)
  if created_to:
    conditions.append(Order.created_at <= created_to)

  total = await session.scalar(
      select(func.count(Order.id)).where(*conditions)
  )
  result = await session.execute(
      select(Order)
      .where(*conditions)
      .order_by(Order.created_at.desc(), Order.order_number.desc())
      .limit(limit)
      .offset(offset)
  )
  return list(result.scalars().all()), total or 0


async def get_payment_event(
    session: AsyncSession, external_event_id: str
) -> Optional[PaymentEvent]:
  """Retrieves a ledger entry by gateway event ID."""
  return await session.get(
      PaymentEvent, external_event_id, populate_existing=True
  )


async def insert_payment_event(
    session: AsyncSession,
    external_event_id: str,
    event_type: str,
    order_reference: Optional[str],
) -> None:
  """Inserts a ledger entry.

  Raises:
    sqlalchemy.exc.IntegrityError: If the event ID is already recorded.
  """
  session.add(
      PaymentEvent(
          external_event_id=external_event_id,
          event_type=event_type,
          order_reference=order_reference,
          received_at=to_timestamp(utcnow()),
      )
  )
  await session.flush()


async def mark_payment_event_processed(
    session: AsyncSession,
    external_event_id: str,
    outcome: str,
    detail: Optional[str] = None,
) -> bool:
  """Stamps `processed_at` and the outcome on an unprocessed ledger entry.

  A stamped entry keeps its `processed_at`. Its outcome only changes from
  `ignored` to a substantive outcome, which happens when a concurrent
  delivery of the same event stamped first after finding nothing to do.

  Returns:
    True if this call stamped the entry, False if it was already stamped.
  """
  unstamped = PaymentEvent.processed_at.is_(None)
  if outcome != "ignored":
    unstamped = or_(unstamped, PaymentEvent.outcome == "ignored")
  result = await session.execute(
      update(PaymentEvent)
      .where(PaymentEvent.external_event_id == external_event_id)
      .where(unstamped)
      .values(
          processed_at=func.coalesce(
              PaymentEvent.processed_at, to_timestamp(utcnow())
          ),
          outcome=outcome,
          detail=detail,
      )
      .execution_options(synchronize_session=False)
  )
  return result.rowcount > 0


async def list_payment_anomalies(
    session: AsyncSession, limit: int = 100
) -> List[PaymentEvent]:
  """Lists events whose business effect was rejected, newest first."""
  result = await session.execute(
      select(PaymentEvent)
      .where(PaymentEvent.outcome == "anomaly")
      .order_by(PaymentEvent.received_at.desc())
      .limit(limit)
  )
  return list(result.scalars().all())


async def purge_payment_events(
    session: AsyncSession, processed_before: str
) -> int:
  """Deletes processed ledger entries older than the retention window."""
  result = await session.execute(
      delete(PaymentEvent)
      .where(PaymentEvent.processed_at.is_not(None))
      .where(PaymentEvent.processed_at < processed_before)
  )
  return result.rowcount


async def get_grants_for_order(
    session: AsyncSession, order_id: str
) -> List[DownloadGrant]:
  """Retrieves all download grants of an order."""
  result = await session.execute(
      select(DownloadGrant)
      .where(DownloadGrant.order_id == order_id)
      .order_by(DownloadGrant.created_at, DownloadGrant.product_id)
      .execution_options(populate_existing=True)
  )
  return list(result.scalars().all())


async def get_grant(
    session: AsyncSession, token: str
) -> Optional[DownloadGrant]:
  """Retrieves a download grant by token."""
  return await session.get(DownloadGrant, token, populate_existing=True)


async def increment_grant_download(
    session: AsyncSession, token: str, now: str
) -> Optional[Any]:
  """Consumes one download if the grant is active, unexpired and not used up.

  The check and the increment are one statement, so concurrent redemptions of
  the same token can never push the count past the limit. The download that
  reaches the limit also deactivates the grant.

  Returns:
    The updated (file_reference, download_count, download_limit, expires_at)
    row, or None if nothing was consumed.
  """
  stmt = (
      update(DownloadGrant)
      .where(DownloadGrant.token == token)
      .where(DownloadGrant.is_active.is_(True))
      .where(DownloadGrant.download_count < DownloadGrant.download_limit)
      .where(DownloadGrant.expires_at >= now)
      .values(
          download_count=DownloadGrant.download_count + 1,
          last_download_at=now,
          is_active=(
              DownloadGrant.download_count + 1 < DownloadGrant.download_limit
          ),
      )
      .returning(
          DownloadGrant.file_reference,
          DownloadGrant.download_count,
          DownloadGrant.download_limit,
          DownloadGrant.expires_at,
      )
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.first()


async def deactivate_grant(session: AsyncSession, token: str) -> None:
  await session.execute(
      update(DownloadGrant)
      .where(DownloadGrant.token == token)
      .values(is_active=False)
      .execution_options(synchronize_session=False)
  )


async def revoke_grants(session: AsyncSession, order_id: str) -> int:
  """Deactivates every active grant of an order."""
  result = await session.execute(
      update(DownloadGrant)
      .where(DownloadGrant.order_id == order_id)
      .where(DownloadGrant.is_active.is_(True))
      .values(is_active=False)
      .execution_options(synchronize_session=False)
  )
  return result.rowcount


async def deactivate_expired_grants(session: AsyncSession, now: str) -> int:
  """Deactivates active grants whose expiry has passed."""
  result = await session.execute(
      update(DownloadGrant)
      .where(DownloadGrant.is_active.is_(True))
      .where(DownloadGrant.expires_at < now)
      .values(is_active=False)
      .execution_options(synchronize_session=False)
  )
  return result.rowcount


async def get_idempotency_record(
    session: AsyncSession, key: str
) -> Optional[IdempotencyRecord]:
  """Retrieves an idempotency record by key."""
  return await session.get(IdempotencyRecord, key, populate_existing=True)


async def save_idempotency_record(
    session: AsyncSession,
    key: str,
    request_hash: str,
    response_status: int,
    response_body: Dict[str, Any],
) -> None:
  """Saves a new idempotency record."""
  record = IdempotencyRecord(
      key=key,
      request_hash=request_hash,
      response_status=response_status,
      response_body=response_body,
      created_at=to_timestamp(utcnow()),
  )
  session.add(record)


async def update_idempotency_record(
    session: AsyncSession, key: str, response_body: Dict[str, Any]
) -> None:
  """Replaces the stored response of an idempotency record."""
  await session.execute(
      update(IdempotencyRecord)
      .where(IdempotencyRecord.key == key)
      .values(response_body=response_body)
      .execution_options(synchronize_session=False)
  )
