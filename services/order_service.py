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

"""Order state machine.

This module provides the `OrderService` class, the only code allowed to change
an order's status. Orders move along a fixed transition table:

  PENDING     -> PROCESSING   (gateway session created)
  PROCESSING  -> PAID         (gateway confirmed the payment)
  PAID        -> COMPLETED    (download grants issued)
  PENDING, PROCESSING        -> CANCELLED
  PAID, COMPLETED, DISPUTED  -> REFUNDED
  PAID, COMPLETED            -> DISPUTED
  DISPUTED    -> COMPLETED or REFUNDED (dispute resolved)

Each transition is a compare-and-swap on the order's `version` column. A
writer that loses the race re-reads the order and either finds its transition
already applied (a no-op) or re-validates against the new state. Every
transition returns `(order, changed)` so callers only fire side effects for
the writer that actually moved the order.
"""

import datetime
import logging
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple
import uuid

import db
from enums import OrderStatus
from enums import TRANSITIONS
from exceptions import AmountMismatchError
from exceptions import ConcurrentModificationError
from exceptions import EmptyCartError
from exceptions import InvalidTransitionError
from exceptions import ResourceNotFoundError
from models import CartSnapshot
from services.fee_calculator import FeeCalculator
from services.order_numbers import OrderNumberGenerator
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 3

# Statuses an unpaid order can be abandoned in.
UNPAID_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING)


class OrderService:
  """Creates orders and applies status transitions."""

  def __init__(
      self,
      transactions_session: AsyncSession,
      fee_calculator: FeeCalculator,
      order_numbers: Optional[OrderNumberGenerator] = None,
      currency: str = "USD",
  ):
    self.transactions_session = transactions_session
    self.fee_calculator = fee_calculator
    self.order_numbers = order_numbers or OrderNumberGenerator()
    self.currency = currency

  async def create(self, snapshot: CartSnapshot) -> db.Order:
    """Creates a PENDING order from a cart snapshot.

    The order number is allocated in the same transaction as the insert.

    Raises:
      EmptyCartError: If the snapshot has no items.
      OrderNumberUnavailableError: If no order number could be allocated.
    """
    if snapshot.is_empty:
      raise EmptyCartError()

    fees = self.fee_calculator.compute(snapshot.items)
    now = db.utcnow()
    try:
      order_number = await self.order_numbers.next(
          self.transactions_session, now
      )
      order = db.Order(
          id=str(uuid.uuid4()),
          order_number=order_number,
          buyer_reference=snapshot.buyer_reference,
          status=OrderStatus.PENDING.value,
          version=1,
          currency=self.currency,
          line_items=[item.model_dump() for item in snapshot.items],
          subtotal=fees.subtotal,
          platform_fee_rate=fees.platform_fee_rate,
          platform_fee=fees.platform_fee,
          seller_amount=fees.seller_amount,
          total_amount=fees.total_amount,
          created_at=db.to_timestamp(now),
      )
      self.transactions_session.add(order)
      await self.transactions_session.commit()
    except Exception:
      await self.transactions_session.rollback()
      raise

    logger.info(
        "Created order %s (%s) for %s, total %d %s",
        order.order_number,
        order.id,
        order.buyer_reference,
        order.total_amount,
        order.currency,
    )
    return order

  async def get(self, order_id: str) -> db.Order:
    order = await db.get_order(self.transactions_session, order_id)
    if not order:
      raise ResourceNotFoundError(f"Order {order_id} not found")
    return order

  async def get_for_buyer(
      self, order_id: str, buyer_reference: str
  ) -> db.Order:
    """Returns an order only to the buyer who placed it.

    Raises:
      ResourceNotFoundError: If the order does not exist or belongs to
        someone else; the two cases are indistinguishable to the caller.
    """
    order = await db.get_order(self.transactions_session, order_id)
    if not order or order.buyer_reference != buyer_reference:
      raise ResourceNotFoundError(f"Order {order_id} not found")
    return order

  async def list_for_buyer(
      self,
      buyer_reference: str,
      status: Optional[OrderStatus] = None,
      created_from: Optional[datetime.datetime] = None,
      created_to: Optional[datetime.datetime] = None,
      limit: int = 20,
      offset: int = 0,
  ) -> Tuple[List[db.Order], int]:
    """Lists a buyer's orders, newest first, with the total match count."""
    return await db.list_orders_for_buyer(
        self.transactions_session,
        buyer_reference,
        status=status.value if status else None,
        created_from=db.to_timestamp(created_from) if created_from else None,
        created_to=db.to_timestamp(created_to) if created_to else None,
        limit=limit,
        offset=offset,
    )

  async def get_by_payment_reference(self, reference: str) -> db.Order:
    order = await db.get_order_by_payment_reference(
        self.transactions_session, reference
    )
    if not order:
      raise ResourceNotFoundError(
          f"No order for payment reference {reference}"
      )
    return order

  async def attach_payment_reference(
      self, order_id: str, reference: str, gateway: str
  ) -> Tuple[db.Order, bool]:
    """Records the gateway session and moves PENDING -> PROCESSING."""
    return await self._transition(
        order_id,
        OrderStatus.PROCESSING,
        changes={"payment_reference": reference, "gateway": gateway},
        already_applied=lambda order: order.payment_reference == reference,
    )

  async def mark_paid(
      self, order_id: str, amount_received: int
  ) -> Tuple[db.Order, bool]:
    """Moves PROCESSING -> PAID once the gateway confirmed the payment.

    Args:
      order_id: The order to mark as paid.
      amount_received: The amount the gateway captured, in minor units.

    Returns:
      The order and whether this call changed it. Already PAID or COMPLETED
      orders are returned unchanged.

    Raises:
      AmountMismatchError: If the captured amount differs from the total.
      InvalidTransitionError: If the order is in any other state, e.g. a
        REFUNDED order never returns to PAID.
    """

    def check_amount(order: db.Order) -> None:
      if amount_received != order.total_amount:
        raise AmountMismatchError(
            order.id, order.total_amount, amount_received
        )

    return await self._transition(
        order_id,
        OrderStatus.PAID,
        changes=lambda order, now: {"paid_at": order.paid_at or now},
        already_applied=lambda order: order.status
        in (OrderStatus.PAID, OrderStatus.COMPLETED),
        validate=check_amount,
    )

  async def complete(self, order_id: str) -> Tuple[db.Order, bool]:
    return await self._transition(
        order_id,
        OrderStatus.COMPLETED,
        allowed_from=frozenset({OrderStatus.PAID}),
        changes=lambda order, now: {"completed_at": now},
    )

  async def cancel(
      self, order_id: str, reason: Optional[str] = None
  ) -> Tuple[db.Order, bool]:
    return await self._transition(
        order_id,
        OrderStatus.CANCELLED,
        changes=lambda order, now: {
            "cancelled_at": now,
            "cancellation_reason": reason,
        },
    )

  async def refund(self, order_id: str) -> Tuple[db.Order, bool]:
    return await self._transition(
        order_id,
        OrderStatus.REFUNDED,
        changes=lambda order, now: {"refunded_at": now},
    )

  async def dispute(self, order_id: str) -> Tuple[db.Order, bool]:
    return await self._transition(
        order_id,
        OrderStatus.DISPUTED,
        changes=lambda order, now: {"disputed_at": now},
    )

  async def resolve_dispute(
      self, order_id: str, seller_won: bool
  ) -> Tuple[db.Order, bool]:
    """Closes a dispute: COMPLETED when the seller won, REFUNDED otherwise."""
    if seller_won:
      return await self._transition(
          order_id,
          OrderStatus.COMPLETED,
          allowed_from=frozenset({OrderStatus.DISPUTED}),
          changes=lambda order, now: {
              "completed_at": order.completed_at or now
          },
      )
    return await self._transition(
        order_id,
        OrderStatus.REFUNDED,
        allowed_from=frozenset({OrderStatus.DISPUTED}),
        changes=lambda order, now: {"refunded_at": now},
    )

  async def expire_pending(self, older_than: datetime.timedelta) -> List[str]:
    """Cancels unpaid orders created more than `older_than` ago.

    Returns:
      The IDs of the orders this call cancelled.
    """
    cutoff = db.to_timestamp(db.utcnow() - older_than)
    stale_ids = await db.list_stale_order_ids(
        self.transactions_session,
        [s.value for s in UNPAID_STATUSES],
        cutoff,
    )
    cancelled = []
    for order_id in stale_ids:
      try:
        _, changed = await self.cancel(order_id, reason="expired")
      except InvalidTransitionError as e:
        # Paid between the query and the cancel.
        logger.info("Skipping expiry of order %s: %s", order_id, e.message)
        continue
      if changed:
        cancelled.append(order_id)
    if cancelled:
      logger.info("Expired %d unpaid orders", len(cancelled))
    return cancelled

  async def _transition(
      self,
      order_id: str,
      target: OrderStatus,
      changes: Any = None,
      allowed_from: Optional[FrozenSet[OrderStatus]] = None,
      already_applied: Optional[Callable[[db.Order], bool]] = None,
      validate: Optional[Callable[[db.Order], None]] = None,
  ) -> Tuple[db.Order, bool]:
    """Applies a status transition with optimistic concurrency control.

    Args:
      order_id: The order to transition.
      target: The status to move to.
      changes: Extra column values, either a dict or a callable taking the
        current order and the transition timestamp.
      allowed_from: Legal source statuses. Defaults to the transition table.
      already_applied: Predicate detecting that the transition is a no-op.
        Defaults to "the order is already in the target status".
      validate: Optional check run against the current order before writing.

    Returns:
      The (re-read) order and whether this call changed it.
    """
    allowed_from = allowed_from or TRANSITIONS[target]
    already_applied = already_applied or (
        lambda order: order.status == target
    )

    for attempt in range(1, _MAX_ATTEMPTS + 1):
      order = await self.get(order_id)
      if already_applied(order):
        return order, False
      current = OrderStatus(order.status)
      if current not in allowed_from:
        raise InvalidTransitionError(order.id, current.value, target.value)
      if validate:
        validate(order)

      now = db.to_timestamp(db.utcnow())
      values: Dict[str, Any] = {"status": target.value}
      if callable(changes):
        values.update(changes(order, now))
      elif changes:
        values.update(changes)

      previous = current.value
      if await db.update_order_if_version(
          self.transactions_session, order.id, order.version, values
      ):
        await self.transactions_session.commit()
        order = await self.get(order_id)
        logger.info(
            "Order %s: %s -> %s", order.order_number, previous, target.value
        )
        return order, True

      await self.transactions_session.rollback()
      logger.info(
          "Order %s changed concurrently (attempt %d), re-reading",
          order_id,
          attempt,
      )

    raise ConcurrentModificationError(order_id)
