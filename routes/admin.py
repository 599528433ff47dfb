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

"""Operator routes, guarded by the Admin-Secret header."""

from typing import Dict, List

import db
import dependencies
from enums import OrderStatus
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from models import PaymentAnomaly
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(
    prefix="/admin",
    dependencies=[Depends(dependencies.verify_admin_secret)],
)


@router.get(
    "/payment-anomalies",
    response_model=List[PaymentAnomaly],
    operation_id="list_payment_anomalies",
)
async def list_payment_anomalies(
    limit: int = Query(100, ge=1, le=1000),
    transactions_session: AsyncSession = Depends(
        dependencies.get_transactions_db
    ),
) -> List[PaymentAnomaly]:
  """List webhook events whose effect was rejected, newest first."""
  events = await db.list_payment_anomalies(transactions_session, limit)
  return [PaymentAnomaly.model_validate(e) for e in events]


@router.get(
    "/order-stats",
    response_model=Dict[str, int],
    operation_id="order_stats",
)
async def order_stats(
    transactions_session: AsyncSession = Depends(
        dependencies.get_transactions_db
    ),
) -> Dict[str, int]:
  """Count orders per status."""
  counts = await db.count_orders_by_status(transactions_session)
  # Report every status, including those without orders.
  return {status.value: counts.get(status.value, 0) for status in OrderStatus}
