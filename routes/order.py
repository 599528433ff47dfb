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

"""Order management routes for the order engine."""

import datetime
from typing import List, Optional

import dependencies
from enums import OrderStatus
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from models import CancelRequest
from models import CheckoutResponse
from models import GrantResponse
from models import OrderListResponse
from models import OrderResponse
from services.checkout_service import CheckoutService
from services.download_service import DownloadService
from services.order_service import OrderService

router = APIRouter()


@router.get(
    "/orders",
    response_model=OrderListResponse,
    operation_id="list_buyer_orders",
)
async def list_buyer_orders(
    buyer_reference: str = Depends(dependencies.buyer_reference_header),
    status: Optional[OrderStatus] = Query(None),
    created_from: Optional[datetime.datetime] = Query(None),
    created_to: Optional[datetime.datetime] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderListResponse:
  """List the caller's orders, newest first.

  Filters by status and by creation time; naive timestamps are read as UTC.
  """
  orders, total = await order_service.list_for_buyer(
      buyer_reference,
      status=status,
      created_from=created_from,
      created_to=created_to,
      limit=limit,
      offset=offset,
  )
  return OrderListResponse(
      orders=[OrderResponse.model_validate(o) for o in orders],
      total=total,
      limit=limit,
      offset=offset,
  )


@router.get(
    "/orders/{id}",
    response_model=OrderResponse,
    operation_id="get_order",
)
async def get_order(
    order_id: str = Path(..., alias="id"),
    buyer_reference: str = Depends(dependencies.buyer_reference_header),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderResponse:
  """Get one of the caller's orders by ID."""
  order = await order_service.get_for_buyer(order_id, buyer_reference)
  return OrderResponse.model_validate(order)


@router.post(
    "/orders/{id}/cancel",
    response_model=OrderResponse,
    operation_id="cancel_order",
)
async def cancel_order(
    order_id: str = Path(..., alias="id"),
    cancel_req: Optional[CancelRequest] = Body(None),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> OrderResponse:
  """Cancel an unpaid order."""
  reason = cancel_req.reason if cancel_req else None
  order = await checkout_service.cancel(order_id, reason)
  return OrderResponse.model_validate(order)


@router.post(
    "/orders/{id}/payment-session",
    response_model=CheckoutResponse,
    operation_id="retry_payment_session",
)
async def retry_payment_session(
    order_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutResponse:
  """Open a new payment session for a PENDING order.

  Used after a checkout whose gateway call timed out or failed to connect.
  """
  order, payment_session = await checkout_service.start_payment(order_id)
  return CheckoutResponse(
      order_id=order.id,
      order_number=order.order_number,
      total_amount=order.total_amount,
      currency=order.currency,
      redirect_url=payment_session.redirect_url,
      payment_reference=order.payment_reference,
  )


@router.post(
    "/orders/{id}/capture",
    response_model=OrderResponse,
    operation_id="capture_order",
)
async def capture_order(
    order_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> OrderResponse:
  """Confirm the payment of an order with the gateway."""
  order = await checkout_service.capture(order_id)
  return OrderResponse.model_validate(order)


@router.get(
    "/orders/{id}/downloads",
    response_model=List[GrantResponse],
    operation_id="list_order_downloads",
)
async def list_order_downloads(
    order_id: str = Path(..., alias="id"),
    buyer_reference: str = Depends(dependencies.buyer_reference_header),
    order_service: OrderService = Depends(dependencies.get_order_service),
    download_service: DownloadService = Depends(
        dependencies.get_download_service
    ),
) -> List[GrantResponse]:
  """List the download grants of one of the caller's orders."""
  order = await order_service.get_for_buyer(order_id, buyer_reference)
  grants = await download_service.list_grants(order.id)
  return [GrantResponse.model_validate(g) for g in grants]
