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

"""Checkout route turning a buyer's cart into an order."""

from typing import Optional

import dependencies
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from models import CheckoutRequest
from models import CheckoutResponse
from services.checkout_service import CheckoutService

router = APIRouter()


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=201,
    operation_id="create_checkout",
)
async def create_checkout(
    checkout_req: CheckoutRequest = Body(...),
    idempotency_key: Optional[str] = Depends(dependencies.idempotency_header),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutResponse:
  """Create a PENDING order from the cart and open a payment session."""
  return await checkout_service.checkout(checkout_req, idempotency_key)
