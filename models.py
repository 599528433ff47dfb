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

"""Wire and domain models for the order engine.

Request and response bodies of the HTTP surface, the immutable cart snapshot
that seeds an order, and the gateway-neutral value objects exchanged between
the payment gateway adapters and the services.
"""

from typing import Any, Dict, List, Optional, Tuple

from enums import CaptureStatus
from enums import PaymentAction
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import StrictInt


class SnapshotLineItem(BaseModel):
  """A single product as priced at checkout time."""

  model_config = ConfigDict(frozen=True)

  product_id: str
  title: str
  unit_price: int  # Minor units
  seller_id: Optional[str] = None


class CartSnapshot(BaseModel):
  """Immutable, ordered copy of a buyer's cart taken at checkout."""

  model_config = ConfigDict(frozen=True)

  buyer_reference: str
  items: Tuple[SnapshotLineItem, ...] = ()

  @property
  def is_empty(self) -> bool:
    return not self.items

  @property
  def product_ids(self) -> List[str]:
    return [item.product_id for item in self.items]


class FeeBreakdown(BaseModel):
  model_config = ConfigDict(frozen=True)

  subtotal: int
  platform_fee: int
  seller_amount: int
  total_amount: int
  platform_fee_rate: str


# --- Gateway value objects ---


class PaymentSession(BaseModel):
  external_reference: str
  redirect_url: Optional[str] = None


class CaptureResult(BaseModel):
  status: CaptureStatus
  amount_received: int = 0


class GatewayEvent(BaseModel):
  """A gateway notification normalized to a canonical action."""

  event_id: str
  event_type: str
  action: Optional[PaymentAction] = None
  payment_reference: Optional[str] = None
  order_id: Optional[str] = None
  # Minor units; provider payloads carrying strings or decimals are malformed.
  amount: Optional[StrictInt] = None
  reason: Optional[str] = None


class WebhookEnvelope(BaseModel):
  """The `{id, type, data, created}` envelope shared by all gateways."""

  id: str
  type: str
  data: Dict[str, Any] = Field(default_factory=dict)
  created: Optional[int] = None


class WebhookAck(BaseModel):
  status: str = "ok"
  duplicate: bool = False
  outcome: str


# --- HTTP request/response bodies ---


class CheckoutRequest(BaseModel):
  buyer_reference: str = Field(..., min_length=1)
  # When omitted the whole cart is checked out.
  product_ids: Optional[List[str]] = None


class CheckoutResponse(BaseModel):
  order_id: str
  order_number: str
  total_amount: int
  currency: str
  redirect_url: Optional[str] = None
  payment_reference: Optional[str] = None


class CancelRequest(BaseModel):
  reason: Optional[str] = None


class OrderLineItem(BaseModel):
  product_id: str
  title: str
  unit_price: int
  seller_id: Optional[str] = None


class OrderResponse(BaseModel):
  """Public view of an order."""

  model_config = ConfigDict(from_attributes=True)

  id: str
  order_number: str
  buyer_reference: str
  status: str
  currency: str
  line_items: List[OrderLineItem]
  subtotal: int
  platform_fee_rate: str
  platform_fee: int
  seller_amount: int
  total_amount: int
  gateway: Optional[str] = None
  payment_reference: Optional[str] = None
  cancellation_reason: Optional[str] = None
  created_at: str
  paid_at: Optional[str] = None
  completed_at: Optional[str] = None
  cancelled_at: Optional[str] = None
  refunded_at: Optional[str] = None
  disputed_at: Optional[str] = None


class OrderListResponse(BaseModel):
  """One page of a buyer's orders."""

  orders: List[OrderResponse]
  total: int
  limit: int
  offset: int


class GrantResponse(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  token: str
  product_id: str
  download_limit: int
  download_count: int
  expires_at: str
  is_active: bool


class DownloadResponse(BaseModel):
  file_reference: str
  downloads_remaining: int
  expires_at: str


class PaymentAnomaly(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  external_event_id: str
  event_type: str
  order_reference: Optional[str] = None
  received_at: str
  processed_at: Optional[str] = None
  detail: Optional[str] = None
