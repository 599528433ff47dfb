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

"""Custom exceptions for the order engine.

Every error carries a stable `code`, the HTTP status it maps to, and whether
the caller may retry. Clients use `retryable` to tell "try again later" apart
from "this will never succeed".
"""


class EngineError(Exception):
  """Base class for all order engine exceptions."""

  def __init__(
      self,
      message: str,
      code: str = "INTERNAL_ERROR",
      status_code: int = 500,
      retryable: bool = False,
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    self.retryable = retryable
    super().__init__(self.message)


# --- Validation errors ---


class InvalidRequestError(EngineError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)


class EmptyCartError(EngineError):
  """Raised when checkout is attempted with nothing to buy."""

  def __init__(self, message: str = "Cart is empty"):
    super().__init__(message, code="EMPTY_CART", status_code=400)


class WebhookSignatureError(EngineError):
  """Raised when a webhook delivery fails signature verification."""

  def __init__(self, message: str = "Invalid webhook signature"):
    super().__init__(message, code="INVALID_SIGNATURE", status_code=400)


class IdempotencyConflictError(EngineError):
  """Raised when an idempotency key is reused with different parameters."""

  def __init__(self, message: str):
    super().__init__(message, code="IDEMPOTENCY_CONFLICT", status_code=409)


class ResourceNotFoundError(EngineError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


# --- Transition errors ---


class InvalidTransitionError(EngineError):
  """Raised when an order cannot move to the requested status."""

  def __init__(self, order_id: str, current: str, target: str):
    super().__init__(
        f"Cannot move order {order_id} from {current} to {target}",
        code="INVALID_TRANSITION",
        status_code=409,
    )
    self.order_id = order_id
    self.current = current
    self.target = target


class AmountMismatchError(EngineError):
  """Raised when a confirmed payment does not match the order total."""

  def __init__(self, order_id: str, expected: int, received: int):
    super().__init__(
        f"Order {order_id} expects {expected} but gateway reported"
        f" {received}",
        code="AMOUNT_MISMATCH",
        status_code=409,
    )
    self.order_id = order_id
    self.expected = expected
    self.received = received


class OrderNotPaidError(EngineError):
  """Raised when downloads are requested for an order that is not paid."""

  def __init__(self, order_id: str, status: str):
    super().__init__(
        f"Order {order_id} is {status}; downloads require payment",
        code="ORDER_NOT_PAID",
        status_code=409,
    )
    self.order_id = order_id
    self.status = status


# --- Transient infrastructure errors ---


class ConcurrentModificationError(EngineError):
  """Raised when an order keeps changing underneath a transition."""

  def __init__(self, order_id: str):
    super().__init__(
        f"Order {order_id} was modified concurrently",
        code="CONCURRENT_MODIFICATION",
        status_code=409,
        retryable=True,
    )


class OrderNumberUnavailableError(EngineError):
  """Raised when the order number counter cannot be advanced."""

  def __init__(self, message: str = "Order number sequence unavailable"):
    super().__init__(
        message, code="SEQUENCE_UNAVAILABLE", status_code=503, retryable=True
    )


class GatewayError(EngineError):
  """Base class for payment gateway failures."""


class PaymentDeclinedError(GatewayError):
  """Raised when the gateway declines the payment."""

  def __init__(self, message: str, code: str = "PAYMENT_DECLINED"):
    super().__init__(message, code=code, status_code=402)


class PaymentSessionExpiredError(GatewayError):
  """Raised when the gateway reports the payment session as expired."""

  def __init__(self, message: str):
    super().__init__(message, code="PAYMENT_SESSION_EXPIRED", status_code=410)


class GatewayNetworkError(GatewayError):
  """Raised when the gateway cannot be reached."""

  def __init__(self, message: str, code: str = "GATEWAY_UNAVAILABLE"):
    super().__init__(message, code=code, status_code=503, retryable=True)


class GatewayTimeoutError(GatewayNetworkError):
  """Raised when a gateway call times out; the outcome is unknown."""

  def __init__(self, message: str):
    super().__init__(message, code="GATEWAY_TIMEOUT")
    self.status_code = 504


# --- Exhaustion errors ---


class TokenNotFoundError(EngineError):
  """Raised when a download token does not exist."""

  def __init__(self, message: str = "Download token not found"):
    super().__init__(message, code="TOKEN_NOT_FOUND", status_code=404)


class TokenExpiredError(EngineError):
  """Raised when a download token is past its expiry."""

  def __init__(self, message: str = "Download token has expired"):
    super().__init__(message, code="TOKEN_EXPIRED", status_code=410)


class TokenExhaustedError(EngineError):
  """Raised when a download token has no downloads left."""

  def __init__(self, message: str = "Download limit reached"):
    super().__init__(message, code="TOKEN_EXHAUSTED", status_code=429)


class TokenRevokedError(EngineError):
  """Raised when a download token was revoked, e.g. by a refund."""

  def __init__(self, message: str = "Download token has been revoked"):
    super().__init__(message, code="TOKEN_REVOKED", status_code=410)
