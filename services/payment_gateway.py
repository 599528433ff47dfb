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

"""Payment gateway adapters.

This module provides the `PaymentGateway` interface and its variants:
- `MockGateway`: an in-process gateway for local development and tests.
- `StripeGateway`: Stripe Checkout through the official `stripe` SDK.
- `PayPalGateway`: PayPal Orders v2 over its REST API with `httpx`.

Adapters translate provider specifics into the engine's vocabulary: sessions
become a `PaymentSession`, captures a `CaptureResult`, and webhook deliveries a
`GatewayEvent` carrying a canonical `PaymentAction`. Provider failures surface
as typed `GatewayError`s. Every outbound call is bounded by a timeout and none
is retried here; retrying is the caller's decision.
"""

import abc
import asyncio
import contextlib
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Awaitable, Dict, Optional
import uuid

import db
from enums import CaptureStatus
from enums import PaymentAction
from exceptions import GatewayError
from exceptions import GatewayNetworkError
from exceptions import GatewayTimeoutError
from exceptions import InvalidRequestError
from exceptions import PaymentDeclinedError
from exceptions import PaymentSessionExpiredError
from exceptions import WebhookSignatureError
import httpx
from models import CaptureResult
from models import GatewayEvent
from models import PaymentSession
from models import WebhookEnvelope
from services.fee_calculator import format_amount
from services.fee_calculator import to_minor_units
import stripe

logger = logging.getLogger(__name__)

_SIGNATURE_PREFIX = "sha256="


def sign_payload(payload: bytes, secret: str) -> str:
  """Returns the hex HMAC-SHA256 of a webhook body."""
  return hmac.new(
      secret.encode("utf-8"), payload, hashlib.sha256
  ).hexdigest()


class PaymentGateway(abc.ABC):
  """Interface every payment provider adapter implements."""

  name = "gateway"
  signature_header = "Payment-Signature"

  def __init__(
      self,
      webhook_secret: str = "",
      timeout_seconds: float = 10.0,
  ):
    self.webhook_secret = webhook_secret
    self.timeout_seconds = timeout_seconds

  async def create_session(self, order: db.Order) -> PaymentSession:
    """Opens a hosted payment session for the order's total."""
    return await self._bounded("create_session", self._create_session(order))

  async def capture(self, external_reference: str) -> CaptureResult:
    """Confirms or captures the payment behind a session."""
    return await self._bounded("capture", self._capture(external_reference))

  def verify_signature(self, payload: bytes, header: Optional[str]) -> None:
    """Checks a webhook signature.

    The default scheme is a hex HMAC-SHA256 of the raw body keyed with the
    webhook secret, optionally prefixed with "sha256=". Without a configured
    secret every delivery is rejected.

    Raises:
      WebhookSignatureError: If the signature is missing or does not match.
    """
    if not self.webhook_secret or not header:
      raise WebhookSignatureError()
    provided = header.strip()
    if provided.startswith(_SIGNATURE_PREFIX):
      provided = provided[len(_SIGNATURE_PREFIX):]
    expected = sign_payload(payload, self.webhook_secret)
    if not hmac.compare_digest(expected, provided):
      raise WebhookSignatureError()

  async def parse_event(self, payload: bytes) -> GatewayEvent:
    """Normalizes a verified webhook body into a `GatewayEvent`.

    Events the engine does not act on come back with `action=None`.

    Raises:
      InvalidRequestError: If the body is not a valid event envelope.
    """
    try:
      raw = json.loads(payload)
      envelope = self._load_envelope(raw)
      return await self._to_event(envelope)
    except (ValueError, TypeError) as e:
      raise InvalidRequestError(f"Malformed webhook payload: {e}") from e

  def _load_envelope(self, raw: Any) -> WebhookEnvelope:
    return WebhookEnvelope.model_validate(raw)

  async def _bounded(self, operation: str, call: Awaitable[Any]) -> Any:
    try:
      return await asyncio.wait_for(call, timeout=self.timeout_seconds)
    except asyncio.TimeoutError as e:
      logger.warning(
          "%s %s timed out after %.1fs",
          self.name,
          operation,
          self.timeout_seconds,
      )
      raise GatewayTimeoutError(
          f"{self.name} {operation} timed out; outcome unknown"
      ) from e

  @abc.abstractmethod
  async def _create_session(self, order: db.Order) -> PaymentSession:
    pass

  @abc.abstractmethod
  async def _capture(self, external_reference: str) -> CaptureResult:
    pass

  @abc.abstractmethod
  async def _to_event(self, envelope: WebhookEnvelope) -> GatewayEvent:
    pass


class MockGateway(PaymentGateway):
  """In-process gateway that accepts every payment.

  Webhook envelopes use the canonical action names as their `type` and carry
  `payment_reference`, `order_id`, `amount` and `reason` in `data`.
  """

  name = "mock"

  def __init__(
      self,
      webhook_secret: str = "",
      timeout_seconds: float = 10.0,
      frontend_url: str = "http://localhost:3000",
      fail_with: Optional[Exception] = None,
      delay_seconds: float = 0.0,
  ):
    super().__init__(webhook_secret, timeout_seconds)
    self.frontend_url = frontend_url.rstrip("/")
    self.fail_with = fail_with
    self.delay_seconds = delay_seconds
    self.sessions: Dict[str, int] = {}
    self.expired: set[str] = set()

  def expire(self, external_reference: str) -> None:
    self.expired.add(external_reference)

  async def _simulate_latency(self) -> None:
    if self.delay_seconds:
      await asyncio.sleep(self.delay_seconds)
    if self.fail_with:
      raise self.fail_with

  async def _create_session(self, order: db.Order) -> PaymentSession:
    await self._simulate_latency()
    reference = f"mock_sess_{uuid.uuid4().hex}"
    self.sessions[reference] = order.total_amount
    return PaymentSession(
        external_reference=reference,
        redirect_url=f"{self.frontend_url}/mock-checkout/{reference}",
    )

  async def _capture(self, external_reference: str) -> CaptureResult:
    await self._simulate_latency()
    if (
        external_reference in self.expired
        or external_reference not in self.sessions
    ):
      raise PaymentSessionExpiredError(
          f"Mock session {external_reference} is unknown or expired"
      )
    return CaptureResult(
        status=CaptureStatus.SUCCEEDED,
        amount_received=self.sessions[external_reference],
    )

  async def _to_event(self, envelope: WebhookEnvelope) -> GatewayEvent:
    try:
      action = PaymentAction(envelope.type)
    except ValueError:
      action = None
    data = envelope.data
    return GatewayEvent(
        event_id=envelope.id,
        event_type=envelope.type,
        action=action,
        payment_reference=data.get("payment_reference"),
        order_id=data.get("order_id"),
        amount=data.get("amount"),
        reason=data.get("reason"),
    )


class StripeGateway(PaymentGateway):
  """Stripe Checkout adapter.

  The checkout session ID is the payment reference. The order ID travels in
  the session and payment intent metadata so events about payment intents and
  charges can be matched back to the order.
  """

  name = "stripe"
  signature_header = "Stripe-Signature"

  def __init__(
      self,
      api_key: str,
      webhook_secret: str = "",
      timeout_seconds: float = 10.0,
      frontend_url: str = "http://localhost:3000",
      tolerance_seconds: int = 300,
  ):
    super().__init__(webhook_secret, timeout_seconds)
    self.api_key = api_key
    self.frontend_url = frontend_url.rstrip("/")
    self.tolerance_seconds = tolerance_seconds

  def verify_signature(self, payload: bytes, header: Optional[str]) -> None:
    """Verifies a timestamped `Stripe-Signature` header."""
    if not self.webhook_secret or not header:
      raise WebhookSignatureError()
    try:
      stripe.WebhookSignature.verify_header(
          payload.decode("utf-8"),
          header,
          self.webhook_secret,
          self.tolerance_seconds,
      )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
      raise WebhookSignatureError(f"Invalid Stripe signature: {e}") from e

  async def _sdk(self, method, *args, **kwargs) -> Any:
    """Runs a blocking SDK call in a worker thread and maps its errors."""
    try:
      return await asyncio.to_thread(
          method, *args, api_key=self.api_key, **kwargs
      )
    except stripe.CardError as e:
      raise PaymentDeclinedError(
          e.user_message or str(e), code=e.code or "PAYMENT_DECLINED"
      ) from e
    except stripe.APIConnectionError as e:
      raise GatewayNetworkError(f"Stripe unreachable: {e}") from e
    except stripe.StripeError as e:
      if e.http_status and e.http_status >= 500:
        raise GatewayNetworkError(f"Stripe unavailable: {e}") from e
      raise GatewayError(
          f"Stripe request failed: {e}", code="GATEWAY_ERROR", status_code=502
      ) from e

  async def _create_session(self, order: db.Order) -> PaymentSession:
    currency = order.currency.lower()
    line_items = [
        {
            "price_data": {
                "currency": currency,
                "unit_amount": item["unit_price"],
                "product_data": {"name": item["title"]},
            },
            "quantity": 1,
        }
        for item in order.line_items
    ]
    if order.platform_fee:
      line_items.append({
          "price_data": {
              "currency": currency,
              "unit_amount": order.platform_fee,
              "product_data": {"name": "Platform fee"},
          },
          "quantity": 1,
      })
    metadata = {"order_id": order.id, "order_number": order.order_number}
    session = await self._sdk(
        stripe.checkout.Session.create,
        mode="payment",
        line_items=line_items,
        client_reference_id=order.id,
        metadata=metadata,
        payment_intent_data={"metadata": metadata},
        success_url=(
            f"{self.frontend_url}/checkout/success"
            "?session_id={CHECKOUT_SESSION_ID}"
        ),
        cancel_url=f"{self.frontend_url}/checkout/cancel?order={order.id}",
        idempotency_key=f"session-{order.id}-{order.version}",
    )
    logger.info("Created Stripe session %s for %s", session.id, order.id)
    return PaymentSession(external_reference=session.id, redirect_url=session.url)

  async def _capture(self, external_reference: str) -> CaptureResult:
    session = await self._sdk(
        stripe.checkout.Session.retrieve, external_reference
    )
    if session.status == "expired":
      raise PaymentSessionExpiredError(
          f"Stripe session {external_reference} has expired"
      )
    if session.payment_status in ("paid", "no_payment_required"):
      return CaptureResult(
          status=CaptureStatus.SUCCEEDED,
          amount_received=session.amount_total or 0,
      )
    return CaptureResult(status=CaptureStatus.PENDING)

  async def _order_id_for_intent(self, payment_intent: Optional[str]) -> Any:
    if not payment_intent:
      return None
    intent = await self._bounded(
        "retrieve_intent",
        self._sdk(stripe.PaymentIntent.retrieve, payment_intent),
    )
    return (intent.metadata or {}).get("order_id")

  async def _to_event(self, envelope: WebhookEnvelope) -> GatewayEvent:
    obj = envelope.data.get("object", {})
    metadata = obj.get("metadata") or {}
    event = GatewayEvent(
        event_id=envelope.id,
        event_type=envelope.type,
        order_id=metadata.get("order_id"),
    )

    if envelope.type in (
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    ):
      if obj.get("payment_status") == "paid":
        event.action = PaymentAction.PAYMENT_SUCCEEDED
      event.payment_reference = obj.get("id")
      event.amount = obj.get("amount_total")
    elif envelope.type == "checkout.session.async_payment_failed":
      event.action = PaymentAction.PAYMENT_FAILED
      event.payment_reference = obj.get("id")
    elif envelope.type == "checkout.session.expired":
      event.action = PaymentAction.SESSION_EXPIRED
      event.payment_reference = obj.get("id")
      event.reason = "session expired"
    elif envelope.type == "payment_intent.succeeded":
      event.action = PaymentAction.PAYMENT_SUCCEEDED
      event.amount = obj.get("amount_received")
    elif envelope.type == "payment_intent.payment_failed":
      event.action = PaymentAction.PAYMENT_FAILED
      error = obj.get("last_payment_error") or {}
      event.reason = error.get("message")
    elif envelope.type == "payment_intent.canceled":
      event.action = PaymentAction.PAYMENT_CANCELED
      event.reason = obj.get("cancellation_reason")
    elif envelope.type == "charge.refunded":
      # Partial refunds leave the order as is.
      if obj.get("refunded"):
        event.action = PaymentAction.PAYMENT_REFUNDED
      event.amount = obj.get("amount_refunded")
    elif envelope.type in ("charge.dispute.created", "charge.dispute.closed"):
      # Disputes carry no metadata of their own.
      if not event.order_id:
        event.order_id = await self._order_id_for_intent(
            obj.get("payment_intent")
        )
      event.reason = obj.get("reason")
      if envelope.type == "charge.dispute.created":
        event.action = PaymentAction.DISPUTE_OPENED
      elif obj.get("status") == "won":
        event.action = PaymentAction.DISPUTE_WON
      elif obj.get("status") == "lost":
        event.action = PaymentAction.DISPUTE_LOST
    return event


class PayPalGateway(PaymentGateway):
  """PayPal Orders v2 adapter.

  The PayPal order ID is the payment reference; the engine's order ID is sent
  as the purchase unit's `custom_id`, which PayPal copies onto captures,
  refunds and disputes.
  """

  name = "paypal"

  # Refresh the access token slightly before PayPal expires it.
  _TOKEN_EXPIRY_MARGIN_SECONDS = 60

  def __init__(
      self,
      client_id: str,
      client_secret: str,
      base_url: str = "https://api-m.sandbox.paypal.com",
      webhook_secret: str = "",
      timeout_seconds: float = 10.0,
      frontend_url: str = "http://localhost:3000",
      http_client: Optional[httpx.AsyncClient] = None,
  ):
    super().__init__(webhook_secret, timeout_seconds)
    self.client_id = client_id
    self.client_secret = client_secret
    self.base_url = base_url.rstrip("/")
    self.frontend_url = frontend_url.rstrip("/")
    self._http_client = http_client
    self._access_token: Optional[str] = None
    self._token_expires_at = 0.0

  @contextlib.asynccontextmanager
  async def _client(self):
    if self._http_client is not None:
      yield self._http_client
      return
    async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
      yield client

  async def _request(
      self, method: str, path: str, **kwargs: Any
  ) -> httpx.Response:
    try:
      async with self._client() as client:
        response = await client.request(
            method, f"{self.base_url}{path}", **kwargs
        )
    except httpx.TimeoutException as e:
      raise GatewayTimeoutError(f"PayPal {path} timed out") from e
    except httpx.TransportError as e:
      raise GatewayNetworkError(f"PayPal unreachable: {e}") from e
    if response.status_code >= 500:
      raise GatewayNetworkError(
          f"PayPal returned {response.status_code} for {path}"
      )
    return response

  async def _get_access_token(self) -> str:
    if self._access_token and time.monotonic() < self._token_expires_at:
      return self._access_token

    response = await self._request(
        "POST",
        "/v1/oauth2/token",
        auth=(self.client_id, self.client_secret),
        data={"grant_type": "client_credentials"},
    )
    if response.status_code != 200:
      raise GatewayError(
          f"PayPal authentication failed: {response.status_code}",
          code="GATEWAY_AUTH_FAILED",
          status_code=502,
      )
    data = response.json()
    self._access_token = data["access_token"]
    self._token_expires_at = time.monotonic() + max(
        0, int(data.get("expires_in", 0)) - self._TOKEN_EXPIRY_MARGIN_SECONDS
    )
    logger.info("Obtained PayPal access token")
    return self._access_token

  async def _authorized(
      self, method: str, path: str, **kwargs: Any
  ) -> httpx.Response:
    token = await self._get_access_token()
    headers = kwargs.pop("headers", {})
    headers["Authorization"] = f"Bearer {token}"
    return await self._request(method, path, headers=headers, **kwargs)

  async def _create_session(self, order: db.Order) -> PaymentSession:
    currency = order.currency.upper()
    body = {
        "intent": "CAPTURE",
        "purchase_units": [{
            "reference_id": order.order_number,
            "custom_id": order.id,
            "amount": {
                "currency_code": currency,
                "value": format_amount(order.total_amount),
                "breakdown": {
                    "item_total": {
                        "currency_code": currency,
                        "value": format_amount(order.subtotal),
                    },
                    "handling": {
                        "currency_code": currency,
                        "value": format_amount(order.platform_fee),
                    },
                },
            },
            "items": [
                {
                    "name": item["title"],
                    "quantity": "1",
                    "category": "DIGITAL_GOODS",
                    "unit_amount": {
                        "currency_code": currency,
                        "value": format_amount(item["unit_price"]),
                    },
                }
                for item in order.line_items
            ],
        }],
        "application_context": {
            "return_url": f"{self.frontend_url}/checkout/success",
            "cancel_url": f"{self.frontend_url}/checkout/cancel",
            "shipping_preference": "NO_SHIPPING",
            "user_action": "PAY_NOW",
        },
    }
    response = await self._authorized(
        "POST",
        "/v2/checkout/orders",
        json=body,
        headers={"PayPal-Request-Id": f"order-{order.id}-{order.version}"},
    )
    if response.status_code not in (200, 201):
      raise GatewayError(
          f"PayPal order creation failed: {response.text}",
          code="GATEWAY_ERROR",
          status_code=502,
      )
    data = response.json()
    approve_url = next(
        (
            link["href"]
            for link in data.get("links", [])
            if link.get("rel") in ("approve", "payer-action")
        ),
        None,
    )
    logger.info("Created PayPal order %s for %s", data["id"], order.id)
    return PaymentSession(external_reference=data["id"], redirect_url=approve_url)

  def _capture_result(self, data: Dict[str, Any]) -> CaptureResult:
    units = data.get("purchase_units") or [{}]
    captures = (units[0].get("payments") or {}).get("captures") or []
    if not captures:
      return CaptureResult(status=CaptureStatus.PENDING)
    capture = captures[0]
    status = capture.get("status")
    if status == "COMPLETED":
      return CaptureResult(
          status=CaptureStatus.SUCCEEDED,
          amount_received=to_minor_units(capture["amount"]["value"]),
      )
    if status in ("DECLINED", "FAILED"):
      return CaptureResult(status=CaptureStatus.DECLINED)
    return CaptureResult(status=CaptureStatus.PENDING)

  async def _capture(self, external_reference: str) -> CaptureResult:
    response = await self._authorized(
        "POST",
        f"/v2/checkout/orders/{external_reference}/capture",
        json={},
        headers={"PayPal-Request-Id": f"capture-{external_reference}"},
    )
    if response.status_code in (200, 201):
      return self._capture_result(response.json())
    if response.status_code == 404:
      raise PaymentSessionExpiredError(
          f"PayPal order {external_reference} not found or expired"
      )

    details = response.json().get("details") or [{}]
    issue = details[0].get("issue")
    if issue == "ORDER_NOT_APPROVED":
      return CaptureResult(status=CaptureStatus.PENDING)
    if issue == "ORDER_ALREADY_CAPTURED":
      order_response = await self._authorized(
          "GET", f"/v2/checkout/orders/{external_reference}"
      )
      return self._capture_result(order_response.json())
    if issue in ("INSTRUMENT_DECLINED", "TRANSACTION_REFUSED"):
      raise PaymentDeclinedError(
          f"PayPal declined order {external_reference}", code=issue
      )
    raise GatewayError(
        f"PayPal capture failed: {issue or response.status_code}",
        code="GATEWAY_ERROR",
        status_code=502,
    )

  def _load_envelope(self, raw: Any) -> WebhookEnvelope:
    if not isinstance(raw, dict):
      raise ValueError("envelope must be an object")
    return WebhookEnvelope(
        id=raw.get("id"),
        type=raw.get("event_type"),
        data=raw.get("resource") or {},
    )

  async def _to_event(self, envelope: WebhookEnvelope) -> GatewayEvent:
    resource = envelope.data
    event = GatewayEvent(
        event_id=envelope.id,
        event_type=envelope.type,
        order_id=resource.get("custom_id"),
    )
    related = (resource.get("supplementary_data") or {}).get("related_ids", {})
    amount = (resource.get("amount") or {}).get("value")

    if envelope.type == "PAYMENT.CAPTURE.COMPLETED":
      event.action = PaymentAction.PAYMENT_SUCCEEDED
      event.payment_reference = related.get("order_id")
      event.amount = to_minor_units(amount) if amount is not None else None
    elif envelope.type == "PAYMENT.CAPTURE.DENIED":
      event.action = PaymentAction.PAYMENT_FAILED
      event.payment_reference = related.get("order_id")
    elif envelope.type in ("PAYMENT.CAPTURE.REFUNDED", "PAYMENT.CAPTURE.REVERSED"):
      event.action = PaymentAction.PAYMENT_REFUNDED
      event.payment_reference = related.get("order_id")
    elif envelope.type == "CHECKOUT.ORDER.VOIDED":
      event.action = PaymentAction.PAYMENT_CANCELED
      event.payment_reference = resource.get("id")
    elif envelope.type.startswith("CUSTOMER.DISPUTE."):
      transactions = resource.get("disputed_transactions") or [{}]
      event.order_id = event.order_id or transactions[0].get("custom")
      event.reason = resource.get("reason")
      if envelope.type == "CUSTOMER.DISPUTE.CREATED":
        event.action = PaymentAction.DISPUTE_OPENED
      elif envelope.type == "CUSTOMER.DISPUTE.RESOLVED":
        outcome = (resource.get("dispute_outcome") or {}).get("outcome_code")
        if outcome == "RESOLVED_SELLER_FAVOUR":
          event.action = PaymentAction.DISPUTE_WON
        elif outcome == "RESOLVED_BUYER_FAVOUR":
          event.action = PaymentAction.DISPUTE_LOST
    return event


def build_gateway(settings, http_client=None) -> PaymentGateway:
  """Creates the gateway variant selected by `settings.payment_gateway`."""
  if settings.payment_gateway == "stripe":
    if not settings.stripe_api_key:
      raise ValueError("--stripe_api_key is required for the Stripe gateway")
    return StripeGateway(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.webhook_secret,
        timeout_seconds=settings.gateway_timeout_seconds,
        frontend_url=settings.frontend_url,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )
  if settings.payment_gateway == "paypal":
    if not settings.paypal_client_id or not settings.paypal_client_secret:
      raise ValueError("PayPal client credentials are required")
    return PayPalGateway(
        client_id=settings.paypal_client_id,
        client_secret=settings.paypal_client_secret,
        base_url=settings.paypal_base_url,
        webhook_secret=settings.webhook_secret,
        timeout_seconds=settings.gateway_timeout_seconds,
        frontend_url=settings.frontend_url,
        http_client=http_client,
    )
  return MockGateway(
      webhook_secret=settings.webhook_secret,
      timeout_seconds=settings.gateway_timeout_seconds,
      frontend_url=settings.frontend_url,
  )
