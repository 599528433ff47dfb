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

"""FastAPI dependencies for the order engine.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Database session management (Products and Transactions DBs).
- Settings, payment gateway and notifier providers.
- Service instantiation, one set per request sharing one transactions session.
- Header extraction (Idempotency-Key, Buyer-Reference, Admin-Secret).
"""

import hmac
from typing import AsyncGenerator, Optional

import config
import db
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from services.cart_service import CartService
from services.checkout_service import CheckoutService
from services.download_service import DownloadService
from services.fee_calculator import FeeCalculator
from services.fulfillment_service import FulfillmentService
from services.notification_service import Notifier
from services.order_service import OrderService
from services.payment_gateway import build_gateway
from services.payment_gateway import PaymentGateway
from services.webhook_processor import WebhookProcessor
from sqlalchemy.ext.asyncio import AsyncSession


def get_settings() -> config.Settings:
  """Dependency provider for the runtime settings."""
  return config.get_settings()


async def get_products_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for Products DB session."""
  async with db.manager.products_session_factory() as session:
    yield session


async def get_transactions_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for Transactions DB session."""
  async with db.manager.transactions_session_factory() as session:
    yield session


async def idempotency_header(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> Optional[str]:
  """Extracts the optional Idempotency-Key header."""
  return idempotency_key


async def buyer_reference_header(
    buyer_reference: str = Header(..., alias="Buyer-Reference"),
) -> str:
  """Extracts the Buyer-Reference header identifying the caller."""
  return buyer_reference


async def verify_admin_secret(
    admin_secret: Optional[str] = Header(None, alias="Admin-Secret"),
    settings: config.Settings = Depends(get_settings),
) -> None:
  """Verifies the secret for admin endpoints."""
  expected_secret = settings.admin_secret
  if not expected_secret:
    raise HTTPException(status_code=500, detail="Admin secret not configured")

  if not admin_secret or not hmac.compare_digest(admin_secret, expected_secret):
    raise HTTPException(status_code=403, detail="Invalid Admin Secret")


def get_payment_gateway(
    request: Request,
    settings: config.Settings = Depends(get_settings),
) -> PaymentGateway:
  """Dependency provider for the gateway, created once per application."""
  gateway = getattr(request.app.state, "payment_gateway", None)
  if gateway is None:
    gateway = build_gateway(settings)
    request.app.state.payment_gateway = gateway
  return gateway


def get_notifier(
    settings: config.Settings = Depends(get_settings),
) -> Notifier:
  """Dependency provider for Notifier."""
  return Notifier(settings.notification_url)


def get_cart_service(
    products_session: AsyncSession = Depends(get_products_db),
    transactions_session: AsyncSession = Depends(get_transactions_db),
) -> CartService:
  """Dependency provider for CartService."""
  return CartService(products_session, transactions_session)


def get_order_service(
    transactions_session: AsyncSession = Depends(get_transactions_db),
    settings: config.Settings = Depends(get_settings),
) -> OrderService:
  """Dependency provider for OrderService."""
  return OrderService(
      transactions_session,
      FeeCalculator(settings.platform_fee_rate),
      currency=settings.currency,
  )


def get_download_service(
    products_session: AsyncSession = Depends(get_products_db),
    transactions_session: AsyncSession = Depends(get_transactions_db),
    settings: config.Settings = Depends(get_settings),
) -> DownloadService:
  """Dependency provider for DownloadService."""
  return DownloadService(
      products_session,
      transactions_session,
      download_limit=settings.download_limit,
      download_ttl_days=settings.download_ttl_days,
  )


def get_fulfillment_service(
    order_service: OrderService = Depends(get_order_service),
    download_service: DownloadService = Depends(get_download_service),
    notifier: Notifier = Depends(get_notifier),
    cart_service: CartService = Depends(get_cart_service),
) -> FulfillmentService:
  """Dependency provider for FulfillmentService."""
  return FulfillmentService(
      order_service, download_service, notifier, cart_service
  )


def get_checkout_service(
    transactions_session: AsyncSession = Depends(get_transactions_db),
    cart_service: CartService = Depends(get_cart_service),
    order_service: OrderService = Depends(get_order_service),
    fulfillment_service: FulfillmentService = Depends(get_fulfillment_service),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> CheckoutService:
  """Dependency provider for CheckoutService."""
  return CheckoutService(
      transactions_session,
      cart_service,
      order_service,
      fulfillment_service,
      gateway,
      notifier,
  )


def get_webhook_processor(
    transactions_session: AsyncSession = Depends(get_transactions_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    order_service: OrderService = Depends(get_order_service),
    fulfillment_service: FulfillmentService = Depends(get_fulfillment_service),
    notifier: Notifier = Depends(get_notifier),
) -> WebhookProcessor:
  """Dependency provider for WebhookProcessor."""
  return WebhookProcessor(
      transactions_session,
      gateway,
      order_service,
      fulfillment_service,
      notifier,
  )
