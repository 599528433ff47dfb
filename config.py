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

"""Shared configuration and startup logic for the order engine."""

import contextlib
import decimal
from typing import Optional

from absl import flags
import db
from fastapi import FastAPI
from pydantic import BaseModel
from pydantic import field_validator

FLAGS = flags.FLAGS

SERVER_VERSION = "1.0.0"

_SETTINGS_CACHE = None


# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string("products_db_path", None, "Path to products DB")
  flags.DEFINE_string("transactions_db_path", None, "Path to transactions DB")
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string(
      "platform_fee_rate", "0.10", "Platform fee as a fraction of subtotal"
  )
  flags.DEFINE_string("currency", "USD", "ISO currency code for orders")
  flags.DEFINE_integer("download_limit", 5, "Downloads allowed per grant")
  flags.DEFINE_integer("download_ttl_days", 30, "Days a grant stays valid")
  flags.DEFINE_enum(
      "payment_gateway",
      "mock",
      ["mock", "stripe", "paypal"],
      "Payment gateway variant",
  )
  flags.DEFINE_float(
      "gateway_timeout_seconds", 10.0, "Timeout for payment gateway calls"
  )
  flags.DEFINE_string(
      "webhook_secret", None, "Shared secret for webhook signatures"
  )
  flags.DEFINE_integer(
      "webhook_tolerance_seconds",
      300,
      "Maximum age of a timestamped webhook signature",
  )
  flags.DEFINE_string("stripe_api_key", None, "Stripe secret API key")
  flags.DEFINE_string("paypal_client_id", None, "PayPal REST client id")
  flags.DEFINE_string("paypal_client_secret", None, "PayPal REST secret")
  flags.DEFINE_string(
      "paypal_base_url",
      "https://api-m.sandbox.paypal.com",
      "PayPal REST API base URL",
  )
  flags.DEFINE_string(
      "frontend_url",
      "http://localhost:3000",
      "Base URL used for gateway return and cancel pages",
  )
  flags.DEFINE_string(
      "notification_url", None, "Endpoint receiving order notifications"
  )
  flags.DEFINE_string("admin_secret", None, "Secret for admin endpoints")
  flags.DEFINE_integer(
      "pending_order_ttl_hours",
      24,
      "Hours before an unpaid order is cancelled by maintenance",
  )
  flags.DEFINE_integer(
      "event_retention_days",
      90,
      "Days processed webhook events are kept in the ledger",
  )
except flags.DuplicateFlagError:
  pass


class Settings(BaseModel):
  """Resolved runtime configuration."""

  products_db_path: Optional[str] = None
  transactions_db_path: Optional[str] = None
  port: Optional[int] = None
  platform_fee_rate: decimal.Decimal = decimal.Decimal("0.10")
  currency: str = "USD"
  download_limit: int = 5
  download_ttl_days: int = 30
  payment_gateway: str = "mock"
  gateway_timeout_seconds: float = 10.0
  webhook_secret: str = ""
  webhook_tolerance_seconds: int = 300
  stripe_api_key: Optional[str] = None
  paypal_client_id: Optional[str] = None
  paypal_client_secret: Optional[str] = None
  paypal_base_url: str = "https://api-m.sandbox.paypal.com"
  frontend_url: str = "http://localhost:3000"
  notification_url: Optional[str] = None
  admin_secret: Optional[str] = None
  pending_order_ttl_hours: int = 24
  event_retention_days: int = 90

  @field_validator("platform_fee_rate")
  @classmethod
  def _check_fee_rate(cls, value: decimal.Decimal) -> decimal.Decimal:
    if value < 0 or value >= 1:
      raise ValueError("platform_fee_rate must be in [0, 1)")
    return value

  @field_validator("download_limit", "download_ttl_days")
  @classmethod
  def _check_positive(cls, value: int) -> int:
    if value <= 0:
      raise ValueError("must be positive")
    return value


def settings_from_flags() -> Settings:
  """Builds settings from parsed absl flags."""
  return Settings(
      products_db_path=FLAGS.products_db_path,
      transactions_db_path=FLAGS.transactions_db_path,
      port=FLAGS.port,
      platform_fee_rate=decimal.Decimal(FLAGS.platform_fee_rate),
      currency=FLAGS.currency,
      download_limit=FLAGS.download_limit,
      download_ttl_days=FLAGS.download_ttl_days,
      payment_gateway=FLAGS.payment_gateway,
      gateway_timeout_seconds=FLAGS.gateway_timeout_seconds,
      webhook_secret=FLAGS.webhook_secret or "",
      webhook_tolerance_seconds=FLAGS.webhook_tolerance_seconds,
      stripe_api_key=FLAGS.stripe_api_key,
      paypal_client_id=FLAGS.paypal_client_id,
      paypal_client_secret=FLAGS.paypal_client_secret,
      paypal_base_url=FLAGS.paypal_base_url,
      frontend_url=FLAGS.frontend_url,
      notification_url=FLAGS.notification_url,
      admin_secret=FLAGS.admin_secret,
      pending_order_ttl_hours=FLAGS.pending_order_ttl_hours,
      event_retention_days=FLAGS.event_retention_days,
  )


def get_settings() -> Settings:
  """Returns and caches settings, falling back to defaults before parsing."""
  global _SETTINGS_CACHE
  if _SETTINGS_CACHE:
    return _SETTINGS_CACHE

  if not FLAGS.is_parsed():
    # Imported by tests or tooling; nothing to cache yet.
    return Settings()

  _SETTINGS_CACHE = settings_from_flags()
  return _SETTINGS_CACHE


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for initializing databases."""
  del app  # Unused.
  settings = get_settings()
  # In tests the session dependencies are overridden and no paths are set.
  if settings.products_db_path and settings.transactions_db_path:
    await db.manager.init_dbs(
        settings.products_db_path, settings.transactions_db_path
    )
  yield
  await db.manager.close()
