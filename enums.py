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

"""Enumerations for the order engine.

This module defines the order lifecycle states, the canonical payment actions
that gateway events are normalized to, and the outcomes recorded in the
payment event ledger.
"""

import enum


class OrderStatus(str, enum.Enum):
  PENDING = "PENDING"
  PROCESSING = "PROCESSING"
  PAID = "PAID"
  COMPLETED = "COMPLETED"
  CANCELLED = "CANCELLED"
  REFUNDED = "REFUNDED"
  DISPUTED = "DISPUTED"


# Legal source states for each target state.
TRANSITIONS = {
    OrderStatus.PROCESSING: frozenset({OrderStatus.PENDING}),
    OrderStatus.PAID: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.COMPLETED: frozenset(
        {OrderStatus.PAID, OrderStatus.DISPUTED}
    ),
    OrderStatus.CANCELLED: frozenset(
        {OrderStatus.PENDING, OrderStatus.PROCESSING}
    ),
    OrderStatus.REFUNDED: frozenset(
        {OrderStatus.PAID, OrderStatus.COMPLETED, OrderStatus.DISPUTED}
    ),
    OrderStatus.DISPUTED: frozenset(
        {OrderStatus.PAID, OrderStatus.COMPLETED}
    ),
}


class PaymentAction(str, enum.Enum):
  """Gateway-agnostic meaning of a webhook event."""

  SESSION_CREATED = "session_created"
  PAYMENT_SUCCEEDED = "payment_succeeded"
  PAYMENT_FAILED = "payment_failed"
  SESSION_EXPIRED = "session_expired"
  PAYMENT_CANCELED = "payment_canceled"
  PAYMENT_REFUNDED = "payment_refunded"
  DISPUTE_OPENED = "dispute_opened"
  DISPUTE_WON = "dispute_won"
  DISPUTE_LOST = "dispute_lost"


class EventOutcome(str, enum.Enum):
  APPLIED = "applied"
  DUPLICATE = "duplicate"
  ANOMALY = "anomaly"
  IGNORED = "ignored"


class CaptureStatus(str, enum.Enum):
  SUCCEEDED = "succeeded"
  PENDING = "pending"
  DECLINED = "declined"
