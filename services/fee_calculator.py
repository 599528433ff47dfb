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

"""Platform fee computation.

All amounts are integers in the currency's minor unit. The platform fee is
added on top of the buyer-facing total and deducted from the seller payout:

  platform_fee  = round_half_up(subtotal * rate)
  total_amount  = subtotal + platform_fee
  seller_amount = subtotal - platform_fee
"""

import decimal
from typing import Iterable, Union

from models import FeeBreakdown
from models import SnapshotLineItem

_CENT = decimal.Decimal("0.01")


class FeeCalculator:
  """Computes order totals for a fixed platform fee rate."""

  def __init__(self, platform_fee_rate: Union[decimal.Decimal, str]):
    self.platform_fee_rate = decimal.Decimal(str(platform_fee_rate))
    if self.platform_fee_rate < 0 or self.platform_fee_rate >= 1:
      raise ValueError(
          f"platform_fee_rate must be in [0, 1), got {self.platform_fee_rate}"
      )

  def platform_fee(self, subtotal: int) -> int:
    fee = decimal.Decimal(subtotal) * self.platform_fee_rate
    return int(fee.quantize(decimal.Decimal(1), decimal.ROUND_HALF_UP))

  def compute(self, line_items: Iterable[SnapshotLineItem]) -> FeeBreakdown:
    """Computes the fee breakdown for the given line items.

    An empty sequence yields all zeros; rejecting empty carts is up to the
    caller.
    """
    subtotal = sum(item.unit_price for item in line_items)
    fee = self.platform_fee(subtotal)
    return FeeBreakdown(
        subtotal=subtotal,
        platform_fee=fee,
        seller_amount=subtotal - fee,
        total_amount=subtotal + fee,
        platform_fee_rate=str(self.platform_fee_rate),
    )


def to_minor_units(amount: Union[decimal.Decimal, str, int]) -> int:
  """Converts a major-unit amount such as "275.00" to minor units (27500)."""
  try:
    value = decimal.Decimal(str(amount))
  except decimal.InvalidOperation as e:
    raise ValueError(f"Invalid amount: {amount!r}") from e
  return int(
      (value.quantize(_CENT, decimal.ROUND_HALF_UP) * 100).to_integral_value()
  )


def format_amount(minor_units: int) -> str:
  """Formats minor units as a major-unit decimal string, e.g. 27500 -> 275.00."""
  return str((decimal.Decimal(minor_units) / 100).quantize(_CENT))
