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

"""Human-readable order numbers of the form ORD-YYYYMMDD-NNN."""

import datetime
import logging
from typing import Optional

import db
from exceptions import OrderNumberUnavailableError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

PREFIX = "ORD"


def format_order_number(day: str, sequence: int) -> str:
  return f"{PREFIX}-{day}-{sequence:03d}"


class OrderNumberGenerator:
  """Allocates per-day order numbers from a durable counter.

  The counter lives in the `order_sequences` table and is advanced with a
  single upsert, so concurrent callers always get distinct numbers. The
  generator does not commit: it runs inside the caller's order-creation
  transaction, and a rolled back order gives its number back.
  """

  async def next(
      self,
      session: AsyncSession,
      when: Optional[datetime.datetime] = None,
  ) -> str:
    """Returns the next order number for the UTC day of `when`.

    Raises:
      OrderNumberUnavailableError: If the counter could not be advanced.
    """
    when = when or db.utcnow()
    day = when.astimezone(datetime.timezone.utc).strftime("%Y%m%d")
    try:
      sequence = await db.next_order_sequence(session, day)
    except SQLAlchemyError as e:
      logger.error("Failed to advance order sequence for %s: %s", day, e)
      raise OrderNumberUnavailableError() from e
    return format_order_number(day, sequence)
