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

"""Periodic maintenance for the order engine.

Meant to be run from cron. It performs three housekeeping tasks:
- expire_orders: cancels PENDING/PROCESSING orders older than
  --pending_order_ttl_hours.
- expire_grants: deactivates download grants past their expiry.
- purge_events: deletes processed webhook ledger entries older than
  --event_retention_days.

Usage:
  uv run maintenance.py --products_db_path=... --transactions_db_path=...
  [--task=all]
"""

import asyncio
import datetime
import logging
from typing import Dict

from absl import app as absl_app
from absl import flags
import config
import db
from services.download_service import DownloadService
from services.fee_calculator import FeeCalculator
from services.order_service import OrderService

FLAGS = flags.FLAGS
flags.DEFINE_enum(
    "task",
    "all",
    ["all", "expire_orders", "expire_grants", "purge_events"],
    "Maintenance task to run",
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def expire_orders(settings: config.Settings) -> int:
  async with db.manager.transactions_session_factory() as session:
    order_service = OrderService(
        session,
        FeeCalculator(settings.platform_fee_rate),
        currency=settings.currency,
    )
    cancelled = await order_service.expire_pending(
        datetime.timedelta(hours=settings.pending_order_ttl_hours)
    )
  return len(cancelled)


async def expire_grants(settings: config.Settings) -> int:
  async with db.manager.products_session_factory() as products_session:
    async with db.manager.transactions_session_factory() as session:
      download_service = DownloadService(
          products_session,
          session,
          download_limit=settings.download_limit,
          download_ttl_days=settings.download_ttl_days,
      )
      return await download_service.deactivate_expired()


async def purge_events(settings: config.Settings) -> int:
  cutoff = db.utcnow() - datetime.timedelta(days=settings.event_retention_days)
  async with db.manager.transactions_session_factory() as session:
    purged = await db.purge_payment_events(session, db.to_timestamp(cutoff))
    await session.commit()
  logger.info("Purged %d processed webhook events", purged)
  return purged


TASKS = {
    "expire_orders": expire_orders,
    "expire_grants": expire_grants,
    "purge_events": purge_events,
}


async def run_maintenance(
    settings: config.Settings, task: str = "all"
) -> Dict[str, int]:
  """Runs the selected task (or all of them) and returns per-task counts."""
  await db.manager.init_dbs(
      settings.products_db_path, settings.transactions_db_path
  )
  results = {}
  try:
    for name, func in TASKS.items():
      if task in ("all", name):
        results[name] = await func(settings)
        logger.info("%s: %d", name, results[name])
  finally:
    await db.manager.close()
  return results


def main(argv):
  """Main entry point for the maintenance script."""
  del argv
  settings = config.get_settings()
  if not settings.products_db_path or not settings.transactions_db_path:
    logger.error("--products_db_path and --transactions_db_path are required")
    raise SystemExit(1)
  asyncio.run(run_maintenance(settings, FLAGS.task))


if __name__ == "__main__":
  absl_app.run(main)
