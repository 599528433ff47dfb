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

"""Utility script to dump orders and their download grants.

This script reads from the configured transactions SQLite database and prints
a summary of the most recent orders, including their status, amounts, line
items and download usage. It is useful for debugging and verifying the state
of the server.

Usage:
  uv run dump_orders.py --transactions_db_path=... [--limit=50]
"""

import asyncio
import sys
from absl import app as absl_app
from absl import flags
import config
import db
from services.fee_calculator import format_amount
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker

FLAGS = flags.FLAGS
flags.DEFINE_integer("limit", 50, "Number of most recent orders to print")


def format_order(order: db.Order, grants) -> str:
  """Renders one order as a human-readable block."""
  lines = [
      f"Order: {order.order_number} ({order.id}) [{order.status}]",
      f"  Buyer: {order.buyer_reference}",
  ]
  for item in order.line_items or []:
    lines.append(
        f"  - {item.get('title', 'Unknown Item')} (ID:"
        f" {item.get('product_id', 'N/A')}) @"
        f" {format_amount(item.get('unit_price', 0))} {order.currency}"
    )
  lines.append(
      f"  Subtotal {format_amount(order.subtotal)} + fee"
      f" {format_amount(order.platform_fee)} = total"
      f" {format_amount(order.total_amount)} {order.currency}"
      f" (seller {format_amount(order.seller_amount)})"
  )
  if order.payment_reference:
    lines.append(f"  Payment: {order.gateway} {order.payment_reference}")
  for grant in grants:
    state = "active" if grant.is_active else "inactive"
    lines.append(
        f"  Download {grant.product_id}:"
        f" {grant.download_count}/{grant.download_limit} used, {state},"
        f" expires {grant.expires_at}"
    )
  return "\n".join(lines)


async def dump_orders():
  """Queries the database and prints the most recent orders."""
  if not config.FLAGS.transactions_db_path:
    print("Error: --transactions_db_path is required.")
    sys.exit(1)

  db_url = f"sqlite+aiosqlite:///{config.FLAGS.transactions_db_path}"
  engine = create_async_engine(db_url, echo=False)
  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )

  try:
    async with session_factory() as session:
      orders = await db.list_orders(session, FLAGS.limit)
      if not orders:
        print("No orders found.")
        return

      for order in orders:
        grants = await db.get_grants_for_order(session, order.id)
        print(format_order(order, grants))
        print("-" * 60)
  finally:
    await engine.dispose()


def main(argv):
  """Main entry point for the order dump script."""
  del argv
  asyncio.run(dump_orders())


if __name__ == "__main__":
  absl_app.run(main)
