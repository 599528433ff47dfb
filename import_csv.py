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

"""Database initialization script for the order engine.

This script imports the product catalog and, optionally, demo carts from CSV
files into the configured SQLite databases. It clears the existing catalog
before loading the new one; existing carts are only replaced for the buyers
listed in carts.csv. Orders, grants and the webhook ledger are never touched.

Usage:
  uv run import_csv.py --products_db_path=... --transactions_db_path=...
  --data_dir=...
"""

import asyncio
import csv
import logging
import os
from typing import List, Tuple
from absl import app as absl_app
from absl import flags
import config
import db
from db import CartItem
from db import Product
from sqlalchemy import delete

FLAGS = flags.FLAGS
flags.DEFINE_string(
    "data_dir",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "data"),
    "Directory containing products.csv and, optionally, carts.csv",
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def read_products(path: str) -> List[Product]:
  """Parses products.csv; an empty file_reference means nothing to download."""
  products = []
  with open(path, "r") as f:
    reader = csv.DictReader(f)
    for row in reader:
      products.append(
          Product(
              id=row["id"],
              title=row["title"],
              price=int(row["price"]),
              seller_id=row.get("seller_id") or None,
              file_reference=row.get("file_reference") or None,
          )
      )
  return products


def read_carts(path: str) -> List[Tuple[str, str]]:
  with open(path, "r") as f:
    return [
        (row["buyer_reference"], row["product_id"])
        for row in csv.DictReader(f)
    ]


async def import_csv_data(
    data_dir: str, products_db_path: str, transactions_db_path: str
) -> None:
  """Reads CSV files and populates the databases."""
  # Ensure tables exist
  await db.manager.init_dbs(products_db_path, transactions_db_path)

  try:
    async with db.manager.products_session_factory() as session:
      logger.info("Clearing existing products...")
      await session.execute(delete(Product))

      logger.info("Importing Products from CSV...")
      products = read_products(os.path.join(data_dir, "products.csv"))
      session.add_all(products)
      await session.commit()
      logger.info("Imported %d products", len(products))

    carts_path = os.path.join(data_dir, "carts.csv")
    if os.path.exists(carts_path):
      carts = read_carts(carts_path)
      buyers = sorted({buyer for buyer, _ in carts})
      async with db.manager.transactions_session_factory() as session:
        logger.info("Replacing carts of %d buyers...", len(buyers))
        await session.execute(
            delete(CartItem).where(CartItem.buyer_reference.in_(buyers))
        )
        for buyer, product_id in carts:
          await db.add_cart_item(session, buyer, product_id)
        await session.commit()
  finally:
    await db.manager.close()


def main(argv):
  """Main entry point for the CSV import script."""
  del argv
  asyncio.run(
      import_csv_data(
          FLAGS.data_dir,
          config.FLAGS.products_db_path or "products.db",
          config.FLAGS.transactions_db_path or "transactions.db",
      )
  )


if __name__ == "__main__":
  absl_app.run(main)
