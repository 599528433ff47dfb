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

"""Tests for download grant issuance and redemption."""

import asyncio
import datetime

from absl.testing import absltest
import db
import db_testing
from enums import OrderStatus
from exceptions import OrderNotPaidError
from exceptions import TokenExhaustedError
from exceptions import TokenExpiredError
from exceptions import TokenNotFoundError
from exceptions import TokenRevokedError
from services.download_service import DownloadService
from sqlalchemy import update


class DownloadServiceTest(db_testing.DatabaseTestCase):

  def setUp(self):
    super().setUp()
    self.run_async(
        self.seed_products(db_testing.DESK, db_testing.CHAIR, db_testing.CONSULT)
    )

  async def _call(self, method, *args):
    async with self.products_session_factory() as products_session:
      async with self.transactions_session_factory() as session:
        service = DownloadService(products_session, session)
        return await getattr(service, method)(*args)

  def _paid_order(self, *products):
    return self.run_async(
        self.create_order(
            *(products or (db_testing.DESK, db_testing.CHAIR)),
            status=OrderStatus.PAID,
        )
    )

  def test_issues_one_grant_per_downloadable_product(self):
    order = self._paid_order(
        db_testing.DESK, db_testing.CHAIR, db_testing.CONSULT
    )

    grants, created = self.run_async(self._call("issue_grants", order.id))

    self.assertTrue(created)
    # The consultation has no file and gets no grant.
    self.assertCountEqual(
        [g.product_id for g in grants], ["prod_desk", "prod_chair"]
    )
    for grant in grants:
      self.assertEqual(grant.download_limit, 5)
      self.assertEqual(grant.download_count, 0)
      self.assertTrue(grant.is_active)
      self.assertEqual(grant.buyer_reference, "buyer_1")
      self.assertGreaterEqual(len(grant.token), 32)
      expires_at = db.from_timestamp(grant.expires_at)
      self.assertAlmostEqual(
          (expires_at - db.utcnow()).total_seconds(),
          datetime.timedelta(days=30).total_seconds(),
          delta=60,
      )
    self.assertEqual(
        {g.file_reference for g in grants},
        {"files/desk.pdf", "files/chair.pdf"},
    )

  def test_issue_is_idempotent(self):
    order = self._paid_order()
    first, created = self.run_async(self._call("issue_grants", order.id))
    self.assertTrue(created)
    second, created = self.run_async(self._call("issue_grants", order.id))
    self.assertFalse(created)
    self.assertCountEqual(
        [g.token for g in first], [g.token for g in second]
    )

  def test_concurrent_issue_creates_one_batch(self):
    order = self._paid_order()

    async def run():
      return await asyncio.gather(
          *(self._call("issue_grants", order.id) for _ in range(3))
      )

    self.run_async(run())
    grants = self.run_async(self._call("list_grants", order.id))
    self.assertLen(grants, 2)

  def test_issue_requires_payment(self):
    order = self.run_async(self.create_order(status=OrderStatus.PROCESSING))
    with self.assertRaises(OrderNotPaidError):
      self.run_async(self._call("issue_grants", order.id))

  def test_redeem_counts_down(self):
    order = self._paid_order(db_testing.DESK)
    grants, _ = self.run_async(self._call("issue_grants", order.id))
    token = grants[0].token

    result = self.run_async(self._call("redeem", token))

    self.assertEqual(result.file_reference, "files/desk.pdf")
    self.assertEqual(result.downloads_remaining, 4)
    self.assertEqual(result.expires_at, grants[0].expires_at)

  def test_concurrent_redemptions_never_exceed_limit(self):
    order = self._paid_order(db_testing.DESK)
    grants, _ = self.run_async(self._call("issue_grants", order.id))
    token = grants[0].token

    async def run():
      return await asyncio.gather(
          *(self._call("redeem", token) for _ in range(5))
      )

    results = self.run_async(run())
    self.assertCountEqual(
        [r.downloads_remaining for r in results], [0, 1, 2, 3, 4]
    )

    with self.assertRaises(TokenExhaustedError):
      self.run_async(self._call("redeem", token))

    grant = self.run_async(self._call("list_grants", order.id))[0]
    self.assertEqual(grant.download_count, 5)
    self.assertFalse(grant.is_active)

  def test_unknown_token(self):
    with self.assertRaises(TokenNotFoundError):
      self.run_async(self._call("redeem", "no-such-token"))

  def _expire(self, token):
    async def run():
      async with self.transactions_session_factory() as session:
        await session.execute(
            update(db.DownloadGrant)
            .where(db.DownloadGrant.token == token)
            .values(
                expires_at=db.to_timestamp(
                    db.utcnow() - datetime.timedelta(minutes=1)
                )
            )
        )
        await session.commit()

    self.run_async(run())

  def test_expired_token(self):
    order = self._paid_order(db_testing.DESK)
    grants, _ = self.run_async(self._call("issue_grants", order.id))
    token = grants[0].token
    self._expire(token)

    with self.assertRaises(TokenExpiredError):
      self.run_async(self._call("redeem", token))

    grant = self.run_async(self._call("list_grants", order.id))[0]
    self.assertFalse(grant.is_active)
    self.assertEqual(grant.download_count, 0)

  def test_revoked_token(self):
    order = self._paid_order()
    grants, _ = self.run_async(self._call("issue_grants", order.id))

    revoked = self.run_async(self._call("revoke_grants", order.id))

    self.assertEqual(revoked, 2)
    with self.assertRaises(TokenRevokedError):
      self.run_async(self._call("redeem", grants[0].token))

  def test_deactivate_expired(self):
    order = self._paid_order()
    grants, _ = self.run_async(self._call("issue_grants", order.id))
    self._expire(grants[0].token)

    count = self.run_async(self._call("deactivate_expired"))

    self.assertEqual(count, 1)
    by_token = {
        g.token: g for g in self.run_async(self._call("list_grants", order.id))
    }
    self.assertFalse(by_token[grants[0].token].is_active)
    self.assertTrue(by_token[grants[1].token].is_active)


if __name__ == "__main__":
  absltest.main()
