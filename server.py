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

"""Order lifecycle and payment reconciliation server (Python/FastAPI)."""

import logging
import sys
from typing import Sequence
from absl import app as absl_app
import config
from exceptions import EngineError
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from routes.admin import router as admin_router
from routes.checkout import router as checkout_router
from routes.downloads import router as downloads_router
from routes.order import router as order_router
from routes.webhooks import router as webhooks_router
import uvicorn

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Order Engine",
    version=config.SERVER_VERSION,
    description=(
        "Order lifecycle, payment reconciliation and download grants for a"
        " digital goods marketplace"
    ),
    lifespan=config.lifespan,
)


@app.exception_handler(EngineError)
async def engine_exception_handler(request: Request, exc: EngineError):
  """Converts engine exceptions to JSON responses."""
  del request  # Unused.
  if exc.status_code >= 500:
    logger.warning("%s: %s", exc.code, exc.message)
  return JSONResponse(
      status_code=exc.status_code,
      content={
          "detail": exc.message,
          "code": exc.code,
          "retryable": exc.retryable,
      },
  )


app.include_router(checkout_router)
app.include_router(order_router)
app.include_router(webhooks_router)
app.include_router(downloads_router)
app.include_router(admin_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the order engine server."""
  del argv  # Unused.

  if (
      config.FLAGS.products_db_path is None
      or config.FLAGS.transactions_db_path is None
      or config.FLAGS.port is None
  ):
    logger.error(
        "Both --products_db_path, --transactions_db_path, and --port must be"
        " provided."
    )
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  settings = config.get_settings()
  if not settings.webhook_secret:
    logger.warning("--webhook_secret is not set; all webhooks will be rejected")
  logger.info(
      "Starting order engine with the %s gateway on port %d",
      settings.payment_gateway,
      settings.port,
  )
  uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
  absl_app.run(main)
