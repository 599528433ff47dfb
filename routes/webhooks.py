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

"""Payment gateway webhook endpoint."""

import dependencies
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request
from models import WebhookAck
from services.payment_gateway import PaymentGateway
from services.webhook_processor import WebhookProcessor

router = APIRouter()


@router.post(
    "/webhooks/payment",
    response_model=WebhookAck,
    operation_id="payment_webhook",
)
async def payment_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(dependencies.get_payment_gateway),
    processor: WebhookProcessor = Depends(dependencies.get_webhook_processor),
) -> WebhookAck:
  """Receive a gateway event.

  The raw body is read unparsed because the signature covers its exact bytes.
  """
  payload = await request.body()
  signature = request.headers.get(gateway.signature_header)
  return await processor.handle(payload, signature)
