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

"""Download redemption route."""

import dependencies
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from models import DownloadResponse
from services.download_service import DownloadService

router = APIRouter()


@router.get(
    "/downloads/{token}",
    response_model=DownloadResponse,
    operation_id="redeem_download",
)
async def redeem_download(
    token: str = Path(...),
    download_service: DownloadService = Depends(
        dependencies.get_download_service
    ),
) -> DownloadResponse:
  """Consume one download of a grant and return the file reference."""
  return await download_service.redeem(token)
