"""On-demand resource proxy: ``GET {api_route}/resource.json?url=...``."""

from __future__ import annotations

import logging
import time
from email.utils import formatdate
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from pagesmith.domain.errors import FetchError, InvalidResponseError, InvalidURLError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])

INVALID_URL_MESSAGE = "Invalid 'url' parameter"


def _freshness_headers(max_age: int) -> dict[str, str]:
    return {
        "Cache-Control": f"public, max-age={max_age}",
        "Expires": formatdate(time.time() + max_age, usegmt=True),
    }


@router.get("/resource.json")
async def resource_json(request: Request, url: Optional[str] = None) -> JSONResponse:
    service = request.app.state.site.resources
    try:
        result = await service.fetch_entry(url)
    except InvalidURLError:
        return JSONResponse({"error": INVALID_URL_MESSAGE}, status_code=400)
    except InvalidResponseError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except FetchError:
        # Logged by the service; nothing is known about freshness.
        return JSONResponse({}, headers=_freshness_headers(0))

    return JSONResponse(
        result.data,
        status_code=result.status_code,
        headers=_freshness_headers(result.max_age),
    )


__all__ = ["router"]
