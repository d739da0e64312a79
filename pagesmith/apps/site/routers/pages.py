"""Catch-all route: site pages first, then files under ``assets/``, then 404."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response

router = APIRouter(tags=["pages"])

DEV_ASSETS_MAX_AGE = 0
PROD_ASSETS_MAX_AGE = 60 * 60 * 24 * 365  # 1 year


def _asset_file(assets_path: Path, path: str) -> Optional[Path]:
    relative = path.lstrip("/")
    if not relative:
        return None
    root = assets_path.resolve()
    candidate = (root / relative).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    return candidate if candidate.is_file() else None


@router.get("/{path:path}", include_in_schema=False)
async def serve(request: Request, path: str) -> Response:
    site = request.app.state.site
    request_path = "/" + path

    match = site.match(request_path)
    if match is not None:
        return await match.page.render(
            request,
            path_params=match.path_params,
            as_json=match.as_json,
        )

    asset = _asset_file(site.settings.assets_path, path)
    if asset is not None:
        max_age = DEV_ASSETS_MAX_AGE if site.settings.dev else PROD_ASSETS_MAX_AGE
        return FileResponse(asset, headers={"Cache-Control": f"public, max-age={max_age}"})

    not_found = site.not_found_page
    if not_found is not None:
        return await not_found.render(request, status_code=404)
    return PlainTextResponse("404 Not Found", status_code=404)


__all__ = ["router"]
