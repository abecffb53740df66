"""
Invest Gateway - Static View Responders
=======================================

What:  Serves the fixed set of front-end documents and the 404 page.
How:   A lookup table from URL path to file name inside VIEWS_DIR. No
       templating; the documents are shipped as-is.

Security:
    Public files are resolved against PUBLIC_DIR and refused unless the
    resolved path stays inside it (no ../ escapes).
"""

import logging
from pathlib import Path
from typing import Dict, Optional

from starlette.responses import FileResponse, HTMLResponse, Response

from invest_gateway.config import Settings

logger = logging.getLogger(__name__)

VIEW_DOCUMENTS: Dict[str, str] = {
    "/": "index.html",
    "/login": "login.html",
    "/dashboard": "dashboard.html",
    "/profile": "profile.html",
    "/kyc": "kyc.html",
    "/assets": "assets.html",
}

NOT_FOUND_DOCUMENT = "404.html"

# Served when the 404 document itself is missing from VIEWS_DIR
FALLBACK_NOT_FOUND_HTML = (
    "<!DOCTYPE html><html><head><title>404 Not Found</title></head>"
    "<body><h1>404</h1><p>The page you are looking for does not exist.</p></body></html>"
)


def file_response(path: Path, status_code: int = 200) -> FileResponse:
    return FileResponse(path=str(path), status_code=status_code)


def serve_not_found_page(settings: Settings) -> Response:
    page = Path(settings.views_dir) / NOT_FOUND_DOCUMENT
    if page.is_file():
        return file_response(page, status_code=404)
    logger.warning("Not-found document missing: %s", page)
    return HTMLResponse(FALLBACK_NOT_FOUND_HTML, status_code=404)


def serve_view(settings: Settings, document: str) -> Response:
    """Serve one named view; a missing document is answered with the 404 page."""
    page = Path(settings.views_dir) / document
    if not page.is_file():
        logger.error("View document missing: %s", page)
        return serve_not_found_page(settings)
    return file_response(page)


def find_public_file(public_dir: Optional[Path], url_path: str) -> Optional[Path]:
    """Resolve `url_path` inside `public_dir`; None unless it is an existing file there."""
    if public_dir is None:
        return None
    root = Path(public_dir).resolve()
    try:
        candidate = (root / url_path.lstrip("/")).resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            return None
    except (OSError, ValueError) as e:
        # NUL bytes, over-long segments: not a file we could serve
        logger.debug("Public file lookup refused %r: %s", url_path, e)
        return None
    return candidate
