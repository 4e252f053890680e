"""
File server for app handlers, deployed as the function entrypoint.

The site files sit next to this module under ``site/``. The function is
routed as ``GET <path>`` and ``GET <path>/{proxy+}`` on the HTTP API and
configured through environment variables:

- ``EFF_APP_PATH``: base path stripped from the request path
- ``EFF_APP_INDEX``: file served for directory requests
- ``EFF_APP_SPA``: ``"true"`` serves the index for unknown paths

Only the standard library is available here.
"""

from __future__ import annotations

import base64
import mimetypes
import os
from pathlib import Path
from typing import Any

SITE_ROOT = Path(__file__).resolve().parent / "site"
HTML_CACHE_CONTROL = "public, max-age=0, must-revalidate"
ASSET_CACHE_CONTROL = "public, max-age=31536000, immutable"


def _settings() -> tuple[str, str, bool]:
    base = os.environ.get("EFF_APP_PATH", "").rstrip("/")
    index = os.environ.get("EFF_APP_INDEX", "index.html")
    spa = os.environ.get("EFF_APP_SPA", "false").lower() == "true"
    return base, index, spa


def resolve_file(
    request_path: str, base: str, index: str, spa: bool, root: Path = SITE_ROOT
) -> Path | None:
    """Map a request path onto a file under ``root``, or None for a 404."""
    path = request_path
    if base and (path == base or path.startswith(base + "/")):
        path = path[len(base) :]
    relative = path.lstrip("/")
    if not relative or relative.endswith("/"):
        relative += index

    root = root.resolve()
    candidate = (root / relative).resolve()
    if not candidate.is_relative_to(root):
        return None
    if candidate.is_file():
        return candidate
    if (candidate / index).is_file():
        return candidate / index
    if spa and not Path(relative).suffix:
        fallback = root / index
        return fallback if fallback.is_file() else None
    return None


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    base, index, spa = _settings()
    request_path = event.get("rawPath") or "/"
    found = resolve_file(request_path, base, index, spa, SITE_ROOT)
    if found is None:
        return {
            "statusCode": 404,
            "headers": {"Content-Type": "text/plain; charset=utf-8"},
            "body": "Not found",
        }
    content_type, _ = mimetypes.guess_type(found.name)
    is_html = found.suffix.lower() in (".html", ".htm")
    return {
        "statusCode": 200,
        "headers": {
            "Content-Type": content_type or "application/octet-stream",
            "Cache-Control": HTML_CACHE_CONTROL if is_html else ASSET_CACHE_CONTROL,
        },
        "body": base64.b64encode(found.read_bytes()).decode("ascii"),
        "isBase64Encoded": True,
    }
