"""
Client helpers for relaying remote report images.

Report images live on third-party hosts that do not always send usable
content types or CORS headers, so the frontend loads them through this proxy.
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Optional
from urllib.parse import urlsplit

import requests

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}
ACCEPT_HEADER = "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"
DEFAULT_CACHE_CONTROL = "public, max-age=300, stale-while-revalidate=600"

_EXTENSION_TYPES = (
  (".png", "image/png"),
  (".webp", "image/webp"),
  (".gif", "image/gif"),
  (".bmp", "image/bmp"),
  (".svg", "image/svg+xml"),
  (".svgz", "image/svg+xml"),
)


class ImageProxyError(RuntimeError):
  """Raised when the remote image cannot be relayed."""

  def __init__(self, status: int, message: str) -> None:
    super().__init__(message)
    self.status = status


class ProxiedImage(NamedTuple):
  content: bytes
  content_type: str
  cache_control: str


def guess_content_type(path: str, upstream_type: Optional[str]) -> str:
  """Trust the upstream type unless it is missing or generic."""
  if upstream_type and upstream_type != "application/octet-stream":
    return upstream_type
  lowered = path.lower()
  for extension, content_type in _EXTENSION_TYPES:
    if lowered.endswith(extension):
      return content_type
  return "image/jpeg"


def fetch_image(url: Optional[str], *, timeout: int = 15) -> ProxiedImage:
  """Download ``url`` and return its bytes with display headers."""
  if not url:
    raise ImageProxyError(400, "Missing url parameter")

  try:
    parsed = urlsplit(url)
  except ValueError as exc:
    raise ImageProxyError(400, "Invalid url parameter") from exc
  if parsed.scheme not in ALLOWED_SCHEMES:
    raise ImageProxyError(400, "Unsupported protocol")
  if not parsed.netloc:
    raise ImageProxyError(400, "Invalid url parameter")

  try:
    response = requests.get(url, headers={"Accept": ACCEPT_HEADER}, timeout=timeout)
  except requests.RequestException as exc:
    logger.warning("Image proxy request failed for %s: %s", url, exc)
    raise ImageProxyError(502, "Image proxy error") from exc

  if not response.ok:
    raise ImageProxyError(response.status_code or 502, "Failed to load upstream image")

  return ProxiedImage(
    content=response.content,
    content_type=guess_content_type(parsed.path, response.headers.get("Content-Type")),
    cache_control=response.headers.get("Cache-Control") or DEFAULT_CACHE_CONTROL,
  )


__all__ = ["ImageProxyError", "ProxiedImage", "fetch_image", "guess_content_type"]
