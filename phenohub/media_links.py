"""
Helpers for turning stored image references into displayable links.

Report images uploaded through tmpfiles.org come back in two shapes: the
landing page (``https://tmpfiles.org/<id>/<name>``) and the raw download
(``https://tmpfiles.org/dl/<id>/<name>``). Templates and API consumers need
both, so every stored reference is normalised into a ``preview`` link for
inline display and a ``direct`` link for the original file.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, NamedTuple, Optional
from urllib.parse import quote, urlsplit

logger = logging.getLogger(__name__)

TMPFILES_HOST = "tmpfiles.org"
DIRECT_SEGMENT = "dl"
SHORT_DIRECT_SEGMENT = "d"

# Characters browsers leave as-is when serialising a URL path or query.
# Existing escapes ("%") are kept, everything else is percent-encoded.
_PATH_SAFE = "/!$%&'()*+,;=:@[]\\^|"
_QUERY_SAFE = "/?!$%&()*+,;=:@[]\\^|`{}"


class MediaLinks(NamedTuple):
  direct: str
  preview: str


def _upgrade_scheme(value: str) -> str:
  if value.startswith("http://"):
    return "https://" + value[len("http://"):]
  return value


def _is_tmpfiles_host(hostname: Optional[str]) -> bool:
  if not hostname:
    return False
  return hostname == TMPFILES_HOST or hostname.endswith("." + TMPFILES_HOST)


def _join(host: str, segments: List[str], search: str) -> str:
  return f"{host}/{'/'.join(segments)}{search}"


def _fallback_links(value: str) -> MediaLinks:
  """Best-effort substitution for references that do not parse as URLs."""
  direct = value.replace("/d/", "/dl/", 1)
  preview = value.replace("/dl/", "/", 1)
  return MediaLinks(direct=direct, preview=preview)


def normalize_media_link(value: Optional[str]) -> MediaLinks:
  """
  Return the ``direct`` and ``preview`` forms of a stored media reference.

  Empty values produce empty links. ``http://`` is always upgraded to
  ``https://``. References on any host other than tmpfiles.org are returned
  unchanged in both forms. This function never raises.
  """
  if not value:
    return MediaLinks(direct="", preview="")

  upgraded = _upgrade_scheme(value)
  if TMPFILES_HOST not in upgraded:
    return MediaLinks(direct=upgraded, preview=upgraded)

  try:
    parsed = urlsplit(upgraded)
    hostname = parsed.hostname
  except ValueError:
    logger.debug("Media reference is not a valid URL, using text fallback: %s", upgraded)
    return _fallback_links(upgraded)

  if not parsed.scheme or not parsed.netloc:
    logger.debug("Media reference is not an absolute URL, using text fallback: %s", upgraded)
    return _fallback_links(upgraded)

  if not _is_tmpfiles_host(hostname):
    return MediaLinks(direct=upgraded, preview=upgraded)

  host = f"https://{hostname}"
  search = f"?{quote(parsed.query, safe=_QUERY_SAFE)}" if parsed.query else ""
  path = quote(parsed.path, safe=_PATH_SAFE) or "/"
  segments = [segment for segment in path.split("/") if segment]

  if not segments:
    unchanged = f"{host}{path}{search}"
    return MediaLinks(direct=unchanged, preview=unchanged)

  direct_segments = list(segments)
  if direct_segments[0] == SHORT_DIRECT_SEGMENT:
    direct_segments[0] = DIRECT_SEGMENT
  elif direct_segments[0] != DIRECT_SEGMENT:
    direct_segments.insert(0, DIRECT_SEGMENT)

  preview_segments = list(segments)
  if preview_segments[0] == DIRECT_SEGMENT:
    preview_segments.pop(0)

  direct = _join(host, direct_segments, search)
  preview = _join(host, preview_segments, search) if preview_segments else f"{host}{search}"
  return MediaLinks(direct=direct, preview=preview)


def normalize_media_links(values: Iterable[Any]) -> List[MediaLinks]:
  """Normalise a list of stored references, ignoring non-string entries."""
  return [normalize_media_link(value) for value in values or [] if isinstance(value, str)]


__all__ = ["MediaLinks", "normalize_media_link", "normalize_media_links", "TMPFILES_HOST"]
