"""Anonymous like tracking via a long-lived client cookie."""

from __future__ import annotations

import uuid
from typing import Any, Optional

LIKE_COOKIE_NAME = "phenohub_like_client"
LIKE_COOKIE_MAX_AGE_SECONDS = 60 * 60 * 24 * 365 * 2


def client_like_id(cookies: Any) -> Optional[str]:
  value = cookies.get(LIKE_COOKIE_NAME)
  return value.strip() if isinstance(value, str) and value.strip() else None


def new_client_id() -> str:
  return str(uuid.uuid4())


__all__ = ["LIKE_COOKIE_MAX_AGE_SECONDS", "LIKE_COOKIE_NAME", "client_like_id", "new_client_id"]
