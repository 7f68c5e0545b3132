"""
Environment configuration and storage selection.

Settings are read once at import time from the process environment (and a
``.env`` file at the project root). ``build_store`` picks the storage backend
the API and the maintenance commands share.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from pathlib import Path
from typing import Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

from phenohub.dynamo_store import DynamoStore
from phenohub.store import SqliteStore, Store, UnavailableStore

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def _safe_int(value: Optional[str], default: int) -> int:
  try:
    return int(value) if value is not None else default
  except (TypeError, ValueError):
    return default


DB_PATH = Path(os.environ.get("SQLITE_DB_PATH", str(BASE_DIR / "phenohub.db"))).resolve()
STORAGE_BACKEND = os.environ.get("STORAGE_BACKEND", "sqlite").strip().lower()

JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "change-me")
JWT_EXPIRATION_MINUTES = _safe_int(os.environ.get("JWT_EXPIRATION_MINUTES"), 60)
METRICS_MAX_WORKERS = max(1, _safe_int(os.environ.get("METRICS_MAX_WORKERS"), 1))
IMAGE_PROXY_TIMEOUT = _safe_int(os.environ.get("IMAGE_PROXY_TIMEOUT"), 15)
AGE_COOKIE_SECURE = os.environ.get("AGE_COOKIE_SECURE", "false").strip().lower() == "true"


def dynamo_table_names() -> Dict[str, str]:
  return {
    "providers": os.environ.get("AWS_PROVIDERS_TABLE", ""),
    "cultivars": os.environ.get("AWS_CULTIVARS_TABLE", ""),
    "reports": os.environ.get("AWS_REPORTS_TABLE", ""),
    "users": os.environ.get("AWS_USERS_TABLE", ""),
    "comments": os.environ.get("AWS_COMMENTS_TABLE", ""),
    "likes": os.environ.get("AWS_LIKES_TABLE", ""),
  }


def build_store(backend: Optional[str] = None, db_path: Optional[Path] = None) -> Store:
  """
  Construct and initialise the configured storage backend.

  ``STORAGE_BACKEND=none`` selects the unavailable store outright. A live
  backend that cannot be configured or initialised is replaced by the
  unavailable store so the API still answers (with 503s) instead of failing
  to boot.
  """
  selected = (backend or STORAGE_BACKEND).strip().lower()

  if selected == "none":
    return UnavailableStore("Storage is disabled (STORAGE_BACKEND=none).")
  if selected not in ("aws", "sqlite"):
    raise RuntimeError(f"Unknown STORAGE_BACKEND: {selected!r}.")

  try:
    if selected == "aws":
      store: Store = DynamoStore(
        dynamo_table_names(),
        region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"),
      )
    else:
      store = SqliteStore(db_path or DB_PATH)
    store.init()
  except (RuntimeError, sqlite3.Error, OSError, BotoCoreError, ClientError) as exc:
    logger.exception("Storage backend %s unavailable: %s", selected, exc)
    return UnavailableStore(f"Storage backend {selected} is unavailable: {exc}")
  return store


__all__ = [
  "AGE_COOKIE_SECURE",
  "DB_PATH",
  "IMAGE_PROXY_TIMEOUT",
  "JWT_EXPIRATION_MINUTES",
  "JWT_SECRET_KEY",
  "METRICS_MAX_WORKERS",
  "STORAGE_BACKEND",
  "build_store",
  "dynamo_table_names",
]
