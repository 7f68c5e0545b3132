"""
Shared pytest fixtures for the PhenoHub backend.

Provides a temporary SQLite store seeded with a small catalogue, a Flask test
client bound to that store and bearer headers for an admin and a regular user.
"""

from typing import Any, Dict

import pytest

from app import create_app
from phenohub.auth import generate_token
from phenohub.store import STATUS_PUBLISHED, SqliteStore

TEST_SECRET = "test-secret"


@pytest.fixture
def store(tmp_path):
  sqlite_store = SqliteStore(tmp_path / "phenohub-test.db")
  sqlite_store.init()
  yield sqlite_store
  sqlite_store.shutdown()


@pytest.fixture
def catalogue(store) -> Dict[str, Dict[str, Any]]:
  return {
    "provider": store.create_provider("green-cuts", "Green Cuts", "DE"),
    "other_provider": store.create_provider("clone-corner", "Clone Corner", "AT"),
    "cultivar": store.create_cultivar("papaya-punch", "Papaya Punch", "Oni Seeds", ["Papaya"]),
    "other_cultivar": store.create_cultivar("wedding-cake", "Wedding Cake"),
  }


@pytest.fixture
def make_report(store, catalogue):
  """Insert a report directly into the store."""

  def _make_report(
    overall: float,
    shipping: float = 0,
    vitality: float = 0,
    status: str = STATUS_PUBLISHED,
    provider: str = "provider",
    cultivar: str = "cultivar",
    **extra: Any,
  ) -> Dict[str, Any]:
    record = {
      "title": "Grow report",
      "slug": "grow-report",
      "cultivar_id": catalogue[cultivar]["id"],
      "provider_id": catalogue[provider]["id"],
      "author_handle": "tester",
      "overall": overall,
      "shipping": shipping,
      "vitality": vitality,
      "stability": 0,
      "status": status,
      "images": [],
    }
    record.update(extra)
    return store.create_report(record)

  return _make_report


@pytest.fixture
def app(store, catalogue):
  flask_app = create_app({
    "TESTING": True,
    "STORE": store,
    "JWT_SECRET_KEY": TEST_SECRET,
    "METRICS_MAX_WORKERS": 1,
  })
  yield flask_app


@pytest.fixture
def client(app):
  return app.test_client()


def _bearer(user: Dict[str, Any]) -> Dict[str, str]:
  return {"Authorization": f"Bearer {generate_token(user, secret=TEST_SECRET)}"}


@pytest.fixture
def admin_user(store) -> Dict[str, Any]:
  return store.create_user({
    "email": "owner@example.com",
    "password_hash": "unused",
    "role": "OWNER",
  })


@pytest.fixture
def regular_user(store) -> Dict[str, Any]:
  return store.create_user({
    "email": "grower@example.com",
    "username": "grower",
    "password_hash": "unused",
    "role": "USER",
  })


@pytest.fixture
def admin_headers(admin_user) -> Dict[str, str]:
  return _bearer(admin_user)


@pytest.fixture
def user_headers(regular_user) -> Dict[str, str]:
  return _bearer(regular_user)
