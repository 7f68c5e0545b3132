"""Age-consent cookie settings and redirect sanitising."""

from __future__ import annotations

from typing import Any

MINIMUM_AGE = 18

AGE_COOKIE_NAME = "phenohub_age_verified"
AGE_COOKIE_VALUE = "true"
AGE_COOKIE_MAX_AGE_SECONDS = 60 * 60 * 24 * 365

AGE_CHECK_PATH = "/age-check"


def sanitize_return_to(value: Any) -> str:
  """Only allow same-site relative paths, never the age check itself."""
  if not isinstance(value, str) or not value.startswith("/"):
    return "/"
  # "//host" and "/\host" are treated as absolute URLs by browsers.
  if value.startswith("//") or value.startswith("/\\"):
    return "/"
  if value == AGE_CHECK_PATH:
    return "/"
  return value


def has_consented(cookies: Any) -> bool:
  return cookies.get(AGE_COOKIE_NAME) == AGE_COOKIE_VALUE


__all__ = [
  "AGE_COOKIE_MAX_AGE_SECONDS",
  "AGE_COOKIE_NAME",
  "AGE_COOKIE_VALUE",
  "MINIMUM_AGE",
  "has_consented",
  "sanitize_return_to",
]
