"""
Validation of incoming JSON payloads.

Each validator takes the raw decoded body (anything ``request.get_json`` may
return) and produces either ``Valid(value)`` with a cleaned dictionary or
``Invalid(reasons)``. Handlers only read from the cleaned value.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union

from phenohub.auth import USER_ROLES, USER_STATUSES
from phenohub.store import REPORT_STATUSES

MAX_REPORT_IMAGES = 10
MIN_PASSWORD_LENGTH = 8
MIN_COMMENT_LENGTH = 3
MAX_COMMENT_LENGTH = 2000
EXCERPT_LENGTH = 200
ANONYMOUS_HANDLE = "Anonym"
COMMUNITY_HANDLE = "Community"


class Valid(NamedTuple):
  value: Dict[str, Any]

  @property
  def ok(self) -> bool:
    return True


class Invalid(NamedTuple):
  reasons: List[str]

  @property
  def ok(self) -> bool:
    return False

  @property
  def message(self) -> str:
    return " ".join(self.reasons)


ValidationResult = Union[Valid, Invalid]


def _as_mapping(payload: Any) -> Mapping[str, Any]:
  return payload if isinstance(payload, Mapping) else {}


def _clean_str(value: Any) -> str:
  return value.strip() if isinstance(value, str) else ""


def parse_rating(value: Any) -> float:
  """Ratings are 1-5 with two decimals; anything else counts as not given (0)."""
  if isinstance(value, bool):
    return 0.0
  try:
    number = float(value)
  except (TypeError, ValueError):
    return 0.0
  if not math.isfinite(number) or number < 1 or number > 5:
    return 0.0
  return round(number, 2)


def validate_registration(payload: Any) -> ValidationResult:
  data = _as_mapping(payload)
  email = data.get("email")
  password = data.get("password")
  reasons: List[str] = []

  if not isinstance(email, str) or "@" not in email:
    reasons.append("A valid email address is required.")
  if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
    reasons.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
  if reasons:
    return Invalid(reasons)

  username = _clean_str(data.get("username")).lower() or None
  name = _clean_str(data.get("name")) or None
  return Valid({
    "email": email.strip().lower(),
    "password": password,
    "username": username,
    "name": name,
  })


def validate_credentials(payload: Any) -> ValidationResult:
  data = _as_mapping(payload)
  email = _clean_str(data.get("email")).lower()
  password = data.get("password") if isinstance(data.get("password"), str) else ""
  if not email or not password:
    return Invalid(["Email and password are required."])
  return Valid({"email": email, "password": password})


def resolve_author_handle(
  author_name: str,
  anonymous: bool,
  claims: Optional[Mapping[str, Any]] = None,
) -> str:
  """Pick the display handle for a new report."""
  if anonymous:
    return author_name or ANONYMOUS_HANDLE
  if author_name:
    return author_name
  if claims:
    username = _clean_str(claims.get("username"))
    if username:
      return username
    name = _clean_str(claims.get("name"))
    if name:
      return name
    email = _clean_str(claims.get("email"))
    if email:
      return email.split("@")[0]
  return COMMUNITY_HANDLE


def validate_report_submission(
  payload: Any,
  claims: Optional[Mapping[str, Any]] = None,
) -> ValidationResult:
  """
  Validate a new experience report.

  ``title``, ``cultivar_slug``, ``provider_slug`` and ``summary`` are
  required. Sub-ratings outside 1-5 are dropped; when no explicit overall
  rating is given it is the mean of the remaining sub-ratings. Growth feeds
  the stored ``vitality`` score.
  """
  data = _as_mapping(payload)
  title = _clean_str(data.get("title"))
  cultivar_slug = _clean_str(data.get("cultivar_slug"))
  provider_slug = _clean_str(data.get("provider_slug"))
  summary = _clean_str(data.get("summary"))

  missing = [
    field
    for field, value in (
      ("title", title),
      ("cultivar_slug", cultivar_slug),
      ("provider_slug", provider_slug),
      ("summary", summary),
    )
    if not value
  ]
  if missing:
    return Invalid([f"Missing required fields: {', '.join(missing)}."])

  ratings = _as_mapping(data.get("ratings"))
  growth = parse_rating(ratings.get("growth"))
  stability = parse_rating(ratings.get("stability"))
  shipping = parse_rating(ratings.get("shipping"))
  care = parse_rating(ratings.get("care"))
  provided_overall = parse_rating(ratings.get("overall"))

  given = [value for value in (growth, stability, shipping, care) if value > 0]
  computed_overall = round(sum(given) / len(given), 2) if given else 0.0
  overall = provided_overall if provided_overall > 0 else computed_overall

  raw_images = data.get("images")
  images: List[str] = []
  if isinstance(raw_images, list):
    images = [
      image.strip()
      for image in raw_images[:MAX_REPORT_IMAGES]
      if isinstance(image, str) and image.strip()
    ]

  author_handle = resolve_author_handle(
    _clean_str(data.get("author_name")),
    bool(data.get("anonymous")),
    claims,
  )

  setup = {
    key: _clean_str(data.get(key)) or None
    for key in ("lamp_type", "tent_size", "medium")
  }

  return Valid({
    "title": title,
    "cultivar_slug": cultivar_slug,
    "provider_slug": provider_slug,
    "summary": summary,
    "excerpt": summary[:EXCERPT_LENGTH],
    "overall": overall,
    "shipping": shipping,
    "stability": stability,
    "vitality": growth,
    "care": care,
    "images": images,
    "author_handle": author_handle,
    "anonymous": bool(data.get("anonymous")),
    "setup": setup,
  })


def validate_moderation(payload: Any) -> ValidationResult:
  data = _as_mapping(payload)
  status = data.get("status")
  if not isinstance(status, str) or status.upper() not in REPORT_STATUSES:
    return Invalid([f"Status must be one of {', '.join(REPORT_STATUSES)}."])
  review_note = data.get("review_note")
  return Valid({
    "status": status.upper(),
    "review_note": review_note if isinstance(review_note, str) else None,
  })


def validate_comment(payload: Any) -> ValidationResult:
  body = _as_mapping(payload).get("body")
  if not isinstance(body, str) or len(body.strip()) < MIN_COMMENT_LENGTH:
    return Invalid([f"Comment must be at least {MIN_COMMENT_LENGTH} characters long."])
  if len(body) > MAX_COMMENT_LENGTH:
    return Invalid([f"Comment must not exceed {MAX_COMMENT_LENGTH} characters."])
  return Valid({"body": body.strip()})


def validate_user_changes(payload: Any) -> ValidationResult:
  """Role and status changes an owner may apply to an account."""
  data = _as_mapping(payload)
  changes: Dict[str, Any] = {}
  reasons: List[str] = []

  if "role" in data:
    role = data["role"]
    if isinstance(role, str) and role in USER_ROLES:
      changes["role"] = role
    else:
      reasons.append(f"Role must be one of {', '.join(USER_ROLES)}.")
  if "status" in data:
    status = data["status"]
    if isinstance(status, str) and status in USER_STATUSES:
      changes["status"] = status
    else:
      reasons.append(f"Status must be one of {', '.join(USER_STATUSES)}.")

  if reasons:
    return Invalid(reasons)
  if not changes:
    return Invalid(["No changes submitted."])
  return Valid(changes)


def parse_status_filter(value: Optional[str]) -> Optional[str]:
  """Return the status to filter by, or ``None`` for ``ALL``/unknown values."""
  if not value:
    return None
  status = value.strip().upper()
  return status if status in REPORT_STATUSES else None


__all__ = [
  "Invalid",
  "MAX_REPORT_IMAGES",
  "Valid",
  "ValidationResult",
  "parse_rating",
  "parse_status_filter",
  "resolve_author_handle",
  "validate_comment",
  "validate_credentials",
  "validate_moderation",
  "validate_registration",
  "validate_report_submission",
  "validate_user_changes",
]
