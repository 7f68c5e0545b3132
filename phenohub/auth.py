"""
Bearer-token authentication and role checks.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Mapping, NamedTuple, Optional

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

JWT_ALGORITHM = "HS256"

ROLE_OWNER = "OWNER"
ROLE_ADMIN = "ADMIN"
ROLE_MODERATOR = "MODERATOR"
ROLE_USER = "USER"
ADMIN_ROLES = frozenset({ROLE_OWNER, ROLE_ADMIN, ROLE_MODERATOR})
USER_ROLES = (ROLE_USER, "SUPPORTER", "VERIFIED", ROLE_MODERATOR, ROLE_ADMIN, ROLE_OWNER)

STATUS_ACTIVE = "ACTIVE"
USER_STATUSES = (STATUS_ACTIVE, "INVITED", "SUSPENDED")


class AuthResult(NamedTuple):
  ok: bool
  status: int
  claims: Optional[Dict[str, Any]]
  error: Optional[str] = None


def generate_token(
  user: Mapping[str, Any],
  *,
  secret: str,
  expiration_minutes: int = 60,
) -> str:
  """Return a signed JWT for the provided user record."""
  now = datetime.now(timezone.utc)
  payload = {
    "sub": user["id"],
    "email": user["email"],
    "role": user.get("role") or ROLE_USER,
    "username": user.get("username"),
    "name": user.get("name"),
    "exp": now + timedelta(minutes=expiration_minutes),
    "iat": now,
  }
  return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, *, secret: str) -> Dict[str, Any]:
  """Decode a JWT and return its payload."""
  return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])


def bearer_token(headers: Mapping[str, str]) -> Optional[str]:
  auth_header = headers.get("Authorization", "") or ""
  if not auth_header.startswith("Bearer "):
    return None
  return auth_header.split(" ", 1)[1].strip() or None


def can_moderate(role: Optional[str]) -> bool:
  return bool(role) and role in ADMIN_ROLES


def require_auth(
  headers: Mapping[str, str],
  *,
  secret: str,
  roles: Optional[Iterable[str]] = None,
) -> AuthResult:
  """
  Authenticate the request headers and optionally check the caller's role.

  Returns 401 when the token is missing, expired or invalid and 403 when the
  caller is authenticated but their role is not in ``roles``.
  """
  token = bearer_token(headers)
  if not token:
    return AuthResult(False, 401, None, "Authorization header missing or invalid.")

  try:
    claims = decode_token(token, secret=secret)
  except ExpiredSignatureError:
    return AuthResult(False, 401, None, "Token has expired.")
  except InvalidTokenError:
    return AuthResult(False, 401, None, "Token is invalid.")

  if roles is not None:
    allowed = set(roles)
    if not claims.get("role") or claims["role"] not in allowed:
      return AuthResult(False, 403, claims, "Insufficient permissions.")

  return AuthResult(True, 200, claims)


def require_admin(headers: Mapping[str, str], *, secret: str) -> AuthResult:
  return require_auth(headers, secret=secret, roles=ADMIN_ROLES)


def require_owner(headers: Mapping[str, str], *, secret: str) -> AuthResult:
  return require_auth(headers, secret=secret, roles=[ROLE_OWNER])


def optional_claims(headers: Mapping[str, str], *, secret: str) -> Optional[Dict[str, Any]]:
  """Claims for a valid token, ``None`` for anonymous or broken tokens."""
  result = require_auth(headers, secret=secret)
  return result.claims if result.ok else None


__all__ = [
  "ADMIN_ROLES",
  "AuthResult",
  "ROLE_OWNER",
  "ROLE_USER",
  "STATUS_ACTIVE",
  "USER_ROLES",
  "USER_STATUSES",
  "can_moderate",
  "decode_token",
  "generate_token",
  "optional_claims",
  "require_admin",
  "require_auth",
  "require_owner",
]
