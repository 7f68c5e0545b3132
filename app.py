"""
Flask backend for PhenoHub.

The service catalogues cultivars and cutting providers and accepts
user-submitted experience reports. Reports enter as PENDING and are moderated
by admins; only published reports feed the derived provider and cultivar
metrics, which are recalculated whenever a moderation decision or deletion
changes the published set. Data lives in SQLite (development) or DynamoDB
(production), selected once at startup.
"""

from __future__ import annotations

import atexit
import re
import sqlite3
import time
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from phenohub.age_gate import (
  AGE_COOKIE_MAX_AGE_SECONDS,
  AGE_COOKIE_NAME,
  AGE_COOKIE_VALUE,
  has_consented,
  sanitize_return_to,
)
from phenohub.auth import (
  ROLE_OWNER,
  ROLE_USER,
  STATUS_ACTIVE,
  can_moderate,
  generate_token,
  optional_claims,
  require_admin,
  require_auth,
  require_owner,
)
from phenohub.config import (
  AGE_COOKIE_SECURE,
  DB_PATH,
  IMAGE_PROXY_TIMEOUT,
  JWT_EXPIRATION_MINUTES,
  JWT_SECRET_KEY,
  METRICS_MAX_WORKERS,
  STORAGE_BACKEND,
  build_store,
)
from phenohub.image_proxy import ImageProxyError, fetch_image
from phenohub.likes import LIKE_COOKIE_MAX_AGE_SECONDS, LIKE_COOKIE_NAME, client_like_id, new_client_id
from phenohub.media_links import normalize_media_links
from phenohub.metrics import MetricsRecalculationError, recalc_all
from phenohub.store import (
  STATUS_PENDING,
  STATUS_PUBLISHED,
  Store,
  StoreUnavailableError,
  utc_now_iso,
)
from phenohub.validation import (
  parse_status_filter,
  resolve_author_handle,
  validate_comment,
  validate_credentials,
  validate_moderation,
  validate_registration,
  validate_report_submission,
  validate_user_changes,
)

STORE_EXTENSION_KEY = "phenohub.store"

STORAGE_ERRORS = (sqlite3.Error, BotoCoreError, ClientError)


def _slugify(value: str) -> str:
  normalized = unicodedata.normalize("NFKD", value.lower())
  slug = re.sub(r"[^a-z0-9]+", "-", normalized).strip("-")
  return re.sub(r"-{2,}", "-", slug)


def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
  return {
    "id": user["id"],
    "email": user["email"],
    "username": user.get("username"),
    "name": user.get("name"),
    "role": user.get("role"),
    "status": user.get("status"),
    "created_at": user.get("created_at"),
  }


def _serialize_report(report: Dict[str, Any]) -> Dict[str, Any]:
  """Report payload with every stored image expanded into direct/preview links."""
  links = normalize_media_links(report.get("images") or [])
  payload = dict(report)
  payload["images"] = [link._asdict() for link in links]
  payload["thumbnail"] = links[0].preview if links else ""
  return payload


def _report_content(summary: str, setup: Dict[str, Optional[str]]) -> str:
  lines = [
    summary,
    "",
    "Setup:",
    f"- Lamp: {setup.get('lamp_type') or 'not specified'}",
    f"- Tent: {setup.get('tent_size') or 'not specified'}",
    f"- Medium: {setup.get('medium') or 'not specified'}",
  ]
  return "\n".join(lines)


def create_app(config_override: Optional[Dict[str, Any]] = None) -> Flask:
  """Instantiate the Flask application and register routes."""
  app = Flask(__name__)
  CORS(app, resources={r"/*": {"origins": "*"}})

  app.config.update(
    STORAGE_BACKEND=STORAGE_BACKEND,
    SQLITE_DB_PATH=DB_PATH,
    JWT_SECRET_KEY=JWT_SECRET_KEY,
    JWT_EXPIRATION_MINUTES=JWT_EXPIRATION_MINUTES,
    METRICS_MAX_WORKERS=METRICS_MAX_WORKERS,
    IMAGE_PROXY_TIMEOUT=IMAGE_PROXY_TIMEOUT,
    AGE_COOKIE_SECURE=AGE_COOKIE_SECURE,
  )
  if config_override:
    app.config.update(config_override)

  store: Store = app.config.get("STORE") or build_store(
    app.config["STORAGE_BACKEND"],
    Path(app.config["SQLITE_DB_PATH"]),
  )
  app.extensions[STORE_EXTENSION_KEY] = store
  atexit.register(store.shutdown)
  if not store.available:
    app.logger.warning("Starting without storage: %s", getattr(store, "reason", "unavailable"))

  def _secret() -> str:
    return app.config["JWT_SECRET_KEY"]

  def _recalculate() -> None:
    recalc_all(store, max_workers=app.config["METRICS_MAX_WORKERS"])

  def _admin_claims() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[Dict[str, Any], int]]]:
    auth = require_admin(request.headers, secret=_secret())
    if not auth.ok:
      return None, ({"error": auth.error or "Unauthorized"}, auth.status)
    return auth.claims, None

  def _visible_report(report_id: str) -> Optional[Dict[str, Any]]:
    """Published reports are public; authors and moderators also see the rest."""
    report = store.get_report(report_id)
    if not report:
      return None
    if report["status"] != STATUS_PUBLISHED:
      claims = optional_claims(request.headers, secret=_secret()) or {}
      is_author = bool(claims.get("sub")) and claims.get("sub") == report.get("author_id")
      if not (is_author or can_moderate(claims.get("role"))):
        return None
    return report

  @app.errorhandler(StoreUnavailableError)
  def store_unavailable(exc: StoreUnavailableError):
    app.logger.warning("Storage unavailable: %s", exc)
    return jsonify({"error": "Storage is currently unavailable.", "details": str(exc)}), 503

  @app.errorhandler(MetricsRecalculationError)
  def metrics_failed(exc: MetricsRecalculationError):
    app.logger.exception("Metrics recalculation failed for %s %s", exc.entity, exc.entity_id)
    return jsonify({"error": "Metrics recalculation failed.", "details": str(exc)}), 500

  def storage_failed(exc: Exception):
    app.logger.exception("Storage operation failed: %s", exc)
    return jsonify({"error": "Storage operation failed."}), 500

  for error_type in STORAGE_ERRORS:
    app.register_error_handler(error_type, storage_failed)

  @app.errorhandler(HTTPException)
  def http_error(exc: HTTPException):
    return jsonify({"error": exc.description or exc.name}), exc.code or 500

  @app.route("/health", methods=["GET"])
  def health() -> Tuple[Dict[str, Any], int]:
    """Simple health-check endpoint."""
    return {
      "status": "ok" if store.available else "degraded",
      "storage": store.backend,
      "timestamp": datetime.now(timezone.utc).isoformat(),
    }, 200

  @app.route("/auth/register", methods=["POST"])
  def register() -> Tuple[Dict[str, Any], int]:
    """Register a new account; the very first account becomes the owner."""
    result = validate_registration(request.get_json(silent=True))
    if not result.ok:
      return {"error": result.message}, 400
    payload = result.value

    if store.get_user_by_email(payload["email"]):
      return {"error": "Email is already registered."}, 409
    if payload["username"] and store.get_user_by_username(payload["username"]):
      return {"error": "Username is already taken."}, 409

    role = ROLE_OWNER if store.count_users() == 0 else ROLE_USER
    user = store.create_user({
      "email": payload["email"],
      "username": payload["username"],
      "name": payload["name"],
      "password_hash": generate_password_hash(payload["password"]),
      "role": role,
      "status": STATUS_ACTIVE,
    })
    if user is None:
      # Storage layer returned a conflict (duplicate email)
      return {"error": "Email is already registered."}, 409

    token = generate_token(user, secret=_secret(), expiration_minutes=app.config["JWT_EXPIRATION_MINUTES"])
    return {"token": token, "user": _public_user(user)}, 201

  @app.route("/auth/login", methods=["POST"])
  def login() -> Tuple[Dict[str, Any], int]:
    """Authenticate an existing user and return a JWT."""
    result = validate_credentials(request.get_json(silent=True))
    if not result.ok:
      return {"error": result.message}, 400

    user = store.get_user_by_email(result.value["email"])
    if not user or not check_password_hash(user["password_hash"], result.value["password"]):
      return {"error": "Invalid credentials."}, 401
    if (user.get("status") or STATUS_ACTIVE) != STATUS_ACTIVE:
      return {"error": "Account is not active."}, 403

    token = generate_token(user, secret=_secret(), expiration_minutes=app.config["JWT_EXPIRATION_MINUTES"])
    return {"token": token, "user": _public_user(user)}, 200

  @app.route("/auth/me", methods=["GET"])
  def me() -> Tuple[Dict[str, Any], int]:
    """Return user information for the supplied JWT."""
    auth = require_auth(request.headers, secret=_secret())
    if not auth.ok:
      return {"error": auth.error}, auth.status

    email = auth.claims.get("email")
    if not email or not auth.claims.get("sub"):
      return {"error": "Token payload is malformed."}, 401

    user = store.get_user_by_email(email)
    if not user or user["id"] != auth.claims["sub"]:
      return {"error": "User not found."}, 404
    return {"user": _public_user(user)}, 200

  @app.route("/age-consent", methods=["GET"])
  def age_consent_status() -> Tuple[Dict[str, bool], int]:
    return {"verified": has_consented(request.cookies)}, 200

  @app.route("/age-consent", methods=["POST"])
  def age_consent():
    """Record age confirmation in a long-lived cookie."""
    payload = request.get_json(silent=True) or {}
    return_to = payload.get("return_to") if isinstance(payload, dict) else None
    response = jsonify({"redirect_to": sanitize_return_to(return_to)})
    response.set_cookie(
      AGE_COOKIE_NAME,
      AGE_COOKIE_VALUE,
      max_age=AGE_COOKIE_MAX_AGE_SECONDS,
      path="/",
      samesite="Lax",
      secure=bool(app.config["AGE_COOKIE_SECURE"]),
      httponly=False,
    )
    return response

  @app.route("/providers", methods=["GET"])
  def providers() -> Tuple[Dict[str, List[Dict[str, Any]]], int]:
    return {"providers": store.list_providers()}, 200

  @app.route("/cultivars", methods=["GET"])
  def cultivars() -> Tuple[Dict[str, List[Dict[str, Any]]], int]:
    return {"cultivars": store.list_cultivars()}, 200

  @app.route("/search", methods=["GET"])
  def search() -> Tuple[Dict[str, List[Dict[str, Any]]], int]:
    """Name search over cultivars (and their aliases), providers and published reports."""
    query = (request.args.get("q") or "").strip()
    if not query:
      return {"cultivars": [], "providers": [], "reports": []}, 200

    reports = store.search_reports(query)
    claims = optional_claims(request.headers, secret=_secret()) or {}
    liked = store.liked_report_ids(
      [report["id"] for report in reports],
      user_id=claims.get("sub"),
      client_id=client_like_id(request.cookies),
    )
    return {
      "cultivars": store.search_cultivars(query),
      "providers": store.search_providers(query),
      "reports": [
        {**_serialize_report(report), "liked": report["id"] in liked}
        for report in reports
      ],
    }, 200

  @app.route("/reports", methods=["POST"])
  def submit_report() -> Tuple[Dict[str, Any], int]:
    """Store a new experience report for moderation."""
    claims = optional_claims(request.headers, secret=_secret())
    result = validate_report_submission(request.get_json(silent=True), claims)
    if not result.ok:
      return {"error": result.message}, 400
    payload = result.value

    cultivar = store.get_cultivar_by_slug(payload["cultivar_slug"])
    if not cultivar:
      return {"error": "Cultivar not found."}, 404
    provider = store.get_provider_by_slug(payload["provider_slug"])
    if not provider:
      return {"error": "Provider not found."}, 404

    author_id = None
    if claims and not payload["anonymous"]:
      author_id = claims.get("sub")

    report = store.create_report({
      "title": payload["title"],
      "slug": f"{_slugify(payload['title'])}-{int(time.time() * 1000)}",
      "cultivar_id": cultivar["id"],
      "provider_id": provider["id"],
      "author_id": author_id,
      "author_handle": payload["author_handle"],
      "excerpt": payload["excerpt"],
      "content": _report_content(payload["summary"], payload["setup"]),
      "images": payload["images"],
      "overall": payload["overall"],
      "shipping": payload["shipping"],
      "vitality": payload["vitality"],
      "stability": payload["stability"],
      "care": payload["care"],
      "status": STATUS_PENDING,
      "created_at": utc_now_iso(),
    })
    return {"ok": True, "report": _serialize_report(report)}, 201

  @app.route("/reports/<report_id>", methods=["GET"])
  def get_report(report_id: str) -> Tuple[Dict[str, Any], int]:
    report = _visible_report(report_id)
    if not report:
      return {"error": "Report not found."}, 404
    return {"report": _serialize_report(report)}, 200

  @app.route("/reports/<report_id>/comments", methods=["GET"])
  def list_comments(report_id: str) -> Tuple[Dict[str, Any], int]:
    if not _visible_report(report_id):
      return {"error": "Report not found."}, 404
    return {"comments": store.list_comments(report_id)}, 200

  @app.route("/reports/<report_id>/comments", methods=["POST"])
  def add_comment(report_id: str) -> Tuple[Dict[str, Any], int]:
    """Signed-in users comment under their username (or name, or email prefix)."""
    auth = require_auth(request.headers, secret=_secret())
    if not auth.ok:
      return {"error": auth.error}, auth.status

    result = validate_comment(request.get_json(silent=True))
    if not result.ok:
      return {"error": result.message}, 400
    if not _visible_report(report_id):
      return {"error": "Report not found."}, 404

    comment = store.add_comment(report_id, {
      "user_id": auth.claims.get("sub"),
      "author_name": resolve_author_handle("", False, auth.claims),
      "body": result.value["body"],
    })
    return {"ok": True, "comment": comment}, 201

  @app.route("/reports/<report_id>/comments/<comment_id>", methods=["DELETE"])
  def delete_comment(report_id: str, comment_id: str) -> Tuple[Dict[str, Any], int]:
    auth = require_owner(request.headers, secret=_secret())
    if not auth.ok:
      return {"error": auth.error}, auth.status
    if not store.delete_comment(report_id, comment_id):
      return {"error": "Comment not found."}, 404
    return {"ok": True}, 200

  @app.route("/reports/<report_id>/like", methods=["POST"])
  def toggle_like(report_id: str):
    """Toggle a like for the signed-in user or the anonymous client cookie."""
    if not _visible_report(report_id):
      return {"error": "Report not found."}, 404

    claims = optional_claims(request.headers, secret=_secret()) or {}
    client_id = client_like_id(request.cookies)
    issue_cookie = client_id is None
    if issue_cookie:
      client_id = new_client_id()

    liked, likes = store.toggle_like(report_id, user_id=claims.get("sub"), client_id=client_id)
    response = jsonify({"liked": liked, "likes": likes})
    if issue_cookie:
      response.set_cookie(
        LIKE_COOKIE_NAME,
        client_id,
        max_age=LIKE_COOKIE_MAX_AGE_SECONDS,
        path="/",
        samesite="Lax",
        httponly=True,
      )
    return response

  @app.route("/admin/reports", methods=["GET"])
  def admin_reports() -> Tuple[Dict[str, Any], int]:
    _, error = _admin_claims()
    if error:
      return error
    status = parse_status_filter(request.args.get("status"))
    reports = store.list_reports(status=status)
    return {"reports": [_serialize_report(report) for report in reports]}, 200

  @app.route("/admin/reports/<report_id>", methods=["PATCH"])
  def moderate_report(report_id: str) -> Tuple[Dict[str, Any], int]:
    """Change a report's status; metrics follow when the published set changes."""
    claims, error = _admin_claims()
    if error:
      return error

    result = validate_moderation(request.get_json(silent=True))
    if not result.ok:
      return {"error": result.message}, 400

    report = store.get_report(report_id)
    if not report:
      return {"error": "Report not found."}, 404

    new_status = result.value["status"]
    moderated_at = utc_now_iso()
    updated = store.update_report_status(report_id, {
      "status": new_status,
      "review_note": result.value["review_note"],
      "moderated_by": claims.get("sub"),
      "moderated_at": moderated_at,
      "published_at": (report.get("published_at") or moderated_at) if new_status == STATUS_PUBLISHED else None,
    })
    if updated is None:
      return {"error": "Report not found."}, 404

    status_changed = report["status"] != updated["status"]
    if status_changed and STATUS_PUBLISHED in (report["status"], updated["status"]):
      _recalculate()

    return {"ok": True, "report": _serialize_report(updated)}, 200

  @app.route("/admin/reports/<report_id>", methods=["DELETE"])
  def delete_report(report_id: str) -> Tuple[Dict[str, Any], int]:
    _, error = _admin_claims()
    if error:
      return error

    if store.delete_reports([report_id]) == 0:
      return {"error": "Report not found."}, 404

    _recalculate()
    return {"ok": True}, 200

  @app.route("/admin/metrics/recalculate", methods=["POST"])
  def recalculate_metrics() -> Tuple[Dict[str, Any], int]:
    _, error = _admin_claims()
    if error:
      return error
    _recalculate()
    return {"ok": True}, 200

  @app.route("/admin/users", methods=["GET"])
  def admin_users() -> Tuple[Dict[str, Any], int]:
    _, error = _admin_claims()
    if error:
      return error
    return {"users": [_public_user(user) for user in store.list_users()]}, 200

  @app.route("/admin/users/<user_id>", methods=["PATCH"])
  def update_user(user_id: str) -> Tuple[Dict[str, Any], int]:
    """Only owners change roles or account status, and never demote themselves."""
    auth = require_owner(request.headers, secret=_secret())
    if not auth.ok:
      return {"error": auth.error}, auth.status

    result = validate_user_changes(request.get_json(silent=True))
    if not result.ok:
      return {"error": result.message}, 400
    changes = result.value

    target = store.get_user(user_id)
    if not target:
      return {"error": "User not found."}, 404

    demotes_self = (
      target["id"] == auth.claims.get("sub")
      and target.get("role") == ROLE_OWNER
      and changes.get("role", ROLE_OWNER) != ROLE_OWNER
    )
    if demotes_self:
      return {"error": "Owners cannot demote themselves."}, 400

    updated = store.update_user(user_id, changes)
    if updated is None:
      return {"error": "User not found."}, 404
    return {"ok": True, "user": _public_user(updated)}, 200

  @app.route("/image-proxy", methods=["GET"])
  def image_proxy():
    """Relay a remote image with a usable content type and CORS header."""
    try:
      image = fetch_image(request.args.get("url"), timeout=app.config["IMAGE_PROXY_TIMEOUT"])
    except ImageProxyError as exc:
      if exc.status >= 500:
        app.logger.warning("Image proxy failed: %s", exc)
      return {"error": str(exc)}, exc.status

    return Response(
      image.content,
      status=200,
      content_type=image.content_type,
      headers={
        "Cache-Control": image.cache_control,
        "Access-Control-Allow-Origin": "*",
      },
    )

  return app


if __name__ == "__main__":
  flask_app = create_app()
  flask_app.run(host="0.0.0.0", port=5000, debug=True)
