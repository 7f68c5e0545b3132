"""
Storage backends for providers, cultivars, reports and users.

Every backend exposes the same methods so route handlers, the metrics
aggregator and the maintenance commands never care where rows live:

* ``SqliteStore`` keeps everything in a local SQLite file (development).
* ``DynamoStore`` (see ``phenohub.dynamo_store``) talks to DynamoDB.
* ``UnavailableStore`` is selected when no backend could be brought up; it
  reports ``available = False`` and raises ``StoreUnavailableError`` from
  every data method so callers can answer with a 503.

A store is created once at startup, ``init()`` is called before first use and
``shutdown()`` when the process stops.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_PUBLISHED = "PUBLISHED"
STATUS_REJECTED = "REJECTED"
REPORT_STATUSES = (STATUS_PENDING, STATUS_PUBLISHED, STATUS_REJECTED)

SEARCH_LIMIT = 5


class StoreUnavailableError(RuntimeError):
  """Raised when the configured storage backend cannot serve requests."""


class ReportAggregate(NamedTuple):
  """Count and means over a set of published reports (``None`` when empty)."""

  count: int
  avg_overall: Optional[float]
  avg_shipping: Optional[float]
  avg_vitality: Optional[float]


def utc_now_iso() -> str:
  return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
  return uuid.uuid4().hex


class Store:
  """Interface shared by all storage backends."""

  available = True
  backend = "abstract"

  def init(self) -> None:
    """Open resources and make sure the schema exists."""

  def shutdown(self) -> None:
    """Release resources held by the backend."""

  # Metrics collaborators.
  def list_provider_ids(self) -> List[str]:
    raise NotImplementedError

  def list_cultivar_ids(self) -> List[str]:
    raise NotImplementedError

  def aggregate_published(
    self,
    *,
    provider_id: Optional[str] = None,
    cultivar_id: Optional[str] = None,
  ) -> ReportAggregate:
    raise NotImplementedError

  def update_provider_metrics(self, provider_id: str, metrics: Dict[str, Any]) -> None:
    raise NotImplementedError

  def update_cultivar_metrics(self, cultivar_id: str, metrics: Dict[str, Any]) -> None:
    raise NotImplementedError

  # Catalogue.
  def create_provider(self, slug: str, name: str, country: str = "") -> Dict[str, Any]:
    raise NotImplementedError

  def create_cultivar(
    self,
    slug: str,
    name: str,
    breeder: Optional[str] = None,
    aka: Optional[List[str]] = None,
  ) -> Dict[str, Any]:
    raise NotImplementedError

  def list_providers(self) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def list_cultivars(self) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def get_provider_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def get_cultivar_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  # Reports.
  def create_report(self, record: Dict[str, Any]) -> Dict[str, Any]:
    raise NotImplementedError

  def get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def list_reports(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def update_report_status(self, report_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def delete_reports(self, report_ids: Iterable[str]) -> int:
    raise NotImplementedError

  # Search. Matching is a case-insensitive substring test.
  def search_cultivars(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    """Cultivars whose name or one of whose aliases contains ``query``."""
    raise NotImplementedError

  def search_providers(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def search_reports(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    """Published reports matching on title, cultivar name or provider name."""
    raise NotImplementedError

  # Comments and likes.
  def list_comments(self, report_id: str) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def add_comment(self, report_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
    """Store a comment and refresh the report's ``comments`` counter."""
    raise NotImplementedError

  def delete_comment(self, report_id: str, comment_id: str) -> bool:
    raise NotImplementedError

  def toggle_like(
    self,
    report_id: str,
    *,
    user_id: Optional[str] = None,
    client_id: Optional[str] = None,
  ) -> Tuple[bool, int]:
    """
    Like the report, or remove the existing like of the same user or client.

    Returns whether the report is now liked and its new like count.
    """
    raise NotImplementedError

  def liked_report_ids(
    self,
    report_ids: Iterable[str],
    *,
    user_id: Optional[str] = None,
    client_id: Optional[str] = None,
  ) -> Set[str]:
    raise NotImplementedError

  # Users.
  def count_users(self) -> int:
    raise NotImplementedError

  def list_users(self) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def create_user(self, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Persist a user; returns ``None`` when the email is already taken."""
    raise NotImplementedError

  def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Apply role/status changes; ``None`` when the user does not exist."""
    raise NotImplementedError


class UnavailableStore(Store):
  """Stand-in used when no storage backend is reachable."""

  available = False
  backend = "unavailable"

  def __init__(self, reason: str = "Storage backend is not configured.") -> None:
    self.reason = reason

  def _unavailable(self, *_args: Any, **_kwargs: Any) -> Any:
    raise StoreUnavailableError(self.reason)

  list_provider_ids = list_cultivar_ids = aggregate_published = _unavailable
  update_provider_metrics = update_cultivar_metrics = _unavailable
  create_provider = create_cultivar = list_providers = list_cultivars = _unavailable
  get_provider_by_slug = get_cultivar_by_slug = _unavailable
  create_report = get_report = list_reports = update_report_status = delete_reports = _unavailable
  search_cultivars = search_providers = search_reports = _unavailable
  list_comments = add_comment = delete_comment = toggle_like = liked_report_ids = _unavailable
  count_users = list_users = get_user = get_user_by_email = get_user_by_username = _unavailable
  create_user = update_user = _unavailable


def like_pattern(query: str) -> str:
  """``LIKE`` pattern for a lower-cased substring match of ``query``."""
  escaped = query.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
  return f"%{escaped}%"


_PROVIDER_COLUMNS = "id, slug, name, country, avg_score, shipping_score, vitality_score, report_count"
_CULTIVAR_COLUMNS = "id, slug, name, breeder, aka, avg_rating, report_count"
_REPORT_COLUMN_NAMES = (
  "id", "title", "slug", "cultivar_id", "provider_id", "author_id", "author_handle",
  "excerpt", "content", "images", "overall", "shipping", "vitality", "stability", "care",
  "likes", "comments", "status", "review_note", "moderated_by", "moderated_at",
  "published_at", "created_at",
)
_REPORT_COLUMNS = ", ".join(_REPORT_COLUMN_NAMES)
_REPORT_NUMERIC = ("overall", "shipping", "vitality", "stability", "care", "likes", "comments")
_USER_COLUMNS = "id, email, username, name, password_hash, role, status, created_at"
_COMMENT_COLUMNS = "id, report_id, user_id, author_name, body, created_at"

_REPORT_UPDATABLE = ("status", "review_note", "moderated_by", "moderated_at", "published_at")
USER_UPDATABLE = ("role", "status")


class SqliteStore(Store):
  """SQLite-backed store; a short-lived connection is opened per operation."""

  backend = "sqlite"

  def __init__(self, db_path: Path | str) -> None:
    self.db_path = Path(db_path)
    self._closed = False

  def _connect(self) -> sqlite3.Connection:
    if self._closed:
      raise StoreUnavailableError("SQLite store has been shut down.")
    conn = sqlite3.connect(self.db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

  def init(self) -> None:
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    self._closed = False
    conn = self._connect()
    with conn:
      conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS providers (
          id TEXT PRIMARY KEY,
          slug TEXT UNIQUE NOT NULL,
          name TEXT NOT NULL,
          country TEXT NOT NULL DEFAULT '',
          avg_score REAL NOT NULL DEFAULT 0,
          shipping_score REAL NOT NULL DEFAULT 0,
          vitality_score REAL NOT NULL DEFAULT 0,
          report_count INTEGER NOT NULL DEFAULT 0
        );
        CREATE TABLE IF NOT EXISTS cultivars (
          id TEXT PRIMARY KEY,
          slug TEXT UNIQUE NOT NULL,
          name TEXT NOT NULL,
          breeder TEXT,
          aka TEXT NOT NULL DEFAULT '[]',
          avg_rating REAL NOT NULL DEFAULT 0,
          report_count INTEGER NOT NULL DEFAULT 0
        );
        CREATE TABLE IF NOT EXISTS users (
          id TEXT PRIMARY KEY,
          email TEXT UNIQUE NOT NULL,
          username TEXT UNIQUE,
          name TEXT,
          password_hash TEXT NOT NULL,
          role TEXT NOT NULL,
          status TEXT NOT NULL,
          created_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS reports (
          id TEXT PRIMARY KEY,
          title TEXT NOT NULL,
          slug TEXT NOT NULL,
          cultivar_id TEXT NOT NULL REFERENCES cultivars(id),
          provider_id TEXT NOT NULL REFERENCES providers(id),
          author_id TEXT,
          author_handle TEXT NOT NULL,
          excerpt TEXT,
          content TEXT,
          images TEXT NOT NULL DEFAULT '[]',
          overall REAL NOT NULL DEFAULT 0,
          shipping REAL NOT NULL DEFAULT 0,
          vitality REAL NOT NULL DEFAULT 0,
          stability REAL NOT NULL DEFAULT 0,
          care REAL NOT NULL DEFAULT 0,
          likes INTEGER NOT NULL DEFAULT 0,
          comments INTEGER NOT NULL DEFAULT 0,
          status TEXT NOT NULL,
          review_note TEXT,
          moderated_by TEXT,
          moderated_at TEXT,
          published_at TEXT,
          created_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS report_comments (
          id TEXT PRIMARY KEY,
          report_id TEXT NOT NULL REFERENCES reports(id) ON DELETE CASCADE,
          user_id TEXT,
          author_name TEXT NOT NULL,
          body TEXT NOT NULL,
          created_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS report_likes (
          id TEXT PRIMARY KEY,
          report_id TEXT NOT NULL REFERENCES reports(id) ON DELETE CASCADE,
          user_id TEXT,
          client_id TEXT,
          created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS reports_provider_status ON reports (provider_id, status);
        CREATE INDEX IF NOT EXISTS reports_cultivar_status ON reports (cultivar_id, status);
        CREATE INDEX IF NOT EXISTS report_comments_report ON report_comments (report_id);
        CREATE INDEX IF NOT EXISTS report_likes_report ON report_likes (report_id);
        """
      )
    conn.close()
    logger.info("SQLite store ready at %s", self.db_path)

  def shutdown(self) -> None:
    self._closed = True

  @staticmethod
  def _provider(row: sqlite3.Row) -> Dict[str, Any]:
    return dict(row)

  @staticmethod
  def _cultivar(row: sqlite3.Row) -> Dict[str, Any]:
    cultivar = dict(row)
    cultivar["aka"] = json.loads(cultivar.get("aka") or "[]")
    return cultivar

  @staticmethod
  def _report(row: sqlite3.Row) -> Dict[str, Any]:
    report = dict(row)
    report["images"] = json.loads(report.get("images") or "[]")
    return report

  def _fetch_one(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
    conn = self._connect()
    try:
      return conn.execute(sql, params).fetchone()
    finally:
      conn.close()

  def _fetch_all(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
    conn = self._connect()
    try:
      return conn.execute(sql, params).fetchall()
    finally:
      conn.close()

  def list_provider_ids(self) -> List[str]:
    return [row["id"] for row in self._fetch_all("SELECT id FROM providers")]

  def list_cultivar_ids(self) -> List[str]:
    return [row["id"] for row in self._fetch_all("SELECT id FROM cultivars")]

  def aggregate_published(
    self,
    *,
    provider_id: Optional[str] = None,
    cultivar_id: Optional[str] = None,
  ) -> ReportAggregate:
    if (provider_id is None) == (cultivar_id is None):
      raise ValueError("Exactly one of provider_id or cultivar_id is required.")
    column = "provider_id" if provider_id is not None else "cultivar_id"
    row = self._fetch_one(
      f"""
      SELECT COUNT(*) AS count, AVG(overall) AS avg_overall,
             AVG(shipping) AS avg_shipping, AVG(vitality) AS avg_vitality
      FROM reports
      WHERE {column} = ? AND status = ?
      """,
      (provider_id if provider_id is not None else cultivar_id, STATUS_PUBLISHED),
    )
    return ReportAggregate(
      count=int(row["count"] or 0),
      avg_overall=row["avg_overall"],
      avg_shipping=row["avg_shipping"],
      avg_vitality=row["avg_vitality"],
    )

  def _update(self, table: str, row_id: str, values: Dict[str, Any]) -> int:
    assignments = ", ".join(f"{column} = ?" for column in values)
    conn = self._connect()
    try:
      with conn:
        cursor = conn.execute(
          f"UPDATE {table} SET {assignments} WHERE id = ?",
          (*values.values(), row_id),
        )
      return cursor.rowcount
    finally:
      conn.close()

  def update_provider_metrics(self, provider_id: str, metrics: Dict[str, Any]) -> None:
    values = {
      key: metrics[key]
      for key in ("avg_score", "shipping_score", "vitality_score", "report_count")
    }
    if not self._update("providers", provider_id, values):
      raise LookupError(f"Provider {provider_id} does not exist.")

  def update_cultivar_metrics(self, cultivar_id: str, metrics: Dict[str, Any]) -> None:
    values = {key: metrics[key] for key in ("avg_rating", "report_count")}
    if not self._update("cultivars", cultivar_id, values):
      raise LookupError(f"Cultivar {cultivar_id} does not exist.")

  def create_provider(self, slug: str, name: str, country: str = "") -> Dict[str, Any]:
    provider_id = new_id()
    conn = self._connect()
    try:
      with conn:
        conn.execute(
          "INSERT INTO providers (id, slug, name, country) VALUES (?, ?, ?, ?)",
          (provider_id, slug, name, country),
        )
    finally:
      conn.close()
    return self.get_provider_by_slug(slug)  # type: ignore[return-value]

  def create_cultivar(
    self,
    slug: str,
    name: str,
    breeder: Optional[str] = None,
    aka: Optional[List[str]] = None,
  ) -> Dict[str, Any]:
    cultivar_id = new_id()
    conn = self._connect()
    try:
      with conn:
        conn.execute(
          "INSERT INTO cultivars (id, slug, name, breeder, aka) VALUES (?, ?, ?, ?, ?)",
          (cultivar_id, slug, name, breeder, json.dumps(aka or [])),
        )
    finally:
      conn.close()
    return self.get_cultivar_by_slug(slug)  # type: ignore[return-value]

  def list_providers(self) -> List[Dict[str, Any]]:
    rows = self._fetch_all(f"SELECT {_PROVIDER_COLUMNS} FROM providers ORDER BY name ASC")
    return [self._provider(row) for row in rows]

  def list_cultivars(self) -> List[Dict[str, Any]]:
    rows = self._fetch_all(f"SELECT {_CULTIVAR_COLUMNS} FROM cultivars ORDER BY name ASC")
    return [self._cultivar(row) for row in rows]

  def get_provider_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
    row = self._fetch_one(f"SELECT {_PROVIDER_COLUMNS} FROM providers WHERE slug = ?", (slug,))
    return self._provider(row) if row else None

  def get_cultivar_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
    row = self._fetch_one(f"SELECT {_CULTIVAR_COLUMNS} FROM cultivars WHERE slug = ?", (slug,))
    return self._cultivar(row) if row else None

  def create_report(self, record: Dict[str, Any]) -> Dict[str, Any]:
    report = {
      "id": record.get("id") or new_id(),
      "created_at": record.get("created_at") or utc_now_iso(),
      "status": record.get("status") or STATUS_PENDING,
      **{key: value for key, value in record.items() if key not in ("id", "created_at", "status")},
    }
    for column in _REPORT_NUMERIC:
      report[column] = report.get(column) or 0
    values = [
      json.dumps(report.get("images") or []) if column == "images" else report.get(column)
      for column in _REPORT_COLUMN_NAMES
    ]
    conn = self._connect()
    try:
      with conn:
        conn.execute(
          f"INSERT INTO reports ({_REPORT_COLUMNS}) "
          f"VALUES ({', '.join('?' for _ in _REPORT_COLUMN_NAMES)})",
          values,
        )
    finally:
      conn.close()
    return self.get_report(report["id"])  # type: ignore[return-value]

  def get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
    row = self._fetch_one(f"SELECT {_REPORT_COLUMNS} FROM reports WHERE id = ?", (report_id,))
    return self._report(row) if row else None

  def list_reports(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = f"SELECT {_REPORT_COLUMNS} FROM reports"
    params: tuple[Any, ...] = ()
    if status:
      sql += " WHERE status = ?"
      params = (status,)
    sql += " ORDER BY datetime(created_at) DESC"
    return [self._report(row) for row in self._fetch_all(sql, params)]

  def update_report_status(self, report_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    values = {key: changes[key] for key in _REPORT_UPDATABLE if key in changes}
    if values and not self._update("reports", report_id, values):
      return None
    return self.get_report(report_id)

  def delete_reports(self, report_ids: Iterable[str]) -> int:
    ids = list(dict.fromkeys(report_ids))
    if not ids:
      return 0
    conn = self._connect()
    try:
      with conn:
        cursor = conn.execute(
          f"DELETE FROM reports WHERE id IN ({', '.join('?' for _ in ids)})",
          ids,
        )
      return cursor.rowcount
    finally:
      conn.close()

  def search_cultivars(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    pattern = like_pattern(query)
    rows = self._fetch_all(
      f"""
      SELECT {_CULTIVAR_COLUMNS} FROM cultivars
      WHERE lower(name) LIKE ? ESCAPE '\\'
         OR EXISTS (
           SELECT 1 FROM json_each(cultivars.aka)
           WHERE lower(json_each.value) LIKE ? ESCAPE '\\'
         )
      ORDER BY report_count DESC, name ASC
      LIMIT ?
      """,
      (pattern, pattern, limit),
    )
    return [self._cultivar(row) for row in rows]

  def search_providers(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    rows = self._fetch_all(
      f"""
      SELECT {_PROVIDER_COLUMNS} FROM providers
      WHERE lower(name) LIKE ? ESCAPE '\\'
      ORDER BY avg_score DESC, name ASC
      LIMIT ?
      """,
      (like_pattern(query), limit),
    )
    return [self._provider(row) for row in rows]

  def search_reports(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    pattern = like_pattern(query)
    columns = ", ".join(f"r.{column}" for column in _REPORT_COLUMN_NAMES)
    rows = self._fetch_all(
      f"""
      SELECT {columns},
             c.name AS cultivar_name, c.slug AS cultivar_slug,
             p.name AS provider_name, p.slug AS provider_slug
      FROM reports r
      JOIN cultivars c ON c.id = r.cultivar_id
      JOIN providers p ON p.id = r.provider_id
      WHERE r.status = ?
        AND (lower(r.title) LIKE ? ESCAPE '\\'
             OR lower(c.name) LIKE ? ESCAPE '\\'
             OR lower(p.name) LIKE ? ESCAPE '\\')
      ORDER BY COALESCE(r.published_at, r.created_at) DESC
      LIMIT ?
      """,
      (STATUS_PUBLISHED, pattern, pattern, pattern, limit),
    )
    return [self._report(row) for row in rows]

  def list_comments(self, report_id: str) -> List[Dict[str, Any]]:
    rows = self._fetch_all(
      f"SELECT {_COMMENT_COLUMNS} FROM report_comments WHERE report_id = ? "
      "ORDER BY created_at ASC, rowid ASC",
      (report_id,),
    )
    return [dict(row) for row in rows]

  def add_comment(self, report_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
    comment = {
      "id": record.get("id") or new_id(),
      "report_id": report_id,
      "user_id": record.get("user_id"),
      "author_name": record["author_name"],
      "body": record["body"],
      "created_at": record.get("created_at") or utc_now_iso(),
    }
    conn = self._connect()
    try:
      with conn:
        conn.execute(
          f"INSERT INTO report_comments ({_COMMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
          tuple(comment.values()),
        )
        self._refresh_counter(conn, "comments", "report_comments", report_id)
    finally:
      conn.close()
    return comment

  def delete_comment(self, report_id: str, comment_id: str) -> bool:
    conn = self._connect()
    try:
      with conn:
        cursor = conn.execute(
          "DELETE FROM report_comments WHERE id = ? AND report_id = ?",
          (comment_id, report_id),
        )
        if cursor.rowcount:
          self._refresh_counter(conn, "comments", "report_comments", report_id)
      return cursor.rowcount > 0
    finally:
      conn.close()

  @staticmethod
  def _refresh_counter(conn: sqlite3.Connection, column: str, source: str, report_id: str) -> int:
    total = conn.execute(
      f"SELECT COUNT(*) AS count FROM {source} WHERE report_id = ?",
      (report_id,),
    ).fetchone()["count"]
    conn.execute(f"UPDATE reports SET {column} = ? WHERE id = ?", (total, report_id))
    return int(total)

  @staticmethod
  def _liker_clause(user_id: Optional[str], client_id: Optional[str]) -> Tuple[str, tuple]:
    conditions = []
    params: List[str] = []
    if user_id:
      conditions.append("user_id = ?")
      params.append(user_id)
    if client_id:
      conditions.append("client_id = ?")
      params.append(client_id)
    if not conditions:
      raise ValueError("A user id or client id is required to like a report.")
    return f"({' OR '.join(conditions)})", tuple(params)

  def toggle_like(
    self,
    report_id: str,
    *,
    user_id: Optional[str] = None,
    client_id: Optional[str] = None,
  ) -> Tuple[bool, int]:
    clause, params = self._liker_clause(user_id, client_id)
    conn = self._connect()
    try:
      with conn:
        existing = conn.execute(
          f"SELECT id FROM report_likes WHERE report_id = ? AND {clause} LIMIT 1",
          (report_id, *params),
        ).fetchone()
        if existing:
          conn.execute("DELETE FROM report_likes WHERE id = ?", (existing["id"],))
        else:
          conn.execute(
            "INSERT INTO report_likes (id, report_id, user_id, client_id, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (new_id(), report_id, user_id, client_id, utc_now_iso()),
          )
        total = self._refresh_counter(conn, "likes", "report_likes", report_id)
    finally:
      conn.close()
    return existing is None, total

  def liked_report_ids(
    self,
    report_ids: Iterable[str],
    *,
    user_id: Optional[str] = None,
    client_id: Optional[str] = None,
  ) -> Set[str]:
    ids = list(dict.fromkeys(report_ids))
    if not ids or not (user_id or client_id):
      return set()
    clause, params = self._liker_clause(user_id, client_id)
    rows = self._fetch_all(
      f"SELECT DISTINCT report_id FROM report_likes "
      f"WHERE report_id IN ({', '.join('?' for _ in ids)}) AND {clause}",
      (*ids, *params),
    )
    return {row["report_id"] for row in rows}

  def count_users(self) -> int:
    row = self._fetch_one("SELECT COUNT(*) AS count FROM users", ())
    return int(row["count"])

  def list_users(self) -> List[Dict[str, Any]]:
    rows = self._fetch_all(f"SELECT {_USER_COLUMNS} FROM users ORDER BY created_at ASC, rowid ASC")
    return [dict(row) for row in rows]

  def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    row = self._fetch_one(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,))
    return dict(row) if row else None

  def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    values = {key: changes[key] for key in USER_UPDATABLE if key in changes}
    if values and not self._update("users", user_id, values):
      return None
    return self.get_user(user_id)

  def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
    row = self._fetch_one(
      f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = lower(?)",
      (email,),
    )
    return dict(row) if row else None

  def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
    row = self._fetch_one(f"SELECT {_USER_COLUMNS} FROM users WHERE username = ?", (username,))
    return dict(row) if row else None

  def create_user(self, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    user = {
      "id": record.get("id") or new_id(),
      "email": record["email"].lower(),
      "username": record.get("username"),
      "name": record.get("name"),
      "password_hash": record["password_hash"],
      "role": record.get("role") or "USER",
      "status": record.get("status") or "ACTIVE",
      "created_at": record.get("created_at") or utc_now_iso(),
    }
    conn = self._connect()
    try:
      with conn:
        conn.execute(
          f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
          tuple(user.values()),
        )
    except sqlite3.IntegrityError:
      return None
    finally:
      conn.close()
    return user


__all__ = [
  "REPORT_STATUSES",
  "ReportAggregate",
  "SEARCH_LIMIT",
  "SqliteStore",
  "STATUS_PENDING",
  "STATUS_PUBLISHED",
  "STATUS_REJECTED",
  "Store",
  "StoreUnavailableError",
  "USER_UPDATABLE",
  "UnavailableStore",
  "like_pattern",
  "new_id",
  "utc_now_iso",
]
