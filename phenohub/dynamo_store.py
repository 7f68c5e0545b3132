"""
DynamoDB implementation of the PhenoHub store.

Each entity lives in its own table keyed by ``id`` (users are keyed by
``email``). DynamoDB has no server-side aggregates, so published report
averages are computed from a filtered scan.
"""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from phenohub.store import (
  SEARCH_LIMIT,
  STATUS_PENDING,
  STATUS_PUBLISHED,
  USER_UPDATABLE,
  ReportAggregate,
  Store,
  StoreUnavailableError,
  new_id,
  utc_now_iso,
)

logger = logging.getLogger(__name__)

TABLE_KEYS = ("providers", "cultivars", "reports", "users", "comments", "likes")

_REPORT_UPDATABLE = ("status", "review_note", "moderated_by", "moderated_at", "published_at")


def _to_dynamo_compatible(value: Any) -> Any:
  """Convert native Python types into structures acceptable by DynamoDB."""
  if isinstance(value, float):
    return Decimal(str(value))
  if isinstance(value, Decimal):
    return value
  if isinstance(value, dict):
    return {
      str(key): _to_dynamo_compatible(val)
      for key, val in value.items()
      if val is not None
    }
  if isinstance(value, list):
    return [_to_dynamo_compatible(item) for item in value if item is not None]
  return value


def _from_dynamo(value: Any) -> Any:
  """Recursively convert DynamoDB Decimals into JSON friendly primitives."""
  if isinstance(value, Decimal):
    if value % 1 == 0:
      return int(value)
    return float(value)
  if isinstance(value, dict):
    return {key: _from_dynamo(val) for key, val in value.items()}
  if isinstance(value, list):
    return [_from_dynamo(item) for item in value]
  return value


def _mean(values: List[float]) -> Optional[float]:
  if not values:
    return None
  return sum(values) / len(values)


def _is_conditional_failure(exc: ClientError) -> bool:
  return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoStore(Store):
  """Store backed by one DynamoDB table per entity."""

  backend = "aws"

  def __init__(
    self,
    table_names: Dict[str, str],
    *,
    region: Optional[str] = None,
    resource: Any = None,
  ) -> None:
    missing = [key for key in TABLE_KEYS if not table_names.get(key)]
    if missing:
      raise RuntimeError(
        f"DynamoDB table names missing for: {', '.join(missing)}."
      )
    self.table_names = dict(table_names)
    self.region = region
    self._resource = resource
    self._tables: Dict[str, Any] = {}

  def init(self) -> None:
    if self._resource is None:
      region = self.region or os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")
      resource_kwargs: Dict[str, Any] = {}
      if region:
        resource_kwargs["region_name"] = region
      self._resource = boto3.resource("dynamodb", **resource_kwargs)

    for key in TABLE_KEYS:
      table = self._resource.Table(self.table_names[key])
      table.load()
      self._tables[key] = table
    logger.info("DynamoDB store ready: %s", ", ".join(self.table_names.values()))

  def shutdown(self) -> None:
    self._tables = {}

  def _table(self, key: str) -> Any:
    table = self._tables.get(key)
    if table is None:
      raise StoreUnavailableError("DynamoDB store is not initialised.")
    return table

  def _scan(self, key: str, **kwargs: Any) -> List[Dict[str, Any]]:
    table = self._table(key)
    items: List[Dict[str, Any]] = []
    while True:
      response = table.scan(**kwargs)
      items.extend(_from_dynamo(item) for item in response.get("Items", []))
      last_key = response.get("LastEvaluatedKey")
      if not last_key:
        return items
      kwargs["ExclusiveStartKey"] = last_key

  def _find_one(self, key: str, attribute: str, value: Any) -> Optional[Dict[str, Any]]:
    matches = self._scan(key, FilterExpression=Attr(attribute).eq(value))
    return matches[0] if matches else None

  def _update(
    self,
    key: str,
    item_id: str,
    values: Dict[str, Any],
    key_attribute: str = "id",
  ) -> Optional[Dict[str, Any]]:
    names = {f"#f{index}": column for index, column in enumerate(values)}
    placeholders = {f":v{index}": _to_dynamo_compatible(value) for index, value in enumerate(values.values())}
    assignments = ", ".join(f"#f{index} = :v{index}" for index in range(len(values)))
    names["#id"] = key_attribute
    try:
      response = self._table(key).update_item(
        Key={key_attribute: item_id},
        UpdateExpression=f"SET {assignments}",
        ConditionExpression="attribute_exists(#id)",
        ExpressionAttributeNames=names,
        ExpressionAttributeValues=placeholders,
        ReturnValues="ALL_NEW",
      )
    except ClientError as exc:
      if _is_conditional_failure(exc):
        return None
      raise
    return _from_dynamo(response.get("Attributes", {}))

  def list_provider_ids(self) -> List[str]:
    return [item["id"] for item in self._scan("providers", ProjectionExpression="id")]

  def list_cultivar_ids(self) -> List[str]:
    return [item["id"] for item in self._scan("cultivars", ProjectionExpression="id")]

  def aggregate_published(
    self,
    *,
    provider_id: Optional[str] = None,
    cultivar_id: Optional[str] = None,
  ) -> ReportAggregate:
    if (provider_id is None) == (cultivar_id is None):
      raise ValueError("Exactly one of provider_id or cultivar_id is required.")
    condition = (
      Attr("provider_id").eq(provider_id)
      if provider_id is not None
      else Attr("cultivar_id").eq(cultivar_id)
    )
    reports = self._scan("reports", FilterExpression=condition & Attr("status").eq(STATUS_PUBLISHED))
    return ReportAggregate(
      count=len(reports),
      avg_overall=_mean([float(report.get("overall") or 0) for report in reports]),
      avg_shipping=_mean([float(report.get("shipping") or 0) for report in reports]),
      avg_vitality=_mean([float(report.get("vitality") or 0) for report in reports]),
    )

  def update_provider_metrics(self, provider_id: str, metrics: Dict[str, Any]) -> None:
    values = {
      key: metrics[key]
      for key in ("avg_score", "shipping_score", "vitality_score", "report_count")
    }
    if self._update("providers", provider_id, values) is None:
      raise LookupError(f"Provider {provider_id} does not exist.")

  def update_cultivar_metrics(self, cultivar_id: str, metrics: Dict[str, Any]) -> None:
    values = {key: metrics[key] for key in ("avg_rating", "report_count")}
    if self._update("cultivars", cultivar_id, values) is None:
      raise LookupError(f"Cultivar {cultivar_id} does not exist.")

  def create_provider(self, slug: str, name: str, country: str = "") -> Dict[str, Any]:
    item = {
      "id": new_id(),
      "slug": slug,
      "name": name,
      "country": country,
      "avg_score": 0,
      "shipping_score": 0,
      "vitality_score": 0,
      "report_count": 0,
    }
    self._table("providers").put_item(Item=_to_dynamo_compatible(item))
    return item

  def create_cultivar(
    self,
    slug: str,
    name: str,
    breeder: Optional[str] = None,
    aka: Optional[List[str]] = None,
  ) -> Dict[str, Any]:
    item = {
      "id": new_id(),
      "slug": slug,
      "name": name,
      "breeder": breeder,
      "aka": list(aka or []),
      "avg_rating": 0,
      "report_count": 0,
    }
    self._table("cultivars").put_item(Item=_to_dynamo_compatible(item))
    return item

  def list_providers(self) -> List[Dict[str, Any]]:
    return sorted(self._scan("providers"), key=lambda item: item.get("name") or "")

  def list_cultivars(self) -> List[Dict[str, Any]]:
    cultivars = sorted(self._scan("cultivars"), key=lambda item: item.get("name") or "")
    for cultivar in cultivars:
      cultivar.setdefault("aka", [])
      cultivar.setdefault("breeder", None)
    return cultivars

  def get_provider_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
    return self._find_one("providers", "slug", slug)

  def get_cultivar_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
    cultivar = self._find_one("cultivars", "slug", slug)
    if cultivar is not None:
      cultivar.setdefault("aka", [])
      cultivar.setdefault("breeder", None)
    return cultivar

  def create_report(self, record: Dict[str, Any]) -> Dict[str, Any]:
    report = dict(record)
    report["id"] = record.get("id") or new_id()
    report["created_at"] = record.get("created_at") or utc_now_iso()
    report["status"] = record.get("status") or STATUS_PENDING
    report["images"] = list(record.get("images") or [])
    for column in ("care", "likes", "comments"):
      report[column] = record.get(column) or 0
    self._table("reports").put_item(Item=_to_dynamo_compatible(report))
    return report

  def get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
    response = self._table("reports").get_item(Key={"id": report_id})
    item = response.get("Item")
    return _from_dynamo(item) if item else None

  def list_reports(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
    if status:
      items = self._scan("reports", FilterExpression=Attr("status").eq(status))
    else:
      items = self._scan("reports")
    items.sort(key=lambda item: item.get("created_at") or "", reverse=True)
    return items

  def update_report_status(self, report_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    values = {key: changes[key] for key in _REPORT_UPDATABLE if key in changes}
    if not values:
      return self.get_report(report_id)
    return self._update("reports", report_id, values)

  def delete_reports(self, report_ids: Iterable[str]) -> int:
    table = self._table("reports")
    deleted = 0
    for report_id in dict.fromkeys(report_ids):
      response = table.delete_item(Key={"id": report_id}, ReturnValues="ALL_OLD")
      if response.get("Attributes"):
        deleted += 1
    return deleted

  def search_cultivars(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    needle = query.lower()
    matches = [
      cultivar
      for cultivar in self._scan("cultivars")
      if needle in (cultivar.get("name") or "").lower()
      or any(needle in str(alias).lower() for alias in cultivar.get("aka") or [])
    ]
    matches.sort(key=lambda item: (-(item.get("report_count") or 0), item.get("name") or ""))
    for cultivar in matches:
      cultivar.setdefault("aka", [])
      cultivar.setdefault("breeder", None)
    return matches[:limit]

  def search_providers(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    needle = query.lower()
    matches = [
      provider
      for provider in self._scan("providers")
      if needle in (provider.get("name") or "").lower()
    ]
    matches.sort(key=lambda item: (-(item.get("avg_score") or 0), item.get("name") or ""))
    return matches[:limit]

  def search_reports(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    needle = query.lower()
    cultivars = {item["id"]: item for item in self._scan("cultivars")}
    providers = {item["id"]: item for item in self._scan("providers")}
    matches = []
    for report in self._scan("reports", FilterExpression=Attr("status").eq(STATUS_PUBLISHED)):
      cultivar = cultivars.get(report.get("cultivar_id"), {})
      provider = providers.get(report.get("provider_id"), {})
      report["cultivar_name"] = cultivar.get("name")
      report["cultivar_slug"] = cultivar.get("slug")
      report["provider_name"] = provider.get("name")
      report["provider_slug"] = provider.get("slug")
      haystacks = (report.get("title"), report["cultivar_name"], report["provider_name"])
      if any(needle in (value or "").lower() for value in haystacks):
        matches.append(report)
    matches.sort(key=lambda item: item.get("published_at") or item.get("created_at") or "", reverse=True)
    return matches[:limit]

  def _refresh_counter(self, column: str, source: str, report_id: str) -> int:
    total = len(self._scan(source, FilterExpression=Attr("report_id").eq(report_id), ProjectionExpression="id"))
    self._update("reports", report_id, {column: total})
    return total

  def list_comments(self, report_id: str) -> List[Dict[str, Any]]:
    comments = self._scan("comments", FilterExpression=Attr("report_id").eq(report_id))
    comments.sort(key=lambda item: item.get("created_at") or "")
    for comment in comments:
      comment.setdefault("user_id", None)
    return comments

  def add_comment(self, report_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
    comment = {
      "id": record.get("id") or new_id(),
      "report_id": report_id,
      "user_id": record.get("user_id"),
      "author_name": record["author_name"],
      "body": record["body"],
      "created_at": record.get("created_at") or utc_now_iso(),
    }
    self._table("comments").put_item(Item=_to_dynamo_compatible(comment))
    self._refresh_counter("comments", "comments", report_id)
    return comment

  def delete_comment(self, report_id: str, comment_id: str) -> bool:
    table = self._table("comments")
    item = table.get_item(Key={"id": comment_id}).get("Item")
    if not item or item.get("report_id") != report_id:
      return False
    table.delete_item(Key={"id": comment_id})
    self._refresh_counter("comments", "comments", report_id)
    return True

  @staticmethod
  def _liker_condition(user_id: Optional[str], client_id: Optional[str]) -> Any:
    conditions = []
    if user_id:
      conditions.append(Attr("user_id").eq(user_id))
    if client_id:
      conditions.append(Attr("client_id").eq(client_id))
    if not conditions:
      raise ValueError("A user id or client id is required to like a report.")
    condition = conditions[0]
    for extra in conditions[1:]:
      condition = condition | extra
    return condition

  def toggle_like(
    self,
    report_id: str,
    *,
    user_id: Optional[str] = None,
    client_id: Optional[str] = None,
  ) -> Tuple[bool, int]:
    condition = Attr("report_id").eq(report_id) & self._liker_condition(user_id, client_id)
    existing = self._scan("likes", FilterExpression=condition)
    table = self._table("likes")
    if existing:
      table.delete_item(Key={"id": existing[0]["id"]})
    else:
      table.put_item(Item=_to_dynamo_compatible({
        "id": new_id(),
        "report_id": report_id,
        "user_id": user_id,
        "client_id": client_id,
        "created_at": utc_now_iso(),
      }))
    total = self._refresh_counter("likes", "likes", report_id)
    return not existing, total

  def liked_report_ids(
    self,
    report_ids: Iterable[str],
    *,
    user_id: Optional[str] = None,
    client_id: Optional[str] = None,
  ) -> Set[str]:
    wanted = set(report_ids)
    if not wanted or not (user_id or client_id):
      return set()
    likes = self._scan("likes", FilterExpression=self._liker_condition(user_id, client_id))
    return {like["report_id"] for like in likes if like.get("report_id") in wanted}

  def count_users(self) -> int:
    table = self._table("users")
    kwargs: Dict[str, Any] = {"Select": "COUNT"}
    total = 0
    while True:
      response = table.scan(**kwargs)
      total += int(response.get("Count", 0))
      last_key = response.get("LastEvaluatedKey")
      if not last_key:
        return total
      kwargs["ExclusiveStartKey"] = last_key

  def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
    response = self._table("users").get_item(Key={"email": email.lower()})
    item = response.get("Item")
    if not item:
      return None
    parsed = _from_dynamo(item)
    parsed["email"] = parsed.get("email", email.lower())
    return parsed

  def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
    return self._find_one("users", "username", username)

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
    try:
      self._table("users").put_item(
        Item=_to_dynamo_compatible(user),
        ConditionExpression="attribute_not_exists(email)",
      )
    except ClientError as exc:
      if _is_conditional_failure(exc):
        return None
      raise
    return user

  def list_users(self) -> List[Dict[str, Any]]:
    return sorted(self._scan("users"), key=lambda item: item.get("created_at") or "")

  def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    return self._find_one("users", "id", user_id)

  def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    user = self.get_user(user_id)
    if user is None:
      return None
    values = {key: changes[key] for key in USER_UPDATABLE if key in changes}
    if not values:
      return user
    return self._update("users", user["email"], values, key_attribute="email")


__all__ = ["DynamoStore", "TABLE_KEYS"]
