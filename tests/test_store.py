"""Tests for the SQLite and unavailable stores."""

import pytest

from phenohub.store import (
  STATUS_PENDING,
  STATUS_PUBLISHED,
  SqliteStore,
  StoreUnavailableError,
  UnavailableStore,
)


def test_init_is_repeatable(tmp_path):
  store = SqliteStore(tmp_path / "nested" / "db.sqlite")
  store.init()
  store.init()
  assert store.list_provider_ids() == []


def test_catalogue_round_trip(store, catalogue):
  cultivar = store.get_cultivar_by_slug("papaya-punch")
  assert cultivar["aka"] == ["Papaya"]
  assert cultivar["breeder"] == "Oni Seeds"
  assert [provider["name"] for provider in store.list_providers()] == ["Clone Corner", "Green Cuts"]
  assert store.get_provider_by_slug("missing") is None
  assert set(store.list_cultivar_ids()) == {catalogue["cultivar"]["id"], catalogue["other_cultivar"]["id"]}


def test_aggregate_published_filters_by_entity_and_status(store, catalogue, make_report):
  make_report(overall=4, shipping=2, vitality=3)
  make_report(overall=2, shipping=4, vitality=5)
  make_report(overall=1, status=STATUS_PENDING)
  make_report(overall=5, provider="other_provider")

  aggregate = store.aggregate_published(provider_id=catalogue["provider"]["id"])
  assert aggregate.count == 2
  assert aggregate.avg_overall == 3.0
  assert aggregate.avg_shipping == 3.0
  assert aggregate.avg_vitality == 4.0

  empty = store.aggregate_published(cultivar_id=catalogue["other_cultivar"]["id"])
  assert empty.count == 0
  assert empty.avg_overall is None


def test_aggregate_published_needs_exactly_one_filter(store):
  with pytest.raises(ValueError):
    store.aggregate_published()
  with pytest.raises(ValueError):
    store.aggregate_published(provider_id="a", cultivar_id="b")


def test_update_metrics_for_missing_entity_raises(store):
  with pytest.raises(LookupError):
    store.update_provider_metrics(
      "missing",
      {"avg_score": 1, "shipping_score": 1, "vitality_score": 1, "report_count": 1},
    )
  with pytest.raises(LookupError):
    store.update_cultivar_metrics("missing", {"avg_rating": 1, "report_count": 1})


def test_reports_round_trip_and_status_updates(store, make_report):
  report = make_report(overall=4, status=STATUS_PENDING, images=["https://tmpfiles.org/1/a.jpg"])
  assert report["images"] == ["https://tmpfiles.org/1/a.jpg"]
  assert report["status"] == STATUS_PENDING

  updated = store.update_report_status(report["id"], {
    "status": STATUS_PUBLISHED,
    "published_at": "2026-01-01T00:00:00+00:00",
    "title": "ignored",
  })
  assert updated["status"] == STATUS_PUBLISHED
  assert updated["title"] == "Grow report"
  assert [r["id"] for r in store.list_reports(status=STATUS_PUBLISHED)] == [report["id"]]
  assert store.list_reports(status=STATUS_PENDING) == []
  assert store.update_report_status("missing", {"status": STATUS_PUBLISHED}) is None


def test_delete_reports_counts_removed_rows(store, make_report):
  first = make_report(overall=3)
  second = make_report(overall=4)

  assert store.delete_reports([first["id"], first["id"], "missing"]) == 1
  assert store.delete_reports([]) == 0
  assert store.get_report(first["id"]) is None
  assert store.get_report(second["id"]) is not None


def test_users_are_unique_by_email(store):
  created = store.create_user({"email": "A@Example.com", "password_hash": "x", "username": "a"})
  assert created["email"] == "a@example.com"
  assert created["role"] == "USER"
  assert store.create_user({"email": "a@example.com", "password_hash": "y"}) is None
  assert store.get_user_by_email("A@EXAMPLE.COM")["id"] == created["id"]
  assert store.get_user_by_username("a")["id"] == created["id"]
  assert store.count_users() == 1


def test_shutdown_makes_store_unusable(tmp_path):
  store = SqliteStore(tmp_path / "db.sqlite")
  store.init()
  store.shutdown()
  with pytest.raises(StoreUnavailableError):
    store.list_provider_ids()


def test_unavailable_store_raises_on_every_operation():
  store = UnavailableStore("database offline")
  store.init()
  assert store.available is False
  with pytest.raises(StoreUnavailableError, match="database offline"):
    store.list_provider_ids()
  with pytest.raises(StoreUnavailableError):
    store.aggregate_published(provider_id="p1")
  with pytest.raises(StoreUnavailableError):
    store.create_user({"email": "a@b.c", "password_hash": "x"})
  store.shutdown()


def test_search_matches_names_and_aliases(store, catalogue):
  assert [c["slug"] for c in store.search_cultivars("PAPAYA")] == ["papaya-punch"]
  assert [c["slug"] for c in store.search_cultivars("papa")] == ["papaya-punch"]
  assert store.search_cultivars("100%") == []
  assert [p["slug"] for p in store.search_providers("cuts")] == ["green-cuts"]


def test_search_reports_only_returns_published(store, make_report):
  make_report(overall=4, title="First flower", published_at="2026-01-01T00:00:00+00:00")
  make_report(overall=4, title="Second flower", published_at="2026-02-01T00:00:00+00:00")
  make_report(overall=4, title="Pending flower", status=STATUS_PENDING)

  results = store.search_reports("flower")
  assert [report["title"] for report in results] == ["Second flower", "First flower"]
  assert results[0]["provider_slug"] == "green-cuts"

  by_provider = store.search_reports("green cuts")
  assert len(by_provider) == 2


def test_search_limit(store, make_report):
  for index in range(7):
    make_report(overall=3, title=f"Run {index}")
  assert len(store.search_reports("run")) == 5
  assert len(store.search_reports("run", limit=2)) == 2


def test_comments_update_counter_and_cascade(store, make_report):
  report = make_report(overall=4)
  first = store.add_comment(report["id"], {"author_name": "kim", "body": "Great", "user_id": "u1"})
  store.add_comment(report["id"], {"author_name": "lee", "body": "Agreed"})

  assert [c["author_name"] for c in store.list_comments(report["id"])] == ["kim", "lee"]
  assert store.get_report(report["id"])["comments"] == 2

  assert store.delete_comment("other-report", first["id"]) is False
  assert store.delete_comment(report["id"], first["id"]) is True
  assert store.get_report(report["id"])["comments"] == 1

  store.delete_reports([report["id"]])
  assert store.list_comments(report["id"]) == []


def test_likes_toggle_per_user_or_client(store, make_report):
  report = make_report(overall=4)

  assert store.toggle_like(report["id"], client_id="browser-1") == (True, 1)
  assert store.toggle_like(report["id"], user_id="u1", client_id="browser-2") == (True, 2)
  # Same user from another browser removes their like.
  assert store.toggle_like(report["id"], user_id="u1", client_id="browser-3") == (False, 1)
  assert store.get_report(report["id"])["likes"] == 1

  assert store.liked_report_ids([report["id"]], client_id="browser-1") == {report["id"]}
  assert store.liked_report_ids([report["id"]], user_id="u1") == set()
  assert store.liked_report_ids([report["id"]]) == set()

  with pytest.raises(ValueError):
    store.toggle_like(report["id"])


def test_user_listing_and_updates(store):
  first = store.create_user({"email": "a@example.com", "password_hash": "x", "role": "OWNER"})
  second = store.create_user({"email": "b@example.com", "password_hash": "x"})

  assert [user["id"] for user in store.list_users()] == [first["id"], second["id"]]
  assert store.get_user(second["id"])["email"] == "b@example.com"
  assert store.get_user("missing") is None

  updated = store.update_user(second["id"], {"role": "MODERATOR", "status": "SUSPENDED", "email": "x@y.z"})
  assert updated["role"] == "MODERATOR"
  assert updated["status"] == "SUSPENDED"
  assert updated["email"] == "b@example.com"
  assert store.update_user("missing", {"role": "USER"}) is None


@pytest.mark.parametrize("operation", ["search_reports", "list_comments", "list_users", "get_user"])
def test_unavailable_store_covers_community_operations(operation):
  with pytest.raises(StoreUnavailableError):
    getattr(UnavailableStore("offline"), operation)("x")
