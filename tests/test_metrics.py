"""Tests for phenohub.metrics against a real SQLite store."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from phenohub.metrics import (
  MetricsRecalculationError,
  recalc_all,
  recalc_cultivar_metrics,
  recalc_provider_metrics,
  to_one_decimal,
)
from phenohub.store import STATUS_PENDING, STATUS_REJECTED, ReportAggregate


def _provider(store, slug):
  return store.get_provider_by_slug(slug)


def _cultivar(store, slug):
  return store.get_cultivar_by_slug(slug)


@pytest.mark.parametrize(
  "value, expected",
  [
    (4.0, 4.0),
    (4.25, 4.3),
    (4.24, 4.2),
    (3.3333333, 3.3),
    (-1.25, -1.3),
    (None, 0.0),
    (float("nan"), 0.0),
    (float("inf"), 0.0),
  ],
)
def test_to_one_decimal(value, expected):
  assert to_one_decimal(value) == expected


def test_provider_averages_published_reports(store, make_report):
  make_report(overall=4, shipping=4, vitality=5)
  make_report(overall=5, shipping=4, vitality=5)
  make_report(overall=3, shipping=4, vitality=5)

  recalc_all(store)

  provider = _provider(store, "green-cuts")
  assert provider["avg_score"] == 4.0
  assert provider["shipping_score"] == 4.0
  assert provider["vitality_score"] == 5.0
  assert provider["report_count"] == 3


def test_provider_without_reports_gets_zeroes(store, make_report):
  make_report(overall=5)
  recalc_all(store)

  provider = _provider(store, "clone-corner")
  assert provider["avg_score"] == 0
  assert provider["shipping_score"] == 0
  assert provider["vitality_score"] == 0
  assert provider["report_count"] == 0


def test_only_published_reports_count(store, make_report):
  make_report(overall=5)
  make_report(overall=1, status=STATUS_PENDING)
  make_report(overall=1, status=STATUS_REJECTED)

  recalc_all(store)

  provider = _provider(store, "green-cuts")
  assert provider["avg_score"] == 5.0
  assert provider["report_count"] == 1
  cultivar = _cultivar(store, "papaya-punch")
  assert cultivar["avg_rating"] == 5.0
  assert cultivar["report_count"] == 1


def test_cultivar_metrics_use_overall_only(store, make_report):
  make_report(overall=4, shipping=1, cultivar="other_cultivar")
  make_report(overall=4.5, shipping=1, cultivar="other_cultivar", provider="other_provider")

  results = recalc_cultivar_metrics(store)

  cultivar = _cultivar(store, "wedding-cake")
  assert cultivar["avg_rating"] == 4.3
  assert cultivar["report_count"] == 2
  assert results[cultivar["id"]].avg_rating == 4.3


def test_recalculation_is_idempotent(store, make_report):
  make_report(overall=4.4, shipping=3.1, vitality=2.2)
  make_report(overall=3.9, shipping=4.8, vitality=4.1, provider="other_provider")

  recalc_all(store)
  first = (store.list_providers(), store.list_cultivars())
  recalc_all(store)
  second = (store.list_providers(), store.list_cultivars())

  assert first == second


def test_stale_values_are_cleared_after_deletion(store, make_report):
  report = make_report(overall=5, shipping=5, vitality=5)
  recalc_all(store)
  assert _provider(store, "green-cuts")["report_count"] == 1

  store.delete_reports([report["id"]])
  recalc_all(store)

  provider = _provider(store, "green-cuts")
  assert provider["avg_score"] == 0
  assert provider["report_count"] == 0
  assert _cultivar(store, "papaya-punch")["avg_rating"] == 0


def test_parallel_run_matches_sequential(store, make_report):
  make_report(overall=2, shipping=3, vitality=4)
  make_report(overall=4, shipping=5, vitality=1, provider="other_provider", cultivar="other_cultivar")

  recalc_all(store, max_workers=4)

  assert _provider(store, "green-cuts")["avg_score"] == 2.0
  assert _provider(store, "clone-corner")["shipping_score"] == 5.0
  assert _cultivar(store, "wedding-cake")["avg_rating"] == 4.0


def _fake_store(provider_ids):
  fake = MagicMock()
  fake.list_provider_ids.return_value = provider_ids
  fake.list_cultivar_ids.return_value = []
  fake.aggregate_published.return_value = ReportAggregate(2, 4.0, 3.0, 5.0)
  return fake


def test_write_failure_aborts_pass_with_single_error():
  fake = _fake_store(["p1", "p2", "p3"])
  fake.update_provider_metrics.side_effect = [None, OSError("disk full"), None]

  with pytest.raises(MetricsRecalculationError) as excinfo:
    recalc_provider_metrics(fake)

  assert excinfo.value.entity == "provider"
  assert excinfo.value.entity_id == "p2"
  assert isinstance(excinfo.value.__cause__, OSError)
  assert fake.update_provider_metrics.call_count == 2
  fake.list_cultivar_ids.assert_not_called()


def test_parallel_failure_is_raised_once():
  fake = _fake_store(["p1", "p2"])

  def _update(provider_id, metrics):
    if provider_id == "p1":
      raise OSError("timeout")

  fake.update_provider_metrics.side_effect = _update

  with pytest.raises(MetricsRecalculationError) as excinfo:
    recalc_provider_metrics(fake, max_workers=2)
  assert excinfo.value.entity_id == "p1"


def test_parallel_failure_stops_queued_updates():
  provider_ids = [f"p{index}" for index in range(20)]
  fake = _fake_store(provider_ids)
  written = []
  lock = threading.Lock()

  def _update(provider_id, metrics):
    if provider_id == "p0":
      raise OSError("disk full")
    time.sleep(0.05)
    with lock:
      written.append(provider_id)

  fake.update_provider_metrics.side_effect = _update

  with pytest.raises(MetricsRecalculationError) as excinfo:
    recalc_provider_metrics(fake, max_workers=2)

  assert excinfo.value.entity_id == "p0"
  assert len(written) < 10
  fake.list_cultivar_ids.assert_not_called()


def test_metrics_written_with_store_field_names():
  fake = _fake_store(["p1"])
  recalc_provider_metrics(fake)

  fake.aggregate_published.assert_called_once_with(provider_id="p1")
  fake.update_provider_metrics.assert_called_once_with(
    "p1",
    {"avg_score": 4.0, "shipping_score": 3.0, "vitality_score": 5.0, "report_count": 2},
  )
