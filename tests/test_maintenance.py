"""Tests for the phenohub-maintenance command."""

from unittest.mock import MagicMock

import pytest

from phenohub.maintenance import build_parser, delete_reports, main, parse_report_ids
from phenohub.store import SqliteStore, StoreUnavailableError


def test_parse_report_ids_merges_and_deduplicates():
  assert parse_report_ids(["a", "b"], ["b,c", " d , "]) == ["a", "b", "c", "d"]


@pytest.mark.parametrize("single, lists", [(None, None), ([], []), ([" "], None)])
def test_parse_report_ids_rejects_empty_selection(single, lists):
  with pytest.raises(ValueError):
    parse_report_ids(single, lists)


def test_parser_requires_a_command():
  with pytest.raises(SystemExit):
    build_parser().parse_args([])


def test_delete_skips_recalculation_when_nothing_was_deleted():
  store = MagicMock()
  store.delete_reports.return_value = 0

  assert delete_reports(store, ["missing"]) == 0
  store.list_provider_ids.assert_not_called()


def test_delete_recalculates_after_removal(store, make_report):
  report = make_report(overall=5, shipping=5, vitality=5)
  make_report(overall=3, shipping=3, vitality=3)
  store.update_provider_metrics(
    report["provider_id"],
    {"avg_score": 4.0, "shipping_score": 4.0, "vitality_score": 4.0, "report_count": 2},
  )

  assert delete_reports(store, [report["id"]]) == 1

  provider = store.get_provider_by_slug("green-cuts")
  assert provider["avg_score"] == 3.0
  assert provider["report_count"] == 1


def test_main_recalc_metrics(store, make_report):
  make_report(overall=4, shipping=2, vitality=1)
  cli_store = SqliteStore(store.db_path)

  assert main(["recalc-metrics"], store=cli_store) == 0
  assert store.get_provider_by_slug("green-cuts")["avg_score"] == 4.0


def test_main_delete_reports(store, make_report):
  report = make_report(overall=4)
  cli_store = SqliteStore(store.db_path)

  assert main(["delete-reports", "--id", report["id"]], store=cli_store) == 0
  assert store.get_report(report["id"]) is None
  assert store.get_provider_by_slug("green-cuts")["report_count"] == 0


def test_main_delete_without_ids_fails():
  assert main(["delete-reports"], store=MagicMock()) == 1


def test_main_reports_storage_failure():
  broken = MagicMock()
  broken.list_provider_ids.side_effect = StoreUnavailableError("offline")
  assert main(["recalc-metrics"], store=broken) == 1
  broken.shutdown.assert_called_once()
