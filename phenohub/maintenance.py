"""
Maintenance commands for the PhenoHub database.

Examples:
  # Recompute provider and cultivar metrics
  phenohub-maintenance recalc-metrics

  # Delete reports and refresh the metrics they contributed to
  phenohub-maintenance delete-reports --id 3f2a... --ids 9b1c...,77de...
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, List, Optional, Sequence

from phenohub.config import METRICS_MAX_WORKERS, build_store
from phenohub.metrics import MetricsRecalculationError, recalc_all
from phenohub.store import Store, StoreUnavailableError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str = "INFO") -> None:
  logging.basicConfig(
    level=getattr(logging, log_level.upper()),
    format=LOG_FORMAT,
    handlers=[logging.StreamHandler(sys.stdout)],
  )


def parse_report_ids(single_ids: Optional[Iterable[str]], id_lists: Optional[Iterable[str]]) -> List[str]:
  """Merge ``--id`` and ``--ids`` values into an ordered, de-duplicated list."""
  collected: List[str] = []
  for value in single_ids or []:
    collected.append(value.strip())
  for value in id_lists or []:
    collected.extend(item.strip() for item in value.split(",") if item.strip())

  invalid = [value for value in collected if not value]
  if invalid:
    raise ValueError("Report ids must not be empty.")

  unique = list(dict.fromkeys(collected))
  if not unique:
    raise ValueError("Provide at least one report id (--id <id> or --ids <id>,<id>).")
  return unique


def delete_reports(store: Store, report_ids: Sequence[str], *, max_workers: int = 1) -> int:
  """Delete reports and recalculate metrics when anything was removed."""
  logger.info("Deleting reports: %s", ", ".join(report_ids))
  deleted = store.delete_reports(report_ids)
  logger.info("Removed %d report(s)", deleted)

  if deleted > 0:
    logger.info("Refreshing provider and cultivar metrics")
    recalc_all(store, max_workers=max_workers)
  else:
    logger.info("No matching reports found, metrics left untouched")
  return deleted


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
    prog="phenohub-maintenance",
    description="PhenoHub maintenance commands",
    formatter_class=argparse.RawDescriptionHelpFormatter,
    epilog=__doc__,
  )
  parser.add_argument(
    "--log-level",
    default="INFO",
    choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    help="Logging level (default: INFO)",
  )
  parser.add_argument(
    "--workers",
    type=int,
    default=None,
    help="Parallel metric updates (default: METRICS_MAX_WORKERS)",
  )
  subcommands = parser.add_subparsers(dest="command", required=True)

  subcommands.add_parser("recalc-metrics", help="Recalculate provider and cultivar metrics")

  delete_parser = subcommands.add_parser("delete-reports", help="Delete reports by id")
  delete_parser.add_argument("--id", "-i", dest="ids", action="append", help="Report id (repeatable)")
  delete_parser.add_argument("--ids", dest="id_lists", action="append", help="Comma separated report ids")
  return parser


def main(argv: Optional[Sequence[str]] = None, store: Optional[Store] = None) -> int:
  """CLI entry point; returns the process exit code."""
  parser = build_parser()
  args = parser.parse_args(argv)
  setup_logging(args.log_level)

  if store is None:
    store = build_store()
    default_workers = METRICS_MAX_WORKERS
  else:
    store.init()
    default_workers = 1
  max_workers = args.workers if args.workers is not None else default_workers

  try:
    if args.command == "recalc-metrics":
      recalc_all(store, max_workers=max_workers)
      logger.info("Metrics recalculated")
    elif args.command == "delete-reports":
      report_ids = parse_report_ids(args.ids, args.id_lists)
      delete_reports(store, report_ids, max_workers=max_workers)
    return 0
  except ValueError as exc:
    logger.error("%s", exc)
    return 1
  except (MetricsRecalculationError, StoreUnavailableError) as exc:
    logger.error("Maintenance command failed: %s", exc, exc_info=True)
    return 1
  finally:
    store.shutdown()


if __name__ == "__main__":
  sys.exit(main())
