"""
Recalculation of the derived provider and cultivar metrics.

Providers carry ``avg_score``, ``shipping_score``, ``vitality_score`` and
``report_count``; cultivars carry ``avg_rating`` and ``report_count``. All of
them are re-derived from the published reports on every run, so a run is
idempotent and a partially completed run can simply be repeated.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from phenohub.store import ReportAggregate, Store

logger = logging.getLogger(__name__)


class ProviderMetrics(NamedTuple):
  avg_score: float
  shipping_score: float
  vitality_score: float
  report_count: int


class CultivarMetrics(NamedTuple):
  avg_rating: float
  report_count: int


class MetricsRecalculationError(RuntimeError):
  """Raised when a provider or cultivar could not be recalculated."""

  def __init__(self, entity: str, entity_id: str, cause: BaseException) -> None:
    super().__init__(f"Failed to recalculate {entity} {entity_id}: {cause}")
    self.entity = entity
    self.entity_id = entity_id


def to_one_decimal(value: Optional[float]) -> float:
  """Round half away from zero to one fractional digit; non-finite becomes 0."""
  if value is None:
    return 0.0
  numeric = float(value)
  if not math.isfinite(numeric):
    return 0.0
  scaled = math.floor(abs(numeric) * 10 + 0.5)
  return math.copysign(scaled / 10, numeric) if scaled else 0.0


def provider_metrics_from(aggregate: ReportAggregate) -> ProviderMetrics:
  return ProviderMetrics(
    avg_score=to_one_decimal(aggregate.avg_overall or 0),
    shipping_score=to_one_decimal(aggregate.avg_shipping or 0),
    vitality_score=to_one_decimal(aggregate.avg_vitality or 0),
    report_count=aggregate.count or 0,
  )


def cultivar_metrics_from(aggregate: ReportAggregate) -> CultivarMetrics:
  return CultivarMetrics(
    avg_rating=to_one_decimal(aggregate.avg_overall or 0),
    report_count=aggregate.count or 0,
  )


def _recalc_provider(store: Store, provider_id: str) -> ProviderMetrics:
  metrics = provider_metrics_from(store.aggregate_published(provider_id=provider_id))
  store.update_provider_metrics(provider_id, metrics._asdict())
  return metrics


def _recalc_cultivar(store: Store, cultivar_id: str) -> CultivarMetrics:
  metrics = cultivar_metrics_from(store.aggregate_published(cultivar_id=cultivar_id))
  store.update_cultivar_metrics(cultivar_id, metrics._asdict())
  return metrics


def _run_pass(
  entity: str,
  entity_ids: List[str],
  update: Callable[[str], Any],
  max_workers: int,
) -> Dict[str, Any]:
  """Apply ``update`` to every id; the first failure aborts the rest of the pass."""
  results: Dict[str, Any] = {}

  if max_workers <= 1 or len(entity_ids) <= 1:
    for entity_id in entity_ids:
      try:
        results[entity_id] = update(entity_id)
      except Exception as exc:
        raise MetricsRecalculationError(entity, entity_id, exc) from exc
    return results

  first_failure: Optional[MetricsRecalculationError] = None
  with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"recalc-{entity}") as pool:
    futures = {pool.submit(update, entity_id): entity_id for entity_id in entity_ids}
    for future in as_completed(futures):
      entity_id = futures[future]
      try:
        results[entity_id] = future.result()
      except Exception as exc:
        logger.error("Recalculating %s %s failed: %s", entity, entity_id, exc)
        first_failure = MetricsRecalculationError(entity, entity_id, exc)
        first_failure.__cause__ = exc
        # Updates already running finish, queued ones never start.
        pool.shutdown(wait=True, cancel_futures=True)
        break

  if first_failure is not None:
    raise first_failure
  return results


def recalc_provider_metrics(store: Store, *, max_workers: int = 1) -> Dict[str, ProviderMetrics]:
  """Recompute the derived fields of every provider from published reports."""
  provider_ids = store.list_provider_ids()
  results = _run_pass(
    "provider",
    provider_ids,
    lambda provider_id: _recalc_provider(store, provider_id),
    max_workers,
  )
  logger.info("Recalculated metrics for %d providers", len(results))
  return results


def recalc_cultivar_metrics(store: Store, *, max_workers: int = 1) -> Dict[str, CultivarMetrics]:
  """Recompute the derived fields of every cultivar from published reports."""
  cultivar_ids = store.list_cultivar_ids()
  results = _run_pass(
    "cultivar",
    cultivar_ids,
    lambda cultivar_id: _recalc_cultivar(store, cultivar_id),
    max_workers,
  )
  logger.info("Recalculated metrics for %d cultivars", len(results))
  return results


def recalc_all(store: Store, *, max_workers: int = 1) -> None:
  """Recalculate providers, then cultivars."""
  recalc_provider_metrics(store, max_workers=max_workers)
  recalc_cultivar_metrics(store, max_workers=max_workers)


__all__ = [
  "CultivarMetrics",
  "MetricsRecalculationError",
  "ProviderMetrics",
  "cultivar_metrics_from",
  "provider_metrics_from",
  "recalc_all",
  "recalc_cultivar_metrics",
  "recalc_provider_metrics",
  "to_one_decimal",
]
