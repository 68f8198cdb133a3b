"""Batch entry point: validation, quota admission, bookkeeping and result assembly."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import h3

from backend.utils import utc_now_iso
from yelp.quota_manager import BASE_OVERLAP_MULTIPLIER, TEST_MODE_CALLS_PER_HEXAGON, TEST_MODE_MAX_HEXAGONS

from .processor import HexagonProcessor
from .runs import RunRegistry

LOGGER = logging.getLogger(__name__)


class HexagonInputError(ValueError):
    pass


class QuotaExceededError(Exception):
    def __init__(
        self,
        message: str,
        estimated_calls: int,
        recommendations: Optional[List[str]] = None,
        quota_status: Optional[Dict[str, Any]] = None,
        risk_level: Optional[str] = None,
    ):
        super().__init__(message)
        self.estimated_calls = estimated_calls
        self.recommendations = recommendations or []
        self.quota_status = quota_status or {}
        self.risk_level = risk_level

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": str(self),
            "estimatedCalls": self.estimated_calls,
            "riskLevel": self.risk_level,
            "recommendations": self.recommendations,
            "quotaStatus": self.quota_status,
        }


@dataclass
class ImportResult:
    success: bool
    results: List[Dict[str, Any]]
    new_businesses: List[Dict[str, Any]]
    processing_stats: Dict[str, Any]
    quota_status: Dict[str, Any]
    subdivision_queue_status: Dict[str, int]
    results_by_resolution: Dict[int, int]
    merged_results: List[Dict[str, Any]]
    summary: Dict[str, Any]
    test_mode: bool
    total_requested: int
    total_processed: int
    run_id: str
    import_log_id: Optional[str] = None
    city_id: Optional[str] = None
    cache_stats: Dict[str, int] = field(default_factory=dict)
    processed_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "results": self.results,
            "newBusinesses": self.new_businesses,
            "processingStats": self.processing_stats,
            "quotaStatus": self.quota_status,
            "subdivisionQueueStatus": self.subdivision_queue_status,
            "resultsByResolution": {str(k): v for k, v in self.results_by_resolution.items()},
            "mergedResults": self.merged_results,
            "summary": self.summary,
            "testMode": self.test_mode,
            "totalRequested": self.total_requested,
            "totalProcessed": self.total_processed,
            "runId": self.run_id,
            "importLogId": self.import_log_id,
            "cityId": self.city_id,
            "cacheStats": self.cache_stats,
            "processedAt": self.processed_at,
        }


def parse_hexagon_input(hexagons: Any) -> Tuple[List[str], List[int]]:
    """Normalize a batch to (h3 ids, map indices), dropping repeats.

    Items are H3 id strings or dicts with ``h3Id`` and an optional
    ``originalIndex``/``mapIndex``.
    """
    if not isinstance(hexagons, (list, tuple)) or not hexagons:
        raise HexagonInputError("No hexagons provided")

    h3_ids: List[str] = []
    indices: List[int] = []
    seen = set()
    for position, item in enumerate(hexagons):
        if isinstance(item, str):
            h3_id, index = item, position
        elif isinstance(item, dict):
            h3_id = item.get("h3Id") or item.get("h3_id")
            index = item.get("originalIndex", item.get("mapIndex"))
            if index is None:
                index = position
        else:
            raise HexagonInputError(f"Unsupported hexagon entry at position {position}")

        if not isinstance(h3_id, str) or not h3.is_valid_cell(h3_id):
            raise HexagonInputError(f"Invalid H3 cell id at position {position}: {h3_id!r}")
        if h3_id in seen:
            continue
        seen.add(h3_id)
        h3_ids.append(h3_id)
        indices.append(int(index))
    return h3_ids, indices


def parse_city_input(city_name: Optional[str]) -> Optional[Tuple[str, str]]:
    """``"Austin, TX"`` -> ``("Austin", "TX")``; anything else -> ``None``."""
    if not city_name or "," not in city_name:
        return None
    name, _, state = city_name.rpartition(",")
    name, state = name.strip(), state.strip().upper()
    if not name or not state:
        return None
    return name, state


class ImportPipeline:
    def __init__(self, processor: HexagonProcessor, quota_manager, store=None, runs: Optional[RunRegistry] = None):
        self.processor = processor
        self.quota_manager = quota_manager
        self.store = store
        self.runs = runs or RunRegistry()

    async def process_hexagons(
        self,
        hexagons: Any,
        test_mode: bool = False,
        city_name: Optional[str] = None,
    ) -> ImportResult:
        h3_ids, indices = parse_hexagon_input(hexagons)
        total_requested = len(h3_ids)
        LOGGER.info("Processing %s hexagons (test_mode=%s, city=%s)", total_requested, test_mode, city_name)

        city_id = await self._resolve_city(city_name)

        self._check_admission(len(h3_ids), test_mode)
        if test_mode and len(h3_ids) > TEST_MODE_MAX_HEXAGONS:
            LOGGER.info("Test mode: limiting batch from %s to %s hexagons", len(h3_ids), TEST_MODE_MAX_HEXAGONS)
            h3_ids = h3_ids[:TEST_MODE_MAX_HEXAGONS]
            indices = indices[:TEST_MODE_MAX_HEXAGONS]

        estimated_calls = self.quota_manager.estimate_quota_for_city(
            len(h3_ids), self.processor.base_resolution, BASE_OVERLAP_MULTIPLIER
        ).estimated_calls
        import_log_id = await self._create_import_log(city_id, len(h3_ids), estimated_calls, test_mode)
        run = self.runs.create(len(h3_ids), estimated_calls, import_log_id=import_log_id, city_id=city_id)

        try:
            unified = await self.processor.process_unified_pipeline(h3_ids, run=run)
        except Exception:
            LOGGER.exception("Hexagon batch %s failed", run.run_id)
            self.runs.finish(run.run_id)
            await self._update_import_log(import_log_id, status="failed")
            raise

        new_businesses = self._collect_businesses(unified.results)
        await self._update_import_log(
            import_log_id,
            status="complete",
            processed_tiles=run.processed_hexagons,
            actual_api_calls=run.actual_api_calls,
            restaurants_added=len(new_businesses),
            tiles_skipped=run.tiles_skipped,
            tiles_fetched=run.tiles_fetched,
            restaurants_fetched=run.restaurants_fetched,
        )
        self.runs.finish(run.run_id)

        map_index = dict(zip(h3_ids, indices))
        results = []
        for record in unified.results:
            entry = record.to_dict()
            entry["mapIndex"] = map_index.get(record.h3_id)
            results.append(entry)

        by_resolution = self.processor.get_results_by_resolution()
        LOGGER.info(
            "Batch %s done: %s results, %s new businesses, %s api calls, %s cached",
            run.run_id,
            len(results),
            len(new_businesses),
            run.actual_api_calls,
            run.tiles_skipped,
        )
        return ImportResult(
            success=True,
            results=results,
            new_businesses=new_businesses,
            processing_stats=self.processor.get_processing_stats(),
            quota_status=self.quota_manager.get_quota_status(),
            subdivision_queue_status=self.processor.get_subdivision_queue_status(),
            results_by_resolution={res: len(records) for res, records in by_resolution.items()},
            merged_results=self.processor.get_merged_results(),
            summary=unified.summary,
            test_mode=test_mode,
            total_requested=total_requested,
            total_processed=run.processed_hexagons,
            run_id=run.run_id,
            import_log_id=import_log_id,
            city_id=city_id,
            cache_stats={
                "tilesSkipped": run.tiles_skipped,
                "tilesFetched": run.tiles_fetched,
                "restaurantsFetched": run.restaurants_fetched,
            },
        )

    def _check_admission(self, hexagon_count: int, test_mode: bool) -> None:
        estimate = self.quota_manager.estimate_quota_for_city(
            hexagon_count, self.processor.base_resolution, BASE_OVERLAP_MULTIPLIER
        )
        if test_mode:
            if self.quota_manager.can_run_test_batch(hexagon_count):
                return
            needed = min(hexagon_count, TEST_MODE_MAX_HEXAGONS) * TEST_MODE_CALLS_PER_HEXAGON
            raise QuotaExceededError(
                "Insufficient quota for test batch",
                estimated_calls=needed,
                recommendations=[f"Test mode needs {needed} calls, {self.quota_manager.daily_remaining} remaining"],
                quota_status=self.quota_manager.get_quota_status(),
                risk_level=estimate.risk_level,
            )
        if not estimate.can_process_request:
            LOGGER.warning("Rejecting batch of %s hexagons: ~%s calls needed", hexagon_count, estimate.estimated_calls)
            raise QuotaExceededError(
                "Insufficient quota for request",
                estimated_calls=estimate.estimated_calls,
                recommendations=estimate.recommendations,
                quota_status=self.quota_manager.get_quota_status(),
                risk_level=estimate.risk_level,
            )

    def _collect_businesses(self, records) -> List[Dict[str, Any]]:
        unique: Dict[str, Dict[str, Any]] = {}
        for record in records:
            for business in self.processor.get_businesses(record.h3_id):
                unique.setdefault(business["id"], business)
        return list(unique.values())

    async def _resolve_city(self, city_name: Optional[str]) -> Optional[str]:
        if self.store is None or not city_name:
            return None
        parsed = parse_city_input(city_name)
        if parsed is None:
            LOGGER.warning("Could not parse city %r (expected 'City, ST')", city_name)
            return None
        name, state = parsed
        city = await asyncio.to_thread(self.store.get_city_by_name, name, state)
        if city is not None:
            return city["id"]
        city_id = await asyncio.to_thread(self.store.create_city, name, state)
        if city_id is None:
            LOGGER.warning("Could not create city %s, %s - continuing without caching", name, state)
        else:
            LOGGER.info("Created city %s, %s (%s)", name, state, city_id)
        return city_id

    async def _create_import_log(self, city_id, total_tiles, estimated_calls, test_mode) -> Optional[str]:
        if self.store is None:
            return None
        log_id = await asyncio.to_thread(self.store.create_import_log, city_id, total_tiles, estimated_calls, test_mode)
        if log_id is None:
            LOGGER.warning("Failed to create import log (non-fatal)")
        return log_id

    async def _update_import_log(self, log_id: Optional[str], **updates: Any) -> None:
        if self.store is None or log_id is None:
            return
        if not await asyncio.to_thread(self.store.update_import_log, log_id, **updates):
            LOGGER.warning("Failed to update import log %s (non-fatal)", log_id)
