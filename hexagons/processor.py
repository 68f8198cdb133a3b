"""Two-phase hexagon processing with adaptive subdivision.

Phase 1 searches every base-resolution cell in input order. Cells whose
result count exceeds the density threshold are split one resolution finer
and their children are queued. Phase 2 drains that queue under quota
admission control. All state lives in a ``ProcessorState`` owned by the
processor instance; cells are processed strictly one at a time.
"""
import asyncio
import functools
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import h3

from yelp.quota_manager import BASE_OVERLAP_MULTIPLIER, SUBDIVISION_OVERLAP_MULTIPLIER, QuotaManager

from .coverage import CoverageStats, generate_search_points, get_coverage_stats, validate_coverage
from .runs import ProcessingRun
from .splitter import (
    DENSE_THRESHOLD,
    HexagonSplitResult,
    detect_dense_hexagon,
    merge_sub_hexagon_results,
    split_hexagon,
)
from .status import (
    SUCCESS_STATUSES,
    TERMINAL_STATUSES,
    CellSearchOutcome,
    CellStatus,
    HexagonProcessingStatus,
)

LOGGER = logging.getLogger(__name__)

BASE_RESOLUTION = 7
MAX_SUBDIVISION_BATCH = 100
RETRY_BASE_DELAY_SEC = 1.0
FAILED_RETRY_BASE_DELAY_SEC = 2.0
PROGRESS_LOG_EVERY = 10


class CellSearchFailed(Exception):
    pass


@dataclass
class ProcessorState:
    records: Dict[str, HexagonProcessingStatus] = field(default_factory=dict)
    completed: Dict[str, HexagonProcessingStatus] = field(default_factory=dict)
    failed: Dict[str, HexagonProcessingStatus] = field(default_factory=dict)
    subdivision_queue: Dict[str, HexagonProcessingStatus] = field(default_factory=dict)
    parent_children: Dict[str, List[str]] = field(default_factory=dict)
    child_parent: Dict[str, str] = field(default_factory=dict)
    businesses: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    def clear(self) -> None:
        self.records.clear()
        self.completed.clear()
        self.failed.clear()
        self.subdivision_queue.clear()
        self.parent_children.clear()
        self.child_parent.clear()
        self.businesses.clear()


@dataclass
class SubdivisionAdmission:
    can_process: bool
    estimated_calls: int
    recommendations: List[str] = field(default_factory=list)


@dataclass
class ChildAggregate:
    total_children: int
    total_businesses: int
    completed_children: int
    failed_children: int
    split_children: int
    coverage_quality: str


@dataclass
class TwoPhaseResult:
    phase1_results: List[HexagonProcessingStatus]
    phase2_results: List[HexagonProcessingStatus]
    final_stats: Dict[str, Any]


@dataclass
class UnifiedResult:
    results: List[HexagonProcessingStatus]
    summary: Dict[str, Any]


def _cell_resolution(h3_id: str, default: int) -> int:
    if isinstance(h3_id, str) and h3.is_valid_cell(h3_id):
        return h3.get_resolution(h3_id)
    return default


def ratio_quality(successful: int, total: int) -> str:
    if successful == total:
        return "excellent"
    if successful > total * 0.8:
        return "good"
    if successful > total * 0.6:
        return "fair"
    return "poor"


class HexagonProcessor:
    """Owns per-cell status, the parent/child graph and the subdivision queue.

    ``search_client`` is anything with ``async search_cell(h3_id) ->
    CellSearchOutcome`` that raises on failure. ``store`` is an optional
    ``HexgridStore``; when present, fresh hextiles are served from cache
    without spending quota and every outcome is written back. Store
    failures never interrupt processing.
    """

    def __init__(
        self,
        search_client,
        quota_manager: QuotaManager,
        store=None,
        base_resolution: int = BASE_RESOLUTION,
        dense_threshold: int = DENSE_THRESHOLD,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        state: Optional[ProcessorState] = None,
    ):
        self.search_client = search_client
        self.quota_manager = quota_manager
        self.store = store
        self.base_resolution = base_resolution
        self.subdivision_resolution = base_resolution + 1
        self.dense_threshold = dense_threshold
        self._sleep = sleep
        self._rng = rng
        self._state = state if state is not None else ProcessorState()

    # --- per-cell processing ---

    async def process_hexagon_with_coverage(
        self,
        h3_id: str,
        resolution: Optional[int] = None,
        run: Optional[ProcessingRun] = None,
    ) -> HexagonProcessingStatus:
        """Search one cell and record the outcome. Never raises for per-cell failures."""
        record = self._state.records.get(h3_id)
        if record is not None and record.status in TERMINAL_STATUSES:
            LOGGER.debug("Hexagon %s already %s - skipping", h3_id, record.status.value)
            return record
        if record is not None and record.status is CellStatus.PROCESSING:
            return record

        if record is None:
            if resolution is None:
                resolution = _cell_resolution(h3_id, self.base_resolution)
            record = HexagonProcessingStatus(
                h3_id=h3_id,
                resolution=resolution,
                parent_h3_id=self._state.child_parent.get(h3_id),
            )
            self._state.records[h3_id] = record

        record.transition(CellStatus.PROCESSING)
        return await self._run_cell(record, functools.partial(self._fetch, h3_id, run), run)

    async def _run_cell(self, record, fetch, run):
        started = time.perf_counter()
        try:
            outcome, stats = await fetch()
        except Exception as exc:
            await self._record_failure(record, str(exc) or exc.__class__.__name__, started, run)
            return record
        await self._record_success(record, outcome, stats, started, run)
        return record

    async def _fetch(self, h3_id: str, run: Optional[ProcessingRun]) -> Tuple[CellSearchOutcome, CoverageStats]:
        coverage = generate_search_points(h3_id)
        if not validate_coverage(coverage):
            raise CellSearchFailed("Invalid hexagon coverage generated")
        stats = get_coverage_stats(coverage)

        outcome = await self._load_cached(h3_id)
        if outcome is not None:
            if run is not None:
                run.tiles_skipped += 1
                run.last_restaurant_count = outcome.total_businesses
            return outcome, stats

        try:
            outcome = await self.search_client.search_cell(h3_id)
        except Exception as exc:
            if run is not None:
                run.actual_api_calls += getattr(exc, "api_calls", 0)
            raise
        if run is not None:
            run.actual_api_calls += outcome.api_calls
            run.tiles_fetched += 1
            run.restaurants_fetched += len(outcome.unique_businesses)
            run.last_restaurant_count = outcome.total_businesses
        if outcome.status == "failed":
            raise CellSearchFailed(outcome.error or "Search failed")
        return outcome, stats

    async def _load_cached(self, h3_id: str) -> Optional[CellSearchOutcome]:
        if self.store is None:
            return None
        try:
            hextile = await asyncio.to_thread(self.store.get_valid_hextile, h3_id)
            if hextile is None or hextile.get("yelp_total_businesses") is None:
                return None
            businesses = await asyncio.to_thread(self.store.get_staged_businesses, h3_id)
        except Exception as exc:
            LOGGER.warning("Cache check failed for %s (non-fatal): %s", h3_id, exc)
            return None

        LOGGER.info("Using cached data for hexagon %s (%s staged businesses)", h3_id, len(businesses))
        return CellSearchOutcome(
            h3_id=h3_id,
            total_businesses=int(hextile["yelp_total_businesses"]),
            unique_businesses=businesses,
            status="dense" if hextile["status"] == "dense" else "fetched",
            coverage_quality="cached",
            from_cache=True,
        )

    async def _record_success(self, record, outcome, stats, started, run) -> None:
        if record.total_businesses is None:
            record.total_businesses = outcome.total_businesses
        record.coverage_quality = outcome.coverage_quality or stats.estimated_coverage
        record.search_points_count = stats.total_points
        record.from_cache = outcome.from_cache
        record.error = None
        record.processing_time_ms = int((time.perf_counter() - started) * 1000)
        record.needs_subdivision = detect_dense_hexagon(record.total_businesses, self.dense_threshold)
        self._state.businesses[record.h3_id] = outcome.unique_businesses

        if record.needs_subdivision and record.parent_h3_id is None:
            try:
                self.handle_dense_hexagon(record.h3_id)
            except ValueError as exc:
                LOGGER.warning("Could not split dense hexagon %s: %s", record.h3_id, exc)
                record.transition(CellStatus.DENSE)
        elif record.needs_subdivision:
            # only one level of subdivision
            record.transition(CellStatus.DENSE)
        else:
            record.transition(CellStatus.FETCHED)

        self._state.completed[record.h3_id] = record
        self._state.failed.pop(record.h3_id, None)
        self._state.subdivision_queue.pop(record.h3_id, None)
        LOGGER.info(
            "Hexagon %s status=%s businesses=%s cached=%s",
            record.h3_id,
            record.status.value,
            record.total_businesses,
            record.from_cache,
        )
        await self._save_hextile(record, run)

    async def _record_failure(self, record, message, started, run) -> None:
        record.error = message
        record.coverage_quality = "unknown"
        record.needs_subdivision = False
        record.processing_time_ms = int((time.perf_counter() - started) * 1000)
        record.transition(CellStatus.FAILED)
        self._state.failed[record.h3_id] = record
        self._state.completed.pop(record.h3_id, None)
        self._state.subdivision_queue.pop(record.h3_id, None)
        LOGGER.error("Hexagon %s failed: %s", record.h3_id, message)
        await self._save_hextile(record, run)

    async def _save_hextile(self, record: HexagonProcessingStatus, run: Optional[ProcessingRun]) -> None:
        if self.store is None:
            return
        status = "dense" if record.status in (CellStatus.SPLIT, CellStatus.DENSE) else record.status.value
        try:
            saved = await asyncio.to_thread(
                self.store.upsert_hextile,
                record.h3_id,
                run.city_id if run is not None else None,
                status,
                record.resolution,
                record.total_businesses,
                None,
                record.retry_count,
            )
        except Exception as exc:
            LOGGER.warning("Failed to save hextile %s (non-fatal): %s", record.h3_id, exc)
            return
        if saved is None:
            LOGGER.warning("Failed to save hextile %s (non-fatal)", record.h3_id)

    def handle_dense_hexagon(self, h3_id: str) -> HexagonSplitResult:
        """Split a dense cell that is being processed and queue its children."""
        record = self._state.records.get(h3_id)
        if record is None or record.status is not CellStatus.PROCESSING:
            raise ValueError(f"Hexagon {h3_id} is not being processed")
        if record.total_businesses is None or not detect_dense_hexagon(record.total_businesses, self.dense_threshold):
            raise ValueError(f"Hexagon {h3_id} is not dense ({record.total_businesses} businesses)")

        split_result = split_hexagon(h3_id, record.resolution, record.resolution + 1)
        child_ids = split_result.child_h3_ids
        if not child_ids:
            raise ValueError(f"Hexagon {h3_id} produced no children")

        children = {}
        for child in split_result.split_hexagons:
            existing = self._state.records.get(child.h3_id)
            if existing is not None and existing.status is not CellStatus.QUEUED:
                # already processed as a top-level cell in this batch
                existing.parent_h3_id = h3_id
                children[child.h3_id] = existing
                continue
            children[child.h3_id] = HexagonProcessingStatus(
                h3_id=child.h3_id,
                resolution=child.resolution,
                parent_h3_id=h3_id,
            )

        record.transition(CellStatus.SPLIT)
        record.child_h3_ids = list(child_ids)
        record.coverage_quality = "dense-split"
        self._state.parent_children[h3_id] = list(child_ids)
        for child_id, child_record in children.items():
            self._state.child_parent[child_id] = h3_id
            self._state.records[child_id] = child_record
            if child_record.status is CellStatus.QUEUED:
                child_record.parent_h3_id = h3_id
                self._state.subdivision_queue[child_id] = child_record

        LOGGER.info(
            "Split dense hexagon %s (%s businesses) into %s children at resolution %s",
            h3_id,
            record.total_businesses,
            len(child_ids),
            split_result.to_resolution,
        )
        return split_result

    # --- phases ---

    def check_subdivision_quota(self, hexagon_count: int) -> SubdivisionAdmission:
        estimate = self.quota_manager.estimate_quota_for_city(
            hexagon_count, self.subdivision_resolution, SUBDIVISION_OVERLAP_MULTIPLIER
        )
        recommendations = []
        if not estimate.can_process_request:
            recommendations.append(f"Insufficient quota for {hexagon_count} subdivision hexagons")
            recommendations.append(f"Estimated needed: {estimate.estimated_calls} calls")
            recommendations.append(f"Available: {self.quota_manager.daily_remaining} calls remaining")
        if hexagon_count > MAX_SUBDIVISION_BATCH:
            recommendations.append(
                f"Subdivision queue too large ({hexagon_count} hexagons) - consider processing in smaller batches"
            )
        return SubdivisionAdmission(
            can_process=estimate.can_process_request and hexagon_count <= MAX_SUBDIVISION_BATCH,
            estimated_calls=estimate.estimated_calls,
            recommendations=recommendations,
        )

    async def process_subdivision_queue(self, run: Optional[ProcessingRun] = None) -> List[HexagonProcessingStatus]:
        pending = [r for r in self._state.subdivision_queue.values() if r.status is CellStatus.QUEUED]
        if not pending:
            return []

        admission = self.check_subdivision_quota(len(pending))
        if not admission.can_process:
            LOGGER.warning(
                "Subdivision batch of %s hexagons denied: %s", len(pending), "; ".join(admission.recommendations)
            )
            return []

        if run is not None:
            run.set_phase2_total(len(pending))

        results = []
        for child in pending:
            estimate = self.quota_manager.estimate_quota_for_city(1, child.resolution, BASE_OVERLAP_MULTIPLIER)
            if not estimate.can_process_request:
                LOGGER.warning("Insufficient quota for hexagon %s - leaving it queued", child.h3_id)
                continue
            result = await self.process_hexagon_with_coverage(child.h3_id, child.resolution, run=run)
            results.append(result)
            if run is not None:
                run.record_phase2(len(results))
                await self._report_progress(run)
        return results

    async def process_two_phase_algorithm(
        self,
        hexagons: List[str],
        run: Optional[ProcessingRun] = None,
    ) -> TwoPhaseResult:
        phase1_results = []
        for index, h3_id in enumerate(hexagons, start=1):
            result = await self.process_hexagon_with_coverage(h3_id, run=run)
            phase1_results.append(result)
            if run is not None:
                run.record_phase1(index)
                await self._report_progress(run)

        phase2_results = await self.process_subdivision_queue(run=run)

        all_results = phase1_results + phase2_results
        successful = [r for r in all_results if r.status in SUCCESS_STATUSES]
        total_businesses = sum(self._display_values(r)[0] for r in phase1_results if r.parent_h3_id is None)
        final_stats = {
            "totalProcessed": len(successful),
            "totalSplit": sum(1 for r in all_results if r.status is CellStatus.SPLIT),
            "totalFailed": sum(1 for r in all_results if r.status is CellStatus.FAILED),
            "totalBusinesses": total_businesses,
            "coverageQuality": ratio_quality(len(successful), len(all_results)) if all_results else "unknown",
        }
        return TwoPhaseResult(phase1_results=phase1_results, phase2_results=phase2_results, final_stats=final_stats)

    async def process_unified_pipeline(
        self,
        hexagons: List[str],
        run: Optional[ProcessingRun] = None,
    ) -> UnifiedResult:
        started = time.perf_counter()
        quota_before = self.quota_manager.daily_used
        two_phase = await self.process_two_phase_algorithm(hexagons, run=run)

        results = two_phase.phase1_results + two_phase.phase2_results
        by_resolution: Dict[int, int] = {}
        for r in results:
            by_resolution[r.resolution] = by_resolution.get(r.resolution, 0) + 1

        summary = {
            "totalHexagons": len(results),
            "resolutionCounts": by_resolution,
            "baseResolutionCount": by_resolution.get(self.base_resolution, 0),
            "subdivisionCount": len(two_phase.phase2_results),
            "totalBusinesses": two_phase.final_stats["totalBusinesses"],
            "coverageQuality": two_phase.final_stats["coverageQuality"],
            "processingTime": int((time.perf_counter() - started) * 1000),
            "quotaUsed": max(self.quota_manager.daily_used - quota_before, 0),
        }
        return UnifiedResult(results=results, summary=summary)

    async def _report_progress(self, run: ProcessingRun) -> None:
        if self.store is None or run.import_log_id is None:
            return
        if run.processed_hexagons % PROGRESS_LOG_EVERY != 0:
            return
        try:
            await asyncio.to_thread(
                self.store.update_import_log,
                run.import_log_id,
                processed_tiles=run.processed_hexagons,
                actual_api_calls=run.actual_api_calls,
                tiles_skipped=run.tiles_skipped,
                tiles_fetched=run.tiles_fetched,
                restaurants_fetched=run.restaurants_fetched,
            )
        except Exception as exc:
            LOGGER.warning("Failed to update import log %s (non-fatal): %s", run.import_log_id, exc)

    # --- queries ---

    def get_processing_stats(self) -> Dict[str, Any]:
        records = self._state.records.values()
        queued = sum(1 for r in records if r.status is CellStatus.QUEUED)
        processing = sum(1 for r in records if r.status is CellStatus.PROCESSING)
        completed = len(self._state.completed)
        failed = len(self._state.failed)
        by_resolution: Dict[int, int] = {}
        for r in self._state.completed.values():
            by_resolution[r.resolution] = by_resolution.get(r.resolution, 0) + 1
        return {
            "queued": queued,
            "processing": processing,
            "completed": completed,
            "failed": failed,
            "split": sum(1 for r in self._state.completed.values() if r.status is CellStatus.SPLIT),
            "dense": sum(1 for r in self._state.completed.values() if r.status is CellStatus.DENSE),
            "total": queued + processing + completed + failed,
            "byResolution": by_resolution,
            "subdivisionQueue": len(self._state.subdivision_queue),
            "parentChildRelationships": len(self._state.parent_children),
        }

    def get_hexagon_status(self, h3_id: str) -> Optional[HexagonProcessingStatus]:
        return self._state.records.get(h3_id)

    def get_hexagons_by_status(self, status: CellStatus) -> List[HexagonProcessingStatus]:
        return [r for r in self._state.records.values() if r.status == status]

    def get_hexagons_by_resolution(self, resolution: int) -> List[HexagonProcessingStatus]:
        return [r for r in self._state.records.values() if r.resolution == resolution]

    def get_businesses(self, h3_id: str) -> List[Dict[str, Any]]:
        return self._state.businesses.get(h3_id, [])

    def get_child_hexagons(self, parent_h3_id: str) -> List[HexagonProcessingStatus]:
        child_ids = self._state.parent_children.get(parent_h3_id, [])
        return [self._state.records[c] for c in child_ids if c in self._state.records]

    def get_parent_hexagon(self, child_h3_id: str) -> Optional[HexagonProcessingStatus]:
        parent_id = self._state.child_parent.get(child_h3_id)
        if parent_id is None:
            return None
        return self._state.records.get(parent_id)

    def are_all_children_processed(self, parent_h3_id: str) -> bool:
        return all(child.status in TERMINAL_STATUSES for child in self.get_child_hexagons(parent_h3_id))

    def get_aggregated_child_results(self, parent_h3_id: str) -> ChildAggregate:
        children = self.get_child_hexagons(parent_h3_id)
        merged = merge_sub_hexagon_results(
            parent_h3_id, children, child_count=len(self._state.parent_children.get(parent_h3_id, []))
        )
        completed = sum(1 for c in children if c.status in (CellStatus.FETCHED, CellStatus.DENSE))
        failed = merged.failed_children

        if failed:
            quality = "poor"
        elif completed == len(children):
            quality = "excellent"
        elif completed > len(children) * 0.8:
            quality = "good"
        else:
            quality = "fair"

        return ChildAggregate(
            total_children=len(children),
            total_businesses=merged.total_businesses,
            completed_children=completed,
            failed_children=failed,
            split_children=sum(1 for c in children if c.status is CellStatus.SPLIT),
            coverage_quality=quality,
        )

    def _display_values(self, record: HexagonProcessingStatus) -> Tuple[int, str]:
        if record.h3_id in self._state.parent_children and self.are_all_children_processed(record.h3_id):
            aggregate = self.get_aggregated_child_results(record.h3_id)
            return aggregate.total_businesses, aggregate.coverage_quality
        return record.total_businesses or 0, record.coverage_quality

    def get_results_by_resolution(self) -> Dict[int, List[HexagonProcessingStatus]]:
        grouped: Dict[int, List[HexagonProcessingStatus]] = {}
        for record in self._state.completed.values():
            grouped.setdefault(record.resolution, []).append(record)
        return grouped

    def get_merged_results(self) -> List[Dict[str, Any]]:
        merged = []
        for record in self._state.completed.values():
            if record.parent_h3_id is not None:
                continue
            has_children = record.h3_id in self._state.parent_children
            total, quality = self._display_values(record)
            entry = {
                "h3Id": record.h3_id,
                "resolution": record.resolution,
                "status": record.status.value,
                "totalBusinesses": total,
                "coverageQuality": quality,
                "isParent": has_children,
                "hasChildren": has_children,
                "childrenSummary": None,
            }
            if has_children:
                aggregate = self.get_aggregated_child_results(record.h3_id)
                entry["childrenSummary"] = {
                    "totalChildren": aggregate.total_children,
                    "completedChildren": aggregate.completed_children,
                    "failedChildren": aggregate.failed_children,
                    "totalChildBusinesses": aggregate.total_businesses,
                }
            merged.append(entry)
        return merged

    def get_subdivision_queue_status(self) -> Dict[str, int]:
        children = [self._state.records[c] for c in self._state.child_parent if c in self._state.records]
        return {
            "queuedCount": sum(1 for c in children if c.status is CellStatus.QUEUED),
            "processingCount": sum(1 for c in children if c.status is CellStatus.PROCESSING),
            "completedCount": sum(1 for c in children if c.status in SUCCESS_STATUSES),
            "failedCount": sum(1 for c in children if c.status is CellStatus.FAILED),
            "totalRelationships": len(self._state.parent_children),
        }

    # --- retries and diagnostics ---

    async def process_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        max_retries: int = 3,
        base_delay: float = RETRY_BASE_DELAY_SEC,
    ) -> Any:
        """Await ``operation()`` up to ``max_retries`` times with exponential backoff and jitter."""
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        for attempt in range(1, max_retries + 1):
            try:
                return await operation()
            except Exception as exc:
                if attempt == max_retries:
                    LOGGER.error("Operation failed after %s attempts: %s", max_retries, exc)
                    raise
                delay = base_delay * (2 ** (attempt - 1)) + self._rng()
                LOGGER.warning("Attempt %s/%s failed (%s), retrying in %.2fs", attempt, max_retries, exc, delay)
                await self._sleep(delay)

    async def retry_failed_hexagons(self, max_retries: int = 2, run: Optional[ProcessingRun] = None) -> Dict[str, int]:
        failed = list(self._state.failed.values())
        success_count = 0
        still_failed = 0

        for record in failed:
            record.transition(CellStatus.PROCESSING, retry=True)
            record.retry_count += 1
            del self._state.failed[record.h3_id]

            fetch = functools.partial(
                self.process_with_retry,
                functools.partial(self._fetch, record.h3_id, run),
                max_retries,
                FAILED_RETRY_BASE_DELAY_SEC,
            )
            await self._run_cell(record, fetch, run)
            if record.status is CellStatus.FAILED:
                still_failed += 1
            else:
                success_count += 1

        return {
            "retriedCount": len(failed),
            "successCount": success_count,
            "stillFailedCount": still_failed,
        }

    def get_error_summary(self) -> Dict[str, Any]:
        failed = list(self._state.failed.values())
        error_types: Dict[str, int] = {}
        for record in failed:
            key = record.error or "unknown"
            error_types[key] = error_types.get(key, 0) + 1

        rate_limited = sum(
            count for error, count in error_types.items() if "rate limit" in error.lower() or "429" in error
        )
        quota_errors = sum(count for error, count in error_types.items() if "quota" in error.lower())

        recommendations = []
        if failed:
            recommendations.append(f"{len(failed)} hexagons failed - consider retrying")
        if quota_errors:
            recommendations.append("Quota exceeded - wait for daily reset or optimize search strategy")
        if rate_limited and rate_limited * 2 >= len(failed):
            recommendations.append("Rate limit hit - implement better rate limiting or reduce concurrency")
        if len(failed) > 10:
            recommendations.append("High failure rate - check API connectivity and error patterns")

        return {
            "totalErrors": len(failed),
            "errorTypes": error_types,
            "failedHexagons": [
                {
                    "h3Id": r.h3_id,
                    "resolution": r.resolution,
                    "error": r.error or "unknown",
                    "status": r.status.value,
                    "retryCount": r.retry_count,
                }
                for r in failed
            ],
            "recommendations": recommendations,
        }

    def get_coverage_optimization_recommendations(self) -> List[str]:
        stats = self.get_processing_stats()
        recommendations = []
        if stats["failed"] > stats["completed"] * 0.1:
            recommendations.append("High failure rate detected - check API connectivity and rate limits")
        if stats["split"] > 0:
            recommendations.append(
                f"{stats['split']} hexagons were split due to high density - consider adjusting resolution"
            )
        if stats["dense"] > 0:
            recommendations.append(
                f"{stats['dense']} subdivided hexagons are still dense - results there may be truncated"
            )
        subdivided = stats["byResolution"].get(self.subdivision_resolution, 0)
        if subdivided:
            recommendations.append(
                f"{subdivided} hexagons processed at resolution {self.subdivision_resolution} - dense area subdivision working"
            )
        return recommendations

    def clear_history(self) -> None:
        self._state.clear()
