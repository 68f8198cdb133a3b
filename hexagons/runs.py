"""In-process progress state for import runs.

Runs are advisory only. A finished run is kept for ``retention_seconds`` so
status pollers can read its final counts, then dropped by the sweep that
runs on every registry access.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

LOGGER = logging.getLogger(__name__)

RUN_RETENTION_SECONDS = 60.0


@dataclass
class ProcessingRun:
    run_id: str
    total_hexagons: int
    phase1_total: int
    estimated_total_api_calls: int
    started_at: float
    processed_hexagons: int = 0
    phase1_processed: int = 0
    phase2_total: int = 0
    phase2_processed: int = 0
    actual_api_calls: int = 0
    tiles_skipped: int = 0
    tiles_fetched: int = 0
    restaurants_fetched: int = 0
    last_restaurant_count: int = 0
    is_processing: bool = True
    finished_at: Optional[float] = None
    import_log_id: Optional[str] = None
    city_id: Optional[str] = None

    @property
    def current_phase(self) -> str:
        return "phase1" if self.phase1_processed < self.phase1_total else "phase2"

    def record_phase1(self, processed: int) -> None:
        self.phase1_processed = max(self.phase1_processed, processed)
        self.processed_hexagons = self.phase1_processed + self.phase2_processed

    def record_phase2(self, processed: int) -> None:
        self.phase2_processed = max(self.phase2_processed, processed)
        self.processed_hexagons = self.phase1_processed + self.phase2_processed

    def set_phase2_total(self, count: int) -> None:
        self.phase2_total = count
        self.total_hexagons = self.phase1_total + count

    def progress(self, now: float) -> Dict:
        elapsed = now - self.started_at
        remaining = max(self.total_hexagons - self.processed_hexagons, 0)
        eta = None
        if self.processed_hexagons > 0:
            eta = int(elapsed / self.processed_hexagons * remaining)
        return {
            "runId": self.run_id,
            "total": self.total_hexagons,
            "processed": self.processed_hexagons,
            "remaining": remaining,
            "phase1Total": self.phase1_total,
            "phase1Processed": self.phase1_processed,
            "phase2Total": self.phase2_total,
            "phase2Processed": self.phase2_processed,
            "currentPhase": self.current_phase,
            "elapsedTime": int(elapsed),
            "estimatedTimeRemaining": eta,
            "actualApiCalls": self.actual_api_calls,
            "estimatedTotalApiCalls": self.estimated_total_api_calls,
            "lastRestaurantCount": self.last_restaurant_count,
            "isProcessing": self.is_processing,
        }


class RunRegistry:
    def __init__(
        self,
        retention_seconds: float = RUN_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._runs: Dict[str, ProcessingRun] = {}

    def now(self) -> float:
        return self._clock()

    def create(
        self,
        total_hexagons: int,
        estimated_total_api_calls: int,
        import_log_id: Optional[str] = None,
        city_id: Optional[str] = None,
    ) -> ProcessingRun:
        self.evict_expired()
        now = self._clock()
        run_id = f"process_{int(now * 1000)}_{secrets.token_hex(5)}"
        run = ProcessingRun(
            run_id=run_id,
            total_hexagons=total_hexagons,
            phase1_total=total_hexagons,
            estimated_total_api_calls=estimated_total_api_calls,
            started_at=now,
            import_log_id=import_log_id,
            city_id=city_id,
        )
        self._runs[run_id] = run
        return run

    def finish(self, run_id: str) -> None:
        run = self._runs.get(run_id)
        if run is None:
            return
        run.is_processing = False
        run.finished_at = self._clock()

    def get(self, run_id: str) -> Optional[ProcessingRun]:
        self.evict_expired()
        return self._runs.get(run_id)

    def active(self) -> Optional[ProcessingRun]:
        self.evict_expired()
        for run in self._runs.values():
            if run.is_processing:
                return run
        return None

    def all(self) -> List[ProcessingRun]:
        self.evict_expired()
        return list(self._runs.values())

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [
            run_id
            for run_id, run in self._runs.items()
            if run.finished_at is not None and now - run.finished_at >= self.retention_seconds
        ]
        for run_id in expired:
            del self._runs[run_id]
        if expired:
            LOGGER.debug("Evicted %s finished runs", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._runs.clear()
