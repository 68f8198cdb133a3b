from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class CellStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    FETCHED = "fetched"
    DENSE = "dense"
    FAILED = "failed"
    SPLIT = "split"


TERMINAL_STATUSES = frozenset({CellStatus.FETCHED, CellStatus.DENSE, CellStatus.FAILED, CellStatus.SPLIT})
SUCCESS_STATUSES = frozenset({CellStatus.FETCHED, CellStatus.DENSE, CellStatus.SPLIT})

TRANSITIONS = {
    CellStatus.QUEUED: frozenset({CellStatus.PROCESSING}),
    CellStatus.PROCESSING: frozenset({CellStatus.FETCHED, CellStatus.DENSE, CellStatus.FAILED, CellStatus.SPLIT}),
    CellStatus.FETCHED: frozenset(),
    CellStatus.DENSE: frozenset(),
    CellStatus.FAILED: frozenset(),
    CellStatus.SPLIT: frozenset(),
}
RETRY_TRANSITIONS = {
    CellStatus.FAILED: frozenset({CellStatus.PROCESSING}),
}


class InvalidTransitionError(Exception):
    def __init__(self, h3_id: str, current: CellStatus, target: CellStatus):
        super().__init__(f"Illegal status transition for {h3_id}: {current.value} -> {target.value}")
        self.h3_id = h3_id
        self.current = current
        self.target = target


def check_transition(h3_id: str, current: CellStatus, target: CellStatus, retry: bool = False) -> None:
    allowed = TRANSITIONS[current]
    if retry:
        allowed = allowed | RETRY_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(h3_id, current, target)


@dataclass
class HexagonProcessingStatus:
    h3_id: str
    resolution: int
    status: CellStatus = CellStatus.QUEUED
    coverage_quality: str = "pending"
    search_points_count: int = 0
    total_businesses: Optional[int] = None
    needs_subdivision: bool = False
    parent_h3_id: Optional[str] = None
    child_h3_ids: Optional[List[str]] = None
    processing_time_ms: int = 0
    error: Optional[str] = None
    retry_count: int = 0
    from_cache: bool = False

    def transition(self, target: CellStatus, retry: bool = False) -> None:
        check_transition(self.h3_id, self.status, target, retry=retry)
        self.status = target

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class CellSearchOutcome:
    """What a search (or a cache hit) produced for one cell."""

    h3_id: str
    total_businesses: int = 0
    unique_businesses: List[Dict[str, Any]] = field(default_factory=list)
    status: str = "fetched"
    coverage_quality: str = "unknown"
    api_calls: int = 0
    from_cache: bool = False
    error: Optional[str] = None
    map_index: Optional[int] = None

    def to_dict(self, include_businesses: bool = False) -> Dict[str, Any]:
        data = {
            "h3Id": self.h3_id,
            "mapIndex": self.map_index,
            "totalBusinesses": self.total_businesses,
            "status": self.status,
            "coverageQuality": self.coverage_quality,
            "apiCalls": self.api_calls,
            "fromCache": self.from_cache,
            "error": self.error,
        }
        if include_businesses:
            data["uniqueBusinesses"] = self.unique_businesses
        return data
