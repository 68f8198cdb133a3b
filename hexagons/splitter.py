"""Dense-cell detection and H3 subdivision."""
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import h3

# Yelp caps a single query at 240 results (limit + offset <= 240), so a
# count above this means the cell was truncated.
DENSE_THRESHOLD = 240
MAX_H3_RESOLUTION = 15


@dataclass(frozen=True)
class SplitHexagon:
    h3_id: str
    resolution: int
    parent_h3_id: str
    center_lat: float
    center_lng: float


@dataclass
class HexagonSplitResult:
    parent_h3_id: str
    from_resolution: int
    to_resolution: int
    split_hexagons: List[SplitHexagon] = field(default_factory=list)

    @property
    def child_h3_ids(self) -> List[str]:
        return [h.h3_id for h in self.split_hexagons]


@dataclass
class MergedHexagonResult:
    h3_id: str
    total_businesses: int
    child_count: int
    failed_children: int
    coverage_quality: str


def detect_dense_hexagon(result_count: int, threshold: int = DENSE_THRESHOLD) -> bool:
    return result_count > threshold


def split_hexagon(h3_id: str, from_resolution: int, to_resolution: int) -> HexagonSplitResult:
    """Children of ``h3_id`` at ``to_resolution``, in sorted id order."""
    if not isinstance(h3_id, str) or not h3.is_valid_cell(h3_id):
        raise ValueError(f"Invalid H3 cell id: {h3_id!r}")
    actual = h3.get_resolution(h3_id)
    if actual != from_resolution:
        raise ValueError(f"Cell {h3_id} is resolution {actual}, not {from_resolution}")
    if not (from_resolution < to_resolution <= MAX_H3_RESOLUTION):
        raise ValueError(f"Cannot split from resolution {from_resolution} to {to_resolution}")

    children = sorted(h3.cell_to_children(h3_id, to_resolution))
    split_hexagons = []
    for child in children:
        lat, lng = h3.cell_to_latlng(child)
        split_hexagons.append(
            SplitHexagon(
                h3_id=child,
                resolution=to_resolution,
                parent_h3_id=h3_id,
                center_lat=lat,
                center_lng=lng,
            )
        )

    return HexagonSplitResult(
        parent_h3_id=h3_id,
        from_resolution=from_resolution,
        to_resolution=to_resolution,
        split_hexagons=split_hexagons,
    )


def merge_sub_hexagon_results(
    parent_h3_id: str,
    child_results: Iterable,
    child_count: Optional[int] = None,
) -> MergedHexagonResult:
    """Fold child outcomes (anything with ``total_businesses`` and ``status``) into one parent estimate."""
    results = list(child_results)
    total = sum(r.total_businesses or 0 for r in results)
    failed = sum(1 for r in results if r.status == "failed")
    expected = child_count if child_count is not None else len(results)

    if failed:
        quality = "partial"
    elif len(results) < expected:
        quality = "incomplete"
    else:
        quality = "complete"

    return MergedHexagonResult(
        h3_id=parent_h3_id,
        total_businesses=total,
        child_count=expected,
        failed_children=failed,
        coverage_quality=quality,
    )
