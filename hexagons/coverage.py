"""Search-point coverage for a single H3 cell.

A cell is searched from its center with a radius reaching the farthest
vertex, plus one smaller sub-sample per boundary vertex placed halfway
between the center and that vertex. Hexagons get 7 points, the twelve
pentagons per resolution get 6.
"""
import math
from dataclasses import dataclass, field
from typing import List

import h3

from backend.utils import haversine_distance, is_valid_lat_lng

MIN_SEARCH_POINTS = 6
MAX_SEARCH_POINTS = 7
SUB_SAMPLE_RADIUS_RATIO = 0.5


@dataclass(frozen=True)
class SearchPoint:
    lat: float
    lng: float
    radius: float  # meters


@dataclass
class HexagonCoverage:
    h3_id: str
    resolution: int
    center: SearchPoint
    search_points: List[SearchPoint] = field(default_factory=list)


@dataclass
class CoverageStats:
    total_points: int
    estimated_coverage: str
    max_radius_m: float


def _wrap_lng(lng: float) -> float:
    if lng > 180.0:
        return lng - 360.0
    if lng < -180.0:
        return lng + 360.0
    return lng


def _midpoint_lng(center_lng: float, lng: float) -> float:
    # take the short way round for cells that straddle the antimeridian
    return _wrap_lng(center_lng + _wrap_lng(lng - center_lng) / 2.0)


def generate_search_points(h3_id: str) -> HexagonCoverage:
    if not isinstance(h3_id, str) or not h3.is_valid_cell(h3_id):
        raise ValueError(f"Invalid H3 cell id: {h3_id!r}")

    center_lat, center_lng = h3.cell_to_latlng(h3_id)
    # cell_to_boundary can carry extra distortion vertices near icosahedron
    # edges; the topological vertexes are always 6 (5 for pentagons).
    vertices = [h3.vertex_to_latlng(v) for v in h3.cell_to_vertexes(h3_id)]
    boundary = h3.cell_to_boundary(h3_id)
    circumradius = max(haversine_distance(center_lat, center_lng, lat, lng) for lat, lng in boundary)

    center = SearchPoint(lat=center_lat, lng=center_lng, radius=circumradius)
    points = [center]
    for lat, lng in vertices:
        points.append(
            SearchPoint(
                lat=(center_lat + lat) / 2.0,
                lng=_midpoint_lng(center_lng, lng),
                radius=circumradius * SUB_SAMPLE_RADIUS_RATIO,
            )
        )

    return HexagonCoverage(
        h3_id=h3_id,
        resolution=h3.get_resolution(h3_id),
        center=center,
        search_points=points,
    )


def validate_coverage(coverage: HexagonCoverage) -> bool:
    points = coverage.search_points
    if not (MIN_SEARCH_POINTS <= len(points) <= MAX_SEARCH_POINTS):
        return False
    if points[0] != coverage.center:
        return False
    for point in points:
        if not is_valid_lat_lng(point.lat, point.lng):
            return False
        if not math.isfinite(point.radius) or point.radius <= 0:
            return False
    return True


def get_coverage_stats(coverage: HexagonCoverage) -> CoverageStats:
    total_points = len(coverage.search_points)
    if not validate_coverage(coverage):
        estimated = "insufficient"
    elif total_points == MAX_SEARCH_POINTS:
        estimated = "complete"
    else:
        estimated = "partial"

    max_radius = max((p.radius for p in coverage.search_points), default=0.0)
    return CoverageStats(total_points=total_points, estimated_coverage=estimated, max_radius_m=max_radius)
