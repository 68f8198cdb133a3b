import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import h3
import requests

from hexagons.coverage import HexagonCoverage, SearchPoint, generate_search_points, validate_coverage
from hexagons.status import CellSearchOutcome

from .quota_manager import QuotaManager
from .rate_limiter import RateLimiter

YELP_API_URL = "https://api.yelp.com/v3/businesses/search"
YELP_CATEGORY = "restaurants"
PAGE_LIMIT = 50
MAX_RESULTS_PER_QUERY = 240  # Yelp rejects limit + offset > 240
MAX_RADIUS_M = 40000
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

LOGGER = logging.getLogger(__name__)


class YelpSearchError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, api_calls: int = 0):
        super().__init__(message)
        self.status_code = status_code
        self.api_calls = api_calls


def normalize_business(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    business_id = raw.get("id")
    coords = raw.get("coordinates") or {}
    lat = coords.get("latitude")
    lng = coords.get("longitude")
    if not business_id or lat is None or lng is None:
        return None

    location = raw.get("location") or {}
    return {
        "id": str(business_id),
        "name": str(raw.get("name") or "").strip() or "Unnamed",
        "rating": raw.get("rating"),
        "review_count": raw.get("review_count"),
        "price": raw.get("price"),
        "categories": raw.get("categories") or [],
        "coordinates": {"latitude": float(lat), "longitude": float(lng)},
        "location": {
            "address1": location.get("address1") or "",
            "city": location.get("city") or "",
            "state": location.get("state") or "",
            "zip_code": location.get("zip_code") or "",
        },
        "phone": raw.get("phone") or "",
        "url": raw.get("url") or "",
        "distance": raw.get("distance"),
    }


def deduplicate_businesses(businesses: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    unique: Dict[str, Dict[str, Any]] = {}
    for business in businesses:
        unique.setdefault(business["id"], business)
    return list(unique.values())


def filter_to_cell(h3_id: str, businesses: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop businesses whose coordinates index to a different cell at the same resolution."""
    resolution = h3.get_resolution(h3_id)
    inside = []
    for business in businesses:
        coords = business["coordinates"]
        if h3.latlng_to_cell(coords["latitude"], coords["longitude"], resolution) == h3_id:
            inside.append({**business, "h3Id": h3_id})
    return inside


def assess_coverage_quality(search_points: int, total_businesses: int) -> str:
    if search_points >= 7 and total_businesses > 100:
        return "excellent"
    if search_points >= 5 and total_businesses > 50:
        return "good"
    if search_points >= 3 and total_businesses > 20:
        return "fair"
    return "poor"


class YelpSearchEngine:
    """Searches one H3 cell through every coverage point of that cell.

    Each HTTP request waits for a rate limiter slot and is charged to the
    quota manager before it is sent. ``requests`` is blocking, so calls run
    in a worker thread.
    """

    def __init__(
        self,
        api_key: str,
        quota_manager: QuotaManager,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
        timeout_sec: float = 12.0,
        max_retries: int = 3,
        retry_delay_sec: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.quota_manager = quota_manager
        self.rate_limiter = rate_limiter or RateLimiter()
        self.session = session or requests.Session()
        self.timeout_sec = timeout_sec
        self.max_retries = max_retries
        self.retry_delay_sec = retry_delay_sec
        self._sleep = sleep

    async def search_cell(self, h3_id: str) -> CellSearchOutcome:
        coverage = generate_search_points(h3_id)
        if not validate_coverage(coverage):
            raise YelpSearchError(f"Invalid hexagon coverage generated for {h3_id}")

        businesses, api_calls, errors = await self._search_all_points(coverage)
        if errors and len(errors) == len(coverage.search_points):
            raise YelpSearchError(str(errors[-1]), status_code=errors[-1].status_code, api_calls=api_calls)

        unique = deduplicate_businesses(filter_to_cell(h3_id, businesses))
        quality = assess_coverage_quality(len(coverage.search_points) - len(errors), len(unique))
        if errors:
            LOGGER.warning("Cell %s: %s of %s search points failed", h3_id, len(errors), len(coverage.search_points))

        return CellSearchOutcome(
            h3_id=h3_id,
            total_businesses=len(unique),
            unique_businesses=unique,
            status="fetched",
            coverage_quality=quality,
            api_calls=api_calls,
            error="; ".join(str(e) for e in errors) if errors else None,
        )

    async def _search_all_points(
        self, coverage: HexagonCoverage
    ) -> Tuple[List[Dict[str, Any]], int, List[YelpSearchError]]:
        businesses: List[Dict[str, Any]] = []
        errors: List[YelpSearchError] = []
        api_calls = 0
        for index, point in enumerate(coverage.search_points):
            try:
                found, calls = await self._search_point(point)
            except YelpSearchError as exc:
                LOGGER.warning("Cell %s point %s failed: %s", coverage.h3_id, index + 1, exc)
                errors.append(exc)
                api_calls += exc.api_calls
                continue
            businesses.extend(found)
            api_calls += calls
        return businesses, api_calls, errors

    async def _search_point(self, point: SearchPoint) -> Tuple[List[Dict[str, Any]], int]:
        radius = min(int(round(point.radius)), MAX_RADIUS_M)
        found: List[Dict[str, Any]] = []
        api_calls = 0
        offset = 0
        total = None

        while total is None or offset < min(total, MAX_RESULTS_PER_QUERY):
            limit = min(PAGE_LIMIT, MAX_RESULTS_PER_QUERY - offset)
            try:
                data, calls = await self._fetch_page(point.lat, point.lng, radius, offset, limit)
            except YelpSearchError as exc:
                exc.api_calls += api_calls
                raise
            api_calls += calls
            total = int(data.get("total") or 0)

            page = data.get("businesses") or []
            for raw in page:
                business = normalize_business(raw)
                if business is not None:
                    found.append(business)
            if not page:
                break
            offset += limit

        return found, api_calls

    async def _fetch_page(self, lat: float, lng: float, radius: int, offset: int, limit: int) -> Tuple[Dict[str, Any], int]:
        calls = 0
        for attempt in range(self.max_retries + 1):
            await self.rate_limiter.wait_for_slot()
            self.quota_manager.track_api_call()
            calls += 1
            try:
                return await asyncio.to_thread(self._request, lat, lng, radius, offset, limit), calls
            except requests.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else None
                reason = exc.response.reason if exc.response is not None else ""
                if status == 429:
                    message = "Rate limit exceeded (HTTP 429)"
                else:
                    message = f"Yelp API error: {status} {reason}".strip()
                if status not in RETRYABLE_STATUS or attempt == self.max_retries:
                    raise YelpSearchError(message, status_code=status, api_calls=calls) from exc
                LOGGER.warning("%s, retrying (attempt %s/%s)", message, attempt + 1, self.max_retries)
            except (requests.ConnectionError, requests.Timeout) as exc:
                if attempt == self.max_retries:
                    raise YelpSearchError(f"Network error: {exc}", api_calls=calls) from exc
                LOGGER.warning("Network error %s, retrying (attempt %s/%s)", exc, attempt + 1, self.max_retries)
            await self._sleep(self.retry_delay_sec * (2 ** attempt))
        raise YelpSearchError("Yelp request retries exhausted")

    def _request(self, lat: float, lng: float, radius: int, offset: int, limit: int) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }
        params = {
            "latitude": lat,
            "longitude": lng,
            "radius": radius,
            "categories": YELP_CATEGORY,
            "limit": limit,
            "offset": offset,
        }
        resp = self.session.get(YELP_API_URL, params=params, headers=headers, timeout=self.timeout_sec)
        resp.raise_for_status()
        return resp.json()
