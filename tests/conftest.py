"""Shared fixtures: real H3 cells around San Francisco and a scripted search client."""

import asyncio
from typing import Dict, List, Optional

import h3
import pytest

from hexagons.processor import HexagonProcessor
from hexagons.status import CellSearchOutcome
from yelp.quota_manager import QuotaManager
from yelp.search import YelpSearchError

SF_LAT, SF_LNG = 37.7749, -122.4194
CALLS_PER_CELL = 7


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def run(coro):
    return asyncio.run(coro)


def make_business(business_id: str, lat: float = SF_LAT, lng: float = SF_LNG) -> Dict:
    return {
        "id": business_id,
        "name": f"Place {business_id}",
        "coordinates": {"latitude": lat, "longitude": lng},
    }


class FakeSearchClient:
    """Stands in for YelpSearchEngine.

    ``counts`` maps cell -> total businesses (default ``default_count``).
    ``failures`` maps cell -> how many calls fail before succeeding; a
    negative value fails forever.
    """

    def __init__(
        self,
        counts: Optional[Dict[str, int]] = None,
        failures: Optional[Dict[str, int]] = None,
        default_count: int = 10,
        quota_manager: Optional[QuotaManager] = None,
        error_message: str = "Yelp API error: 500 Internal Server Error",
        calls_per_search: int = CALLS_PER_CELL,
    ):
        self.counts = dict(counts or {})
        self.failures = dict(failures or {})
        self.default_count = default_count
        self.quota_manager = quota_manager
        self.error_message = error_message
        self.calls_per_search = calls_per_search
        self.calls: List[str] = []

    async def search_cell(self, h3_id: str) -> CellSearchOutcome:
        self.calls.append(h3_id)
        if self.quota_manager is not None:
            for _ in range(self.calls_per_search):
                self.quota_manager.track_api_call()

        remaining = self.failures.get(h3_id, 0)
        if remaining:
            if remaining > 0:
                self.failures[h3_id] = remaining - 1
            raise YelpSearchError(self.error_message, status_code=500, api_calls=self.calls_per_search)

        count = self.counts.get(h3_id, self.default_count)
        lat, lng = h3.cell_to_latlng(h3_id)
        businesses = [make_business(f"{h3_id}-{i}", lat, lng) for i in range(min(count, 5))]
        return CellSearchOutcome(
            h3_id=h3_id,
            total_businesses=count,
            unique_businesses=businesses,
            coverage_quality="good",
            api_calls=self.calls_per_search,
        )


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cell_a() -> str:
    return h3.latlng_to_cell(SF_LAT, SF_LNG, 7)


@pytest.fixture
def cell_b(cell_a) -> str:
    return sorted(set(h3.grid_disk(cell_a, 1)) - {cell_a})[0]


@pytest.fixture
def ring_cells(cell_a) -> List[str]:
    """The cell and its six neighbours, plus one more from the next ring."""
    disk = sorted(h3.grid_disk(cell_a, 1))
    extra = sorted(set(h3.grid_disk(cell_a, 2)) - set(disk))[0]
    return disk + [extra]


@pytest.fixture
def quota_manager() -> QuotaManager:
    return QuotaManager(daily_limit=10000)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_processor(quota_manager, sleeper):
    def _make(client=None, store=None, quota=None, rng=lambda: 0.0) -> HexagonProcessor:
        return HexagonProcessor(
            client or FakeSearchClient(),
            quota or quota_manager,
            store=store,
            sleep=sleeper,
            rng=rng,
        )

    return _make
