# services.py
import logging
import os
from dataclasses import dataclass
from typing import Optional

from hexagons.pipeline import ImportPipeline
from hexagons.processor import BASE_RESOLUTION, HexagonProcessor
from hexagons.runs import RunRegistry
from yelp.quota_manager import DEFAULT_DAILY_LIMIT, QuotaManager
from yelp.rate_limiter import RateLimiter
from yelp.search import YelpSearchEngine

from .database import HexgridStore

LOGGER = logging.getLogger(__name__)


@dataclass
class YelpServices:
    store: Optional[HexgridStore]
    quota_manager: QuotaManager
    rate_limiter: RateLimiter
    search_engine: YelpSearchEngine
    processor: HexagonProcessor
    runs: RunRegistry
    pipeline: ImportPipeline


def build_services(
    db_path: Optional[str] = None,
    api_key: Optional[str] = None,
    daily_limit: Optional[int] = None,
    use_store: bool = True,
    base_resolution: int = BASE_RESOLUTION,
) -> YelpServices:
    """Wire the store, quota manager, Yelp client, processor and pipeline together."""
    api_key = api_key if api_key is not None else os.getenv("YELP_API_KEY", "")
    if not api_key:
        LOGGER.warning("YELP_API_KEY is not set - Yelp searches will fail")

    limit = daily_limit or DEFAULT_DAILY_LIMIT
    store = HexgridStore(db_path) if use_store else None
    if store is not None:
        store.init()

    quota_manager = QuotaManager(daily_limit=limit)
    rate_limiter = RateLimiter(max_per_day=limit)
    search_engine = YelpSearchEngine(api_key, quota_manager, rate_limiter=rate_limiter)
    processor = HexagonProcessor(search_engine, quota_manager, store=store, base_resolution=base_resolution)
    runs = RunRegistry()
    pipeline = ImportPipeline(processor, quota_manager, store=store, runs=runs)
    return YelpServices(
        store=store,
        quota_manager=quota_manager,
        rate_limiter=rate_limiter,
        search_engine=search_engine,
        processor=processor,
        runs=runs,
        pipeline=pipeline,
    )
