"""Client-side bookkeeping of the Yelp Fusion daily request budget."""
import logging
import math
import os
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List

from hexagons.coverage import MAX_SEARCH_POINTS

LOGGER = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = int(os.getenv("YELP_DAILY_LIMIT", "5000"))
BASE_OVERLAP_MULTIPLIER = 1.5
SUBDIVISION_OVERLAP_MULTIPLIER = 2.0
TEST_MODE_MAX_HEXAGONS = 5
TEST_MODE_CALLS_PER_HEXAGON = 3
TREND_WINDOW_HOURS = 24


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QuotaEstimate:
    estimated_calls: int
    can_process_request: bool
    risk_level: str
    recommendations: List[str] = field(default_factory=list)
    hexagon_count: int = 0
    resolution: int = 0
    overlap_multiplier: float = BASE_OVERLAP_MULTIPLIER

    def to_dict(self) -> Dict:
        return asdict(self)


class QuotaManager:
    def __init__(
        self,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        calls_per_hexagon: int = MAX_SEARCH_POINTS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        if daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        self.daily_limit = daily_limit
        self.calls_per_hexagon = calls_per_hexagon
        self._clock = clock
        self._daily_used = 0
        self._day = clock().date()
        self._hourly: "OrderedDict[datetime, int]" = OrderedDict()

    def _roll_over(self) -> None:
        today = self._clock().date()
        if today != self._day:
            LOGGER.info("Daily Yelp quota reset (%s used on %s)", self._daily_used, self._day)
            self._day = today
            self._daily_used = 0

    @property
    def daily_used(self) -> int:
        self._roll_over()
        return self._daily_used

    @property
    def daily_remaining(self) -> int:
        return max(self.daily_limit - self.daily_used, 0)

    def track_api_call(self) -> None:
        self._roll_over()
        self._daily_used += 1
        hour = self._clock().replace(minute=0, second=0, microsecond=0)
        self._hourly[hour] = self._hourly.get(hour, 0) + 1
        cutoff = hour - timedelta(hours=TREND_WINDOW_HOURS)
        while self._hourly and next(iter(self._hourly)) <= cutoff:
            self._hourly.popitem(last=False)

    def estimate_quota_for_city(
        self,
        hexagon_count: int,
        resolution: int,
        overlap_multiplier: float = BASE_OVERLAP_MULTIPLIER,
    ) -> QuotaEstimate:
        """Cost of searching ``hexagon_count`` cells. Does not touch the counters."""
        if hexagon_count < 0:
            raise ValueError("hexagon_count must be >= 0")

        estimated_calls = math.ceil(hexagon_count * self.calls_per_hexagon * overlap_multiplier)
        used = self.daily_used
        remaining = self.daily_remaining
        can_process = estimated_calls <= remaining

        projected = (used + estimated_calls) / self.daily_limit
        if projected < 0.5:
            risk_level = "low"
        elif projected < 0.8:
            risk_level = "medium"
        elif projected <= 1.0:
            risk_level = "high"
        else:
            risk_level = "critical"

        recommendations = []
        if not can_process:
            recommendations.append(
                f"Insufficient quota: need ~{estimated_calls} calls, {remaining} remaining today"
            )
            recommendations.append("Wait for the daily quota reset")
            max_hexagons = int(remaining // (self.calls_per_hexagon * overlap_multiplier))
            recommendations.append(f"Reduce the batch to at most {max_hexagons} hexagons")
        elif risk_level == "high":
            recommendations.append("This batch will use most of today's quota - consider smaller batches")
        elif risk_level == "medium":
            recommendations.append("Monitor quota usage during processing")
        if resolution > 8:
            recommendations.append(f"Resolution {resolution} cells are small - consider a coarser grid")

        return QuotaEstimate(
            estimated_calls=estimated_calls,
            can_process_request=can_process,
            risk_level=risk_level,
            recommendations=recommendations,
            hexagon_count=hexagon_count,
            resolution=resolution,
            overlap_multiplier=overlap_multiplier,
        )

    def can_run_test_batch(self, hexagon_count: int) -> bool:
        needed = min(hexagon_count, TEST_MODE_MAX_HEXAGONS) * TEST_MODE_CALLS_PER_HEXAGON
        return self.daily_remaining >= needed

    def get_quota_status(self) -> Dict:
        used = self.daily_used
        return {
            "dailyUsed": used,
            "dailyRemaining": self.daily_remaining,
            "dailyLimit": self.daily_limit,
            "usagePercentage": round(used / self.daily_limit * 100, 2),
            "resetsAt": datetime.combine(
                self._day + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc
            ).isoformat(),
        }

    def get_usage_trends(self) -> Dict:
        hourly = [{"hour": hour.isoformat(), "calls": calls} for hour, calls in self._hourly.items()]
        total = sum(item["calls"] for item in hourly)
        peak = max(hourly, key=lambda item: item["calls"]) if hourly else None
        return {
            "hourly": hourly,
            "callsLast24h": total,
            "averagePerActiveHour": round(total / len(hourly), 2) if hourly else 0.0,
            "peakHour": peak,
        }

    def get_detailed_report(self) -> Dict:
        status = self.get_quota_status()
        recommendations = []
        if status["usagePercentage"] >= 90:
            recommendations.append("Quota nearly exhausted - pause imports until reset")
        elif status["usagePercentage"] >= 50:
            recommendations.append("Over half of today's quota used")
        max_hexagons = int(status["dailyRemaining"] // (self.calls_per_hexagon * BASE_OVERLAP_MULTIPLIER))
        return {
            "status": status,
            "maxHexagonsRemainingToday": max_hexagons,
            "trends": self.get_usage_trends(),
            "recommendations": recommendations,
        }

    def reset_daily_quota(self) -> None:
        self._daily_used = 0
        self._day = self._clock().date()
