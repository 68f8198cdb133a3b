import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import h3
import yaml

from backend.services import build_services
from hexagons.pipeline import HexagonInputError, QuotaExceededError
from hexagons.processor import BASE_RESOLUTION
from yelp.quota_manager import BASE_OVERLAP_MULTIPLIER, DEFAULT_DAILY_LIMIT, QuotaManager

LOGGER = logging.getLogger("hex_ingestion")


@dataclass
class RegionConfig:
    name: str
    bbox: Tuple[float, float, float, float]
    city: Optional[str] = None



def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")



def resolve_default_config_path() -> Path:
    return Path(__file__).resolve().parent / "ingestion_config.yaml"



def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="H3 hexagon Yelp ingestion with adaptive subdivision")
    parser.add_argument(
        "--db-path",
        default=str(Path("data") / "hexgrid.db"),
        help="SQLite DB path for hextiles, import logs and staging (default: data/hexgrid.db)",
    )
    parser.add_argument(
        "--config",
        default=str(resolve_default_config_path()),
        help="Path to regions config file (YAML or JSON)",
    )
    parser.add_argument(
        "--resolution",
        type=int,
        default=BASE_RESOLUTION,
        help=f"Base H3 resolution for the grid (default: {BASE_RESOLUTION})",
    )
    parser.add_argument(
        "--city",
        default=None,
        help='City to attach hextiles to, e.g. "San Francisco, CA". Overrides per-region city.',
    )
    parser.add_argument(
        "--daily-limit",
        type=int,
        default=DEFAULT_DAILY_LIMIT,
        help=f"Daily Yelp request budget (default: {DEFAULT_DAILY_LIMIT})",
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Process at most 5 cells per region.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned regions/cells and quota estimates without hitting the API.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    return parser.parse_args(argv)



def safe_load_config(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        LOGGER.warning("Config not found at %s, using built-in default region.", config_path)
        return {
            "regions": [
                {
                    "name": "mission_sf",
                    "bbox": [37.74802895624222, -122.42248265700066, 37.769249996806195, -122.40801467343661],
                    "city": "San Francisco, CA",
                }
            ]
        }

    raw = config_path.read_text(encoding="utf-8")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        data = yaml.safe_load(raw)

    if not isinstance(data, dict):
        raise ValueError("Config root must be an object with a 'regions' key.")
    return data



def parse_regions(config: Dict[str, Any]) -> List[RegionConfig]:
    regions_raw = config.get("regions")
    if not isinstance(regions_raw, list) or not regions_raw:
        raise ValueError("Config must define non-empty 'regions' list.")

    regions: List[RegionConfig] = []
    for i, item in enumerate(regions_raw):
        if not isinstance(item, dict):
            raise ValueError(f"Region #{i + 1} must be an object.")

        name = str(item.get("name") or f"region_{i + 1}")
        bbox = item.get("bbox")
        if not (isinstance(bbox, list) and len(bbox) == 4):
            raise ValueError(f"Region '{name}' must provide bbox=[sw_lat, sw_lng, ne_lat, ne_lng].")

        sw_lat, sw_lng, ne_lat, ne_lng = [float(v) for v in bbox]
        if sw_lat >= ne_lat or sw_lng >= ne_lng:
            raise ValueError(f"Region '{name}' has invalid bbox ordering.")

        regions.append(RegionConfig(name=name, bbox=(sw_lat, sw_lng, ne_lat, ne_lng), city=item.get("city")))

    return regions



def region_cells(region: RegionConfig, resolution: int) -> List[str]:
    """H3 cells whose centers fall inside the region's bbox, sorted for a stable order."""
    sw_lat, sw_lng, ne_lat, ne_lng = region.bbox
    poly = h3.LatLngPoly([(sw_lat, sw_lng), (sw_lat, ne_lng), (ne_lat, ne_lng), (ne_lat, sw_lng)])
    cells = sorted(h3.polygon_to_cells(poly, resolution))
    if not cells:
        # bbox smaller than one cell
        cells = [h3.latlng_to_cell((sw_lat + ne_lat) / 2, (sw_lng + ne_lng) / 2, resolution)]
    return cells



def print_dry_run(regions: List[RegionConfig], resolution: int, daily_limit: int) -> None:
    quota_manager = QuotaManager(daily_limit=daily_limit)
    total_cells = 0

    print("=== Dry Run Plan ===")
    for region in regions:
        cells = region_cells(region, resolution)
        total_cells += len(cells)
        estimate = quota_manager.estimate_quota_for_city(len(cells), resolution, BASE_OVERLAP_MULTIPLIER)
        print(
            f"Region={region.name} bbox={region.bbox} resolution={resolution} "
            f"cells={len(cells)} estimated_calls={estimate.estimated_calls} risk={estimate.risk_level}"
        )

    estimate = quota_manager.estimate_quota_for_city(total_cells, resolution, BASE_OVERLAP_MULTIPLIER)
    print(f"Total cells: {total_cells}")
    print(f"Estimated calls (phase 1): {estimate.estimated_calls}")
    print(f"Daily limit: {daily_limit}")
    for recommendation in estimate.recommendations:
        print(f"- {recommendation}")
    print("No API calls made (--dry-run).")



def run_ingestion(args: argparse.Namespace, api_key: Optional[str] = None) -> int:
    config_path = Path(args.config).expanduser()
    config = safe_load_config(config_path)
    regions = parse_regions(config)

    if not 0 <= args.resolution <= 15:
        raise SystemExit("--resolution must be between 0 and 15")
    if args.daily_limit <= 0:
        raise SystemExit("--daily-limit must be > 0")

    if args.dry_run:
        print_dry_run(regions, args.resolution, args.daily_limit)
        return 0

    if api_key is None:
        api_key = os.getenv("YELP_API_KEY")
    if not api_key:
        raise SystemExit("Missing YELP_API_KEY environment variable.")

    db_path = Path(args.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    services = build_services(
        db_path=str(db_path), api_key=api_key, daily_limit=args.daily_limit, base_resolution=args.resolution
    )

    exit_code = 0
    for region in regions:
        cells = region_cells(region, args.resolution)
        city = args.city or region.city
        LOGGER.info("Region %s: %s cells at resolution %s", region.name, len(cells), args.resolution)
        try:
            result = asyncio.run(services.pipeline.process_hexagons(cells, test_mode=args.test_mode, city_name=city))
        except QuotaExceededError as exc:
            LOGGER.error("Region %s rejected: %s (~%s calls)", region.name, exc, exc.estimated_calls)
            for recommendation in exc.recommendations:
                LOGGER.error("  %s", recommendation)
            exit_code = 2
            break
        except HexagonInputError as exc:
            LOGGER.error("Region %s has invalid cells: %s", region.name, exc)
            exit_code = 1
            continue

        summary = result.summary
        print(f"=== Ingestion Summary: {region.name} ===")
        print(f"run_id: {result.run_id}")
        print(f"import_log_id: {result.import_log_id}")
        print(f"cells_processed: {summary['totalHexagons']} (subdivision: {summary['subdivisionCount']})")
        print(f"cells_failed: {result.processing_stats['failed']}")
        print(f"cells_from_cache: {result.cache_stats['tilesSkipped']}")
        print(f"total_businesses: {summary['totalBusinesses']}")
        print(f"new_unique_businesses: {len(result.new_businesses)}")
        print(f"api_calls_used: {summary['quotaUsed']}")
        print(f"coverage_quality: {summary['coverageQuality']}")

    print(f"quota_remaining_today: {services.quota_manager.daily_remaining}")
    return exit_code



def main() -> None:
    args = parse_args()
    configure_logging(args.verbose)
    exit_code = run_ingestion(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
