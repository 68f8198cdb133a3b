# routes/yelp.py
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request

from backend.services import YelpServices
from backend.utils import utc_now_iso
from hexagons.pipeline import HexagonInputError, QuotaExceededError
from ..models import ProcessHexagonsRequest, RetryRequest

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/yelp", tags=["yelp"])


def get_services(request: Request) -> YelpServices:
    return request.app.state.services


@router.post("/process")
async def process_hexagons(data: ProcessHexagonsRequest, services: YelpServices = Depends(get_services)):
    hexagons = [h if isinstance(h, str) else h.model_dump(exclude_none=True) for h in data.hexagons]
    try:
        result = await services.pipeline.process_hexagons(
            hexagons, test_mode=data.testMode, city_name=data.cityName
        )
    except HexagonInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except QuotaExceededError as exc:
        raise HTTPException(status_code=429, detail=exc.to_dict())
    except Exception as exc:
        LOGGER.exception("Hexagon processing failed")
        raise HTTPException(status_code=500, detail=f"Processing failed: {exc}")
    return result.to_dict()


@router.get("/status")
async def get_status(runId: Optional[str] = None, services: YelpServices = Depends(get_services)):
    if runId:
        run = services.runs.get(runId)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found or expired")
    else:
        run = services.runs.active()

    processor = services.processor
    return {
        "processingStats": processor.get_processing_stats(),
        "quotaStatus": services.quota_manager.get_quota_status(),
        "rateLimit": services.rate_limiter.get_quota_status(),
        "progress": run.progress(services.runs.now()) if run else None,
        "recommendations": processor.get_coverage_optimization_recommendations(),
        "timestamp": utc_now_iso(),
    }


@router.get("/quota")
async def get_quota(services: YelpServices = Depends(get_services)):
    return services.quota_manager.get_detailed_report()


@router.get("/results/merged")
async def get_merged_results(services: YelpServices = Depends(get_services)):
    merged = services.processor.get_merged_results()
    return {"mergedResults": merged, "count": len(merged)}


@router.get("/subdivision")
async def get_subdivision_status(services: YelpServices = Depends(get_services)):
    processor = services.processor
    return {
        "queueStatus": processor.get_subdivision_queue_status(),
        "resultsByResolution": {
            str(res): len(records) for res, records in processor.get_results_by_resolution().items()
        },
    }


@router.get("/errors")
async def get_errors(services: YelpServices = Depends(get_services)):
    return services.processor.get_error_summary()


@router.post("/retry")
async def retry_failed(data: Optional[RetryRequest] = None, services: YelpServices = Depends(get_services)):
    max_retries = data.maxRetries if data else 2
    summary = await services.processor.retry_failed_hexagons(max_retries=max_retries)
    return {**summary, "errorSummary": services.processor.get_error_summary()}


@router.post("/clear")
async def clear_history(services: YelpServices = Depends(get_services)):
    services.processor.clear_history()
    services.runs.clear()
    return {"message": "Processing history cleared"}
