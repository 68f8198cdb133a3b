# routes/hextiles.py
from fastapi import APIRouter, Depends, HTTPException

from backend.services import YelpServices
from ..models import StageBusinessesRequest
from .yelp import get_services

router = APIRouter(prefix="/yelp", tags=["hextiles"])


def _require_store(services: YelpServices):
    if services.store is None:
        raise HTTPException(status_code=503, detail="Persistence is disabled")
    return services.store


@router.get("/cache/{h3_id}")
def get_cached_hextile(h3_id: str, services: YelpServices = Depends(get_services)):
    store = _require_store(services)
    hextile = store.get_valid_hextile(h3_id)
    if hextile is None:
        raise HTTPException(status_code=404, detail="No fresh cached hextile")
    return {"hextile": hextile, "businesses": store.get_staged_businesses(h3_id)}


@router.get("/import-logs/{log_id}")
def get_import_log(log_id: str, services: YelpServices = Depends(get_services)):
    log = _require_store(services).get_import_log(log_id)
    if log is None:
        raise HTTPException(status_code=404, detail="Import log not found")
    log["test_mode"] = bool(log["test_mode"])
    return log


@router.post("/staging", status_code=201)
def stage_businesses(data: StageBusinessesRequest, services: YelpServices = Depends(get_services)):
    store = _require_store(services)
    if store.get_hextile(data.h3Id) is None:
        raise HTTPException(status_code=404, detail="Hextile not found")
    staged = store.stage_businesses(data.h3Id, data.cityId, data.businesses)
    return {"h3Id": data.h3Id, "staged": staged}
