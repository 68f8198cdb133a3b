# models.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union

class HexagonRef(BaseModel):
    h3Id: str
    originalIndex: Optional[int] = None
    mapIndex: Optional[int] = None

class ProcessHexagonsRequest(BaseModel):
    hexagons: List[Union[str, HexagonRef]] = Field(default_factory=list)
    testMode: bool = False
    cityName: Optional[str] = None  # "Austin, TX"

class RetryRequest(BaseModel):
    maxRetries: int = Field(2, ge=1, le=5)

class StageBusinessesRequest(BaseModel):
    h3Id: str
    cityId: Optional[str] = None
    businesses: List[Dict[str, Any]]
