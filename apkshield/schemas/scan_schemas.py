from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from apkshield.schemas.analysis_schemas import (
    BankingReport,
    BasicInfo,
    MLReport,
    SecurityReport,
    ThreatReport,
)


class APIModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScanVerdict(APIModel):
    risk_level: str
    is_fake: bool
    confidence: int
    threats: List[str]
    recommendations: List[str]
    summary: str


class ScanMetadata(APIModel):
    basic: Optional[BasicInfo] = None
    security: Optional[SecurityReport] = None
    banking: Optional[BankingReport] = None
    threats: Optional[ThreatReport] = None
    ml: Optional[MLReport] = None
    timestamp: datetime


class ScanResponse(APIModel):
    success: bool = True
    scan_id: str
    result: ScanVerdict
    metadata: ScanMetadata


class ErrorResponse(APIModel):
    """Body of every failed request."""
    success: bool = False
    scan_id: Optional[str] = None
    error: str
    message: Optional[str] = None
    retry_after: Optional[int] = None  # milliseconds, rate limit only


class HealthResponse(APIModel):
    status: str
    timestamp: datetime
    services: Dict[str, str]
