"""
In-memory records for a single scan request. Nothing here is persisted.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from apkshield.schemas.analysis_schemas import AnalysisRecord, RiskAssessment


def new_scan_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ScanRequest:
    """Handle to one uploaded artifact. Owned by the orchestrator until released."""
    path: str
    filename: str
    scan_id: str = field(default_factory=new_scan_id)
    released: bool = False  # set once the janitor has taken the file


@dataclass
class ScanResult:
    scan_id: str
    filename: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    analysis: AnalysisRecord = field(default_factory=AnalysisRecord)

    # Placeholders until the risk engine has run
    risk_level: str = "unknown"
    is_fake: bool = False
    confidence: int = 0
    threats: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    assessment: Optional[RiskAssessment] = None

    def apply_assessment(self, assessment: RiskAssessment):
        self.assessment = assessment
        self.risk_level = assessment.level.value
        self.is_fake = assessment.is_fake
        self.confidence = assessment.confidence
        self.threats = list(assessment.threats)
        self.recommendations = list(assessment.recommendations)
