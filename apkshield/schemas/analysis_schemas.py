"""
Analysis sub-reports and the verdict produced from them.

Each sub-report is either fully present and validated or absent (None) on the
AnalysisRecord. Field names serialize as camelCase for the API.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ReportModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class BasicInfo(ReportModel):
    """Package metadata extracted from the APK (stage 1)."""
    is_debuggable: bool
    allow_backup: bool
    has_native_code: bool

    package_name: Optional[str] = None
    app_name: Optional[str] = None
    version_name: Optional[str] = None
    version_code: Optional[str] = None
    min_sdk: Optional[str] = None
    target_sdk: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    sha256: Optional[str] = None
    file_size: int = 0
    domains: List[str] = Field(default_factory=list)  # hosts referenced from code


class SecurityReport(ReportModel):
    """Security heuristic scan (stage 2)."""
    malicious_permissions: int = Field(ge=0)
    suspicious_strings: int = Field(ge=0)
    packed_executables: int = Field(ge=0)
    obfuscated: bool

    flagged_permissions: List[str] = Field(default_factory=list)
    matched_strings: List[str] = Field(default_factory=list)
    packed_files: List[str] = Field(default_factory=list)


class BankingReport(ReportModel):
    """Banking impersonation detection (stage 3)."""
    imitates_banking_app: bool
    has_phishing_indicators: bool
    suspicious_networking: bool

    impersonated_brand: Optional[str] = None
    indicators: List[str] = Field(default_factory=list)


class ThreatReport(ReportModel):
    """Threat intelligence lookup (stage 4)."""
    known_malware: bool
    suspicious_domains: int = Field(ge=0)

    matched_domains: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)


class MLReport(ReportModel):
    """Optional classifier output; `error` is set instead of a probability on failure."""
    malware_probability: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    error: Optional[str] = None
    model_version: Optional[str] = None


class AnalysisRecord(ReportModel):
    basic: Optional[BasicInfo] = None
    security: Optional[SecurityReport] = None
    banking: Optional[BankingReport] = None
    threats: Optional[ThreatReport] = None
    ml: Optional[MLReport] = None


class RiskLevel(str, Enum):
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskAssessment(ReportModel):
    level: RiskLevel
    is_fake: bool
    confidence: int = Field(ge=0, le=100)
    threats: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    score: float = 0.0
