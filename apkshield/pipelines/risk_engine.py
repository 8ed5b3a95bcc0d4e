from typing import List

from apkshield.schemas.analysis_schemas import AnalysisRecord, RiskAssessment
from apkshield.utils.risk_levels import derive_risk_from_score


# Signal weights (additive, score is uncapped before banding)
WEIGHTS = {
    "debuggable": 10,
    "allow_backup": 5,
    "native_code": 5,
    "malicious_permission": 15,  # per permission
    "suspicious_string": 10,  # per string
    "obfuscated": 20,
    "packed_executable": 25,  # per executable
    "banking_impersonation": 50,
    "phishing_indicators": 40,
    "suspicious_networking": 30,
    "known_malware": 100,
    "suspicious_domain": 20,  # per domain
    "ml_multiplier": 50,  # applied to the malware probability
}

ML_TRIGGER_PROBABILITY = 0.7

THREAT_BANKING_IMPERSONATION = "Banking app impersonation detected"
THREAT_PHISHING = "Phishing indicators found"
THREAT_SUSPICIOUS_NETWORK = "Suspicious network behavior"
THREAT_KNOWN_MALWARE = "Known malware signature detected"
THREAT_SUSPICIOUS_DOMAINS = "Communicates with suspicious domains"
THREAT_ML_TRIGGERED = "AI-based malware detection triggered"

RECOMMEND_DO_NOT_INSTALL = "DO NOT INSTALL - This appears to be a fake banking application"
RECOMMEND_REPORT = "Report this APK to your bank and security authorities"
RECOMMEND_REVIEW_PERMISSIONS = "Review app permissions carefully before installation"
RECOMMEND_DATA_EXFILTRATION = "This app may transmit sensitive data to unauthorized servers"


def calculate_risk(record: AnalysisRecord) -> RiskAssessment:
    """
    Score a composite analysis record and derive the verdict.

    Pure and deterministic: absent sub-reports contribute nothing, threats are
    appended in evaluation order and the input record is never modified.
    """
    score = 0.0
    threats: List[str] = []
    recommendations: List[str] = []

    basic = record.basic
    if basic is not None:
        if basic.is_debuggable:
            score += WEIGHTS["debuggable"]
        if basic.allow_backup:
            score += WEIGHTS["allow_backup"]
        if basic.has_native_code:
            score += WEIGHTS["native_code"]

    security = record.security
    if security is not None:
        score += security.malicious_permissions * WEIGHTS["malicious_permission"]
        score += security.suspicious_strings * WEIGHTS["suspicious_string"]
        if security.obfuscated:
            score += WEIGHTS["obfuscated"]
        score += security.packed_executables * WEIGHTS["packed_executable"]

    banking = record.banking
    if banking is not None:
        if banking.imitates_banking_app:
            score += WEIGHTS["banking_impersonation"]
            threats.append(THREAT_BANKING_IMPERSONATION)
        if banking.has_phishing_indicators:
            score += WEIGHTS["phishing_indicators"]
            threats.append(THREAT_PHISHING)
        if banking.suspicious_networking:
            score += WEIGHTS["suspicious_networking"]
            threats.append(THREAT_SUSPICIOUS_NETWORK)

    intel = record.threats
    if intel is not None:
        if intel.known_malware:
            score += WEIGHTS["known_malware"]
            threats.append(THREAT_KNOWN_MALWARE)
        if intel.suspicious_domains > 0:
            score += intel.suspicious_domains * WEIGHTS["suspicious_domain"]
            threats.append(THREAT_SUSPICIOUS_DOMAINS)

    ml = record.ml
    if ml is not None and ml.error is None and ml.malware_probability is not None:
        if ml.malware_probability > ML_TRIGGER_PROBABILITY:
            score += ml.malware_probability * WEIGHTS["ml_multiplier"]
            threats.append(THREAT_ML_TRIGGERED)

    level, is_fake, confidence = derive_risk_from_score(score)

    if is_fake:
        recommendations.append(RECOMMEND_DO_NOT_INSTALL)
        recommendations.append(RECOMMEND_REPORT)
    if security is not None and security.malicious_permissions > 0:
        recommendations.append(RECOMMEND_REVIEW_PERMISSIONS)
    if banking is not None and banking.suspicious_networking:
        recommendations.append(RECOMMEND_DATA_EXFILTRATION)

    return RiskAssessment(
        level=level,
        is_fake=is_fake,
        confidence=confidence,
        threats=threats,
        recommendations=recommendations,
        score=score,
    )


def generate_scan_summary(assessment: RiskAssessment) -> str:
    """One-line human readable verdict."""
    level = assessment.level.value
    count = len(assessment.threats)
    if assessment.is_fake:
        return (
            f"DANGER: This APK appears to be a fake banking application with {level} risk level. "
            f"{count} threats detected."
        )
    return f"This APK appears legitimate with {level} risk level. {count} potential issues found."
