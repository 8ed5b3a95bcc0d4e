"""
Security heuristic scanner.
Flags dangerous permissions, suspicious code strings, packed payloads and
obfuscation. Also hosts the lightweight ML classifier used when ML detection
is switched on.
"""

import math
import re
import zipfile
from typing import Dict, List, Optional

from apkshield.errors import MLDetectionError
from apkshield.schemas.analysis_schemas import BasicInfo, MLReport, SecurityReport
from apkshield.services.apk_analyzer import iter_dex_blobs
from apkshield.utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

MALICIOUS_PERMISSIONS = {
    "android.permission.SEND_SMS",
    "android.permission.READ_SMS",
    "android.permission.RECEIVE_SMS",
    "android.permission.BIND_ACCESSIBILITY_SERVICE",
    "android.permission.SYSTEM_ALERT_WINDOW",
    "android.permission.REQUEST_INSTALL_PACKAGES",
    "android.permission.BIND_DEVICE_ADMIN",
    "android.permission.READ_CALL_LOG",
    "android.permission.PROCESS_OUTGOING_CALLS",
    "android.permission.READ_PHONE_STATE",
    "android.permission.QUERY_ALL_PACKAGES",
}

# (label, pattern) searched in dex bytes
SUSPICIOUS_STRING_PATTERNS = [
    ("su_binary", re.compile(rb"/system/(x?bin)/su\b")),
    ("dynamic_code_loading", re.compile(rb"Ldalvik/system/DexClassLoader;")),
    ("shell_exec", re.compile(rb"Ljava/lang/Runtime;->exec")),
    ("sms_abort", re.compile(rb"abortBroadcast")),
    ("telegram_bot_api", re.compile(rb"api\.telegram\.org/bot")),
    ("device_admin_lock", re.compile(rb"lockNow")),
    ("hide_launcher_icon", re.compile(rb"setComponentEnabledSetting")),
    ("overlay_window", re.compile(rb"TYPE_APPLICATION_OVERLAY")),
]

PACKED_SUFFIXES = (".dex", ".jar", ".apk", ".odex")
PACKED_DIRS = ("assets/", "res/raw/")
DEX_MAGIC = b"dex\n"

CLASS_DESCRIPTOR_RE = re.compile(rb"L((?:[A-Za-z0-9_$]+/)+)([A-Za-z0-9_$]+);")
OBFUSCATION_RATIO = 0.3
MIN_DESCRIPTORS = 20

# Logistic model over scan features
ML_MODEL_VERSION = "logreg-2024.1"
ML_WEIGHTS: Dict[str, float] = {
    "bias": -3.0,
    "malicious_permissions": 0.45,
    "suspicious_strings": 0.6,
    "packed_executables": 1.1,
    "obfuscated": 0.9,
    "debuggable": 0.4,
    "native_code": 0.2,
}


def find_packed_files(path: str) -> List[str]:
    packed = []
    with zipfile.ZipFile(path) as archive:
        for entry in archive.infolist():
            name = entry.filename
            if not name.startswith(PACKED_DIRS) or entry.is_dir():
                continue
            if name.lower().endswith(PACKED_SUFFIXES):
                packed.append(name)
                continue
            with archive.open(entry) as fh:
                if fh.read(len(DEX_MAGIC)) == DEX_MAGIC:
                    packed.append(name)
    return packed


def looks_obfuscated(blobs: List[bytes]) -> bool:
    """Share of class names made of one or two characters (a/b/c; style)."""
    total = 0
    short = 0
    for blob in blobs:
        for match in CLASS_DESCRIPTOR_RE.finditer(blob):
            total += 1
            if len(match.group(2)) <= 2:
                short += 1
    if total < MIN_DESCRIPTORS:
        return False
    return short / total >= OBFUSCATION_RATIO


class SecurityScanner:
    def scan_apk(self, path: str, basic: BasicInfo) -> SecurityReport:
        flagged = [p for p in basic.permissions if p in MALICIOUS_PERMISSIONS]

        blobs = list(iter_dex_blobs(path))
        matched: List[str] = []
        for label, pattern in SUSPICIOUS_STRING_PATTERNS:
            if any(pattern.search(blob) for blob in blobs):
                matched.append(label)

        packed = find_packed_files(path)

        report = SecurityReport(
            malicious_permissions=len(flagged),
            suspicious_strings=len(matched),
            packed_executables=len(packed),
            obfuscated=looks_obfuscated(blobs),
            flagged_permissions=flagged,
            matched_strings=matched,
            packed_files=packed,
        )
        logger.debug(
            "Security scan finished",
            malicious_permissions=report.malicious_permissions,
            suspicious_strings=report.suspicious_strings,
            packed_executables=report.packed_executables,
            obfuscated=report.obfuscated,
        )
        return report

    def ml_detection(self, path: str, basic: Optional[BasicInfo]) -> MLReport:
        if basic is None:
            raise MLDetectionError("Package info required for ML detection")
        try:
            report = self.scan_apk(path, basic)
        except (OSError, zipfile.BadZipFile) as e:
            raise MLDetectionError(f"Feature extraction failed: {e}") from e
        return MLReport(
            malware_probability=malware_probability(basic, report),
            model_version=ML_MODEL_VERSION,
        )


def malware_probability(basic: BasicInfo, security: SecurityReport) -> float:
    features = {
        "malicious_permissions": security.malicious_permissions,
        "suspicious_strings": security.suspicious_strings,
        "packed_executables": security.packed_executables,
        "obfuscated": float(security.obfuscated),
        "debuggable": float(basic.is_debuggable),
        "native_code": float(basic.has_native_code),
    }
    z = ML_WEIGHTS["bias"] + sum(ML_WEIGHTS[name] * value for name, value in features.items())
    return round(1.0 / (1.0 + math.exp(-z)), 4)
