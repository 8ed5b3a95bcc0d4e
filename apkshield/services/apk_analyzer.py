"""
APK metadata extraction and banking impersonation checks.
Uses androguard for manifest parsing; code strings are read straight from the
dex entries in the archive.
"""

import hashlib
import os
import re
import zipfile
from typing import Dict, Iterator, List, Optional, Set

from androguard.core.apk import APK

from apkshield.schemas.analysis_schemas import BankingReport, BasicInfo
from apkshield.utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

URL_HOST_RE = re.compile(rb"https?://([A-Za-z0-9][A-Za-z0-9.-]{1,252}\.[A-Za-z0-9-]{1,63})")
IP_HOST_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")

MAX_DOMAINS = 200

# Brand keyword -> official package names
TRUSTED_BANKING_PACKAGES: Dict[str, Set[str]] = {
    "sbi": {"com.sbi.lotusintouch", "com.sbi.SBIFreedomPlus", "com.sbi.upi"},
    "hdfc": {"com.snapwork.hdfc", "com.hdfcbank.payzapp"},
    "icici": {"com.csam.icici.bank.imobile"},
    "axis": {"com.axis.mobile"},
    "kotak": {"com.msf.kbank.mobile"},
    "paytm": {"net.one97.paytm"},
    "phonepe": {"com.phonepe.app"},
    "paypal": {"com.paypal.android.p2pmobile"},
    "chase": {"com.chase.sig.android"},
    "wellsfargo": {"com.wf.wellsfargomobile"},
    "bankofamerica": {"com.infonow.bofa"},
    "revolut": {"com.revolut.revolut"},
}

GENERIC_BANKING_KEYWORDS = ("bank", "banking", "netbanking", "upi", "wallet", "credit card")

PHISHING_PHRASES = (
    b"enter your pin",
    b"enter otp",
    b"cvv",
    b"card number",
    b"expiry date",
    b"net banking password",
    b"verify your account",
    b"account will be blocked",
    b"kyc update",
)

SMS_PERMISSIONS = {
    "android.permission.RECEIVE_SMS",
    "android.permission.READ_SMS",
    "android.permission.SEND_SMS",
}
ACCESSIBILITY_PERMISSION = "android.permission.BIND_ACCESSIBILITY_SERVICE"
INTERNET_PERMISSION = "android.permission.INTERNET"


def file_sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


def iter_dex_blobs(path: str) -> Iterator[bytes]:
    """
    Yield the raw bytes of every classes*.dex entry in the archive.
    For collaborators that only get the path; APKAnalyzer reads dex through androguard.
    """
    with zipfile.ZipFile(path) as archive:
        for name in archive.namelist():
            if re.fullmatch(r"classes\d*\.dex", name):
                yield archive.read(name)


def extract_domains(blobs: List[bytes]) -> List[str]:
    domains: List[str] = []
    seen: Set[str] = set()
    for blob in blobs:
        for match in URL_HOST_RE.finditer(blob):
            host = match.group(1).decode("ascii", "ignore").lower().rstrip(".")
            if host and host not in seen:
                seen.add(host)
                domains.append(host)
                if len(domains) >= MAX_DOMAINS:
                    return domains
    return domains


def _as_str(value) -> Optional[str]:
    return None if value is None else str(value)


def _is_true(value: Optional[str]) -> bool:
    return str(value).lower() in {"true", "1", "0xffffffff"}


class APKAnalyzer:
    """Package-info extractor and banking impersonation detector."""

    def analyze_apk(self, path: str) -> BasicInfo:
        apk = APK(path)
        files = apk.get_files()
        dex_blobs = list(apk.get_all_dex())

        allow_backup = apk.get_attribute_value("application", "allowBackup")

        info = BasicInfo(
            package_name=apk.get_package(),
            app_name=apk.get_app_name(),
            version_name=apk.get_androidversion_name(),
            version_code=_as_str(apk.get_androidversion_code()),
            min_sdk=_as_str(apk.get_min_sdk_version()),
            target_sdk=_as_str(apk.get_target_sdk_version()),
            permissions=sorted(set(apk.get_permissions())),
            is_debuggable=_is_true(apk.get_attribute_value("application", "debuggable")),
            # Android defaults allowBackup to true when the attribute is missing
            allow_backup=allow_backup is None or _is_true(allow_backup),
            has_native_code=any(name.startswith("lib/") and name.endswith(".so") for name in files),
            sha256=file_sha256(path),
            file_size=os.path.getsize(path),
            domains=extract_domains(dex_blobs),
        )
        logger.debug(
            "Extracted package info",
            package=info.package_name,
            permissions=len(info.permissions),
            domains=len(info.domains),
        )
        return info

    def _match_brand(self, basic: BasicInfo) -> Optional[str]:
        haystack = f"{basic.app_name or ''} {basic.package_name or ''}".lower().replace(" ", "")
        for brand in TRUSTED_BANKING_PACKAGES:
            if brand in haystack:
                return brand
        return None

    def analyze_banking_characteristics(self, path: str, basic: BasicInfo) -> BankingReport:
        indicators: List[str] = []
        package = basic.package_name or ""

        brand = self._match_brand(basic)
        imitates = brand is not None and package not in TRUSTED_BANKING_PACKAGES[brand]
        if imitates:
            indicators.append(f"brand_impersonation:{brand}")

        label = f"{basic.app_name or ''} {package}".lower()
        looks_banking = brand is not None or any(k in label for k in GENERIC_BANKING_KEYWORDS)

        phrases: List[str] = []
        for blob in iter_dex_blobs(path):
            lowered = blob.lower()
            for phrase in PHISHING_PHRASES:
                if phrase in lowered and phrase.decode() not in phrases:
                    phrases.append(phrase.decode())
        has_phishing = bool(phrases) and (looks_banking or len(phrases) >= 2)
        if has_phishing:
            indicators.extend(f"phishing_phrase:{p.replace(' ', '_')}" for p in phrases)

        permissions = set(basic.permissions)
        intercepts = bool(permissions & SMS_PERMISSIONS) or ACCESSIBILITY_PERMISSION in permissions
        raw_ip_hosts = [d for d in basic.domains if IP_HOST_RE.match(d)]
        suspicious_networking = INTERNET_PERMISSION in permissions and intercepts and (
            bool(raw_ip_hosts) or looks_banking
        )
        if suspicious_networking:
            indicators.append("sms_or_accessibility_with_network")
            indicators.extend(f"raw_ip_host:{h}" for h in raw_ip_hosts)

        return BankingReport(
            imitates_banking_app=imitates,
            has_phishing_indicators=has_phishing,
            suspicious_networking=suspicious_networking,
            impersonated_brand=brand if imitates else None,
            indicators=indicators,
        )
