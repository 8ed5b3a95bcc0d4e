"""
Threat intelligence lookups.
Known malware hashes/packages and suspicious domains, from built-in lists
plus an optional JSON feed loaded at startup. Lookups never touch the APK.

Feed format:
    {
        "known_hashes": ["<sha256>", ...],
        "known_packages": ["com.fake.bank", ...],
        "suspicious_domains": ["evil.example", ...],
        "domain_patterns": ["regex", ...]
    }
"""

import asyncio
import json
import re
from typing import Dict, List, Optional, Set, Tuple

from apkshield.schemas.analysis_schemas import BasicInfo, ThreatReport
from apkshield.utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

BUILTIN_SOURCE = "builtin"


class ThreatIntelligence:
    def __init__(self, feed_path: Optional[str] = None):
        self.feed_path = feed_path
        self.initialized = False
        self._known_hashes: Set[str] = set()
        self._known_packages: Set[str] = set()
        self._suspicious_domains: Set[str] = set()
        self._domain_patterns: List[Tuple[re.Pattern, str]] = []
        self._sources: List[str] = []

    def _load_builtin(self):
        self._suspicious_domains.update([
            "paypa1.com",
            "paypal-secure.com",
            "bank0famerica.com",
            "chase-secure-login.com",
            "wells-fargo-alert.com",
            "sbi-kyc-update.com",
            "hdfc-netbanking-verify.com",
        ])
        for pattern in [
            r"(^|\.)ngrok(-free)?\.(io|app)$",
            r"(^|\.)duckdns\.org$",
            r"(^|\.)000webhostapp\.com$",
            r"(bank|kyc|upi).*(verify|update|secure).*\.(xyz|top|tk|click|info)$",
        ]:
            self._domain_patterns.append((re.compile(pattern, re.I), pattern))
        self._sources.append(BUILTIN_SOURCE)

    def load_feed(self, data: Dict):
        self._known_hashes.update(h.lower() for h in data.get("known_hashes", []))
        self._known_packages.update(data.get("known_packages", []))
        self._suspicious_domains.update(d.lower() for d in data.get("suspicious_domains", []))
        for pattern in data.get("domain_patterns", []):
            try:
                self._domain_patterns.append((re.compile(pattern, re.I), pattern))
            except re.error:
                logger.warning("Skipping invalid domain pattern", pattern=pattern)

    def _read_feed(self) -> Dict:
        with open(self.feed_path, "r", encoding="utf-8") as f:
            return json.load(f)

    async def initialize(self):
        self._load_builtin()
        if self.feed_path:
            data = await asyncio.to_thread(self._read_feed)
            self.load_feed(data)
            self._sources.append(self.feed_path)
        self.initialized = True
        logger.info("Threat intelligence initialized", **self.get_stats())

    def _domain_listed(self, domain: str) -> bool:
        domain = domain.lower()
        parts = domain.split(".")
        # Exact match or any parent domain on the list
        for i in range(len(parts) - 1):
            if ".".join(parts[i:]) in self._suspicious_domains:
                return True
        return any(pattern.search(domain) for pattern, _ in self._domain_patterns)

    def check_apk(self, basic: BasicInfo) -> ThreatReport:
        if not self.initialized:
            raise RuntimeError("Threat intelligence not initialized")

        known = (basic.sha256 or "").lower() in self._known_hashes or (
            basic.package_name in self._known_packages
        )
        matched = [d for d in basic.domains if self._domain_listed(d)]

        return ThreatReport(
            known_malware=known,
            suspicious_domains=len(matched),
            matched_domains=matched,
            sources=list(self._sources),
        )

    def get_stats(self) -> Dict[str, int]:
        return {
            "known_hashes": len(self._known_hashes),
            "known_packages": len(self._known_packages),
            "suspicious_domains": len(self._suspicious_domains),
            "domain_patterns": len(self._domain_patterns),
        }
