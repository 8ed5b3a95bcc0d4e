import pytest
from fastapi.testclient import TestClient

from apkshield.api.security import rate_limiter
from apkshield.api.server import app
from apkshield.config import settings
from apkshield.errors import MLDetectionError
from apkshield.models.scan import ScanRequest
from apkshield.pipelines.scan_pipeline import ScanContext, ScanOrchestrator
from apkshield.services.upload_service import UploadJanitor


BASIC = {
    "is_debuggable": False,
    "allow_backup": False,
    "has_native_code": False,
    "package_name": "com.example.wallet",
    "app_name": "Example Wallet",
    "permissions": ["android.permission.INTERNET"],
    "domains": ["api.example.com"],
}
SECURITY = {
    "malicious_permissions": 0,
    "suspicious_strings": 0,
    "packed_executables": 0,
    "obfuscated": False,
}
BANKING = {
    "imitates_banking_app": False,
    "has_phishing_indicators": False,
    "suspicious_networking": False,
}
THREATS = {"known_malware": False, "suspicious_domains": 0}


class FakeCollaborators:
    """
    Stand-in analyzers recording every call in order.

    `reports` overrides what a stage returns, `failures` maps a method name
    to the exception it raises.
    """

    def __init__(self, reports=None, failures=None, ml_probability=0.1):
        self.calls = []
        self.reports = {
            "analyze_apk": dict(BASIC),
            "scan_apk": dict(SECURITY),
            "analyze_banking_characteristics": dict(BANKING),
            "check_apk": dict(THREATS),
            "ml_detection": {"malware_probability": ml_probability, "model_version": "test"},
        }
        self.reports.update(reports or {})
        self.failures = failures or {}
        self.initialized = True

    def _respond(self, name, *args):
        self.calls.append((name, args))
        if name in self.failures:
            raise self.failures[name]
        return self.reports[name]

    def analyze_apk(self, path):
        return self._respond("analyze_apk", path)

    def scan_apk(self, path, basic):
        return self._respond("scan_apk", path, basic)

    def analyze_banking_characteristics(self, path, basic):
        return self._respond("analyze_banking_characteristics", path, basic)

    def check_apk(self, basic):
        return self._respond("check_apk", basic)

    def ml_detection(self, path, basic):
        return self._respond("ml_detection", path, basic)

    @property
    def call_names(self):
        return [name for name, _ in self.calls]


def make_orchestrator(fakes: FakeCollaborators, ml_enabled: bool = False, janitor=None) -> ScanOrchestrator:
    context = ScanContext(
        apk_analyzer=fakes,
        security_scanner=fakes,
        threat_intel=fakes,
        ml_classifier=fakes,
        ml_enabled=ml_enabled,
        janitor=janitor or UploadJanitor(),
    )
    return ScanOrchestrator(context)


@pytest.fixture
def fakes():
    return FakeCollaborators()


@pytest.fixture
def apk_file(tmp_path):
    """An uploaded artifact already on disk."""
    path = tmp_path / "1700000000000-abc.apk"
    path.write_bytes(b"PK\x03\x04fake-apk-bytes")
    return path


@pytest.fixture
def scan_request(apk_file):
    return ScanRequest(path=str(apk_file), filename="bank.apk")


@pytest.fixture
def ml_failure():
    return MLDetectionError("model not loaded")


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setattr(settings, "upload_dir", str(path))
    return path


@pytest.fixture
def client(fakes, upload_dir):
    """FastAPI test client wired to fake collaborators."""
    rate_limiter.reset()
    app.state.orchestrator = make_orchestrator(fakes)
    app.state.threat_intel = fakes
    yield TestClient(app)
    app.state.orchestrator = None
    app.state.threat_intel = None
    rate_limiter.reset()


@pytest.fixture
def apk_upload():
    return {"apk": ("bank.apk", b"PK\x03\x04fake-apk-bytes", "application/vnd.android.package-archive")}
