"""Tests for the scan orchestration pipeline."""

import asyncio

import pytest

from apkshield.errors import ScanFailedError
from apkshield.pipelines import scan_pipeline
from apkshield.pipelines.scan_pipeline import ML_UNAVAILABLE, call_collaborator
from apkshield.schemas.analysis_schemas import BasicInfo, RiskLevel
from apkshield.services.upload_service import UploadJanitor

from conftest import FakeCollaborators, make_orchestrator


class CountingJanitor(UploadJanitor):
    def __init__(self):
        super().__init__()
        self.discards = 0

    async def discard(self, request):
        released = await super().discard(request)
        if released:
            self.discards += 1
        return released


class HangingSecurityScan(FakeCollaborators):
    """Security stage that never finishes on its own."""

    started = None

    async def scan_apk(self, path, basic):
        self.calls.append(("scan_apk", (path, basic)))
        self.started.set()
        await asyncio.sleep(3600)


async def run_and_drain(orchestrator, request, defer=None):
    try:
        return await orchestrator.run(request, defer=defer)
    finally:
        await orchestrator.context.janitor.wait_pending()


class TestStageOrder:
    def test_stages_run_in_fixed_order(self, fakes, scan_request):
        orchestrator = make_orchestrator(fakes, ml_enabled=True)
        asyncio.run(run_and_drain(orchestrator, scan_request))
        assert fakes.call_names == [
            "analyze_apk",
            "scan_apk",
            "analyze_banking_characteristics",
            "check_apk",
            "ml_detection",
        ]

    def test_ml_stage_skipped_when_disabled(self, fakes, scan_request):
        orchestrator = make_orchestrator(fakes, ml_enabled=False)
        result = asyncio.run(run_and_drain(orchestrator, scan_request))
        assert "ml_detection" not in fakes.call_names
        assert result.analysis.ml is None

    def test_later_stages_receive_basic_info(self, fakes, scan_request):
        orchestrator = make_orchestrator(fakes, ml_enabled=True)
        asyncio.run(run_and_drain(orchestrator, scan_request))

        calls = dict(fakes.calls)
        assert calls["analyze_apk"] == (scan_request.path,)
        path, basic = calls["scan_apk"]
        assert path == scan_request.path
        assert isinstance(basic, BasicInfo)
        assert basic.package_name == "com.example.wallet"
        # Threat intelligence works from package info only
        assert len(calls["check_apk"]) == 1
        assert isinstance(calls["check_apk"][0], BasicInfo)

    def test_result_carries_verdict(self, scan_request):
        fakes = FakeCollaborators(reports={
            "analyze_banking_characteristics": {
                "imitates_banking_app": True,
                "has_phishing_indicators": False,
                "suspicious_networking": False,
            },
            "check_apk": {"known_malware": True, "suspicious_domains": 0},
        })
        orchestrator = make_orchestrator(fakes)
        result = asyncio.run(run_and_drain(orchestrator, scan_request))
        assert result.scan_id == scan_request.scan_id
        assert result.filename == "bank.apk"
        assert result.risk_level == RiskLevel.CRITICAL.value
        assert result.is_fake is True
        assert result.confidence == 95
        assert result.assessment is not None


class TestMandatoryFailures:
    @pytest.mark.parametrize(
        "failing, ran",
        [
            ("analyze_apk", ["analyze_apk"]),
            ("scan_apk", ["analyze_apk", "scan_apk"]),
            (
                "analyze_banking_characteristics",
                ["analyze_apk", "scan_apk", "analyze_banking_characteristics"],
            ),
            (
                "check_apk",
                ["analyze_apk", "scan_apk", "analyze_banking_characteristics", "check_apk"],
            ),
        ],
    )
    def test_failure_aborts_and_deletes_artifact(self, failing, ran, scan_request, apk_file):
        fakes = FakeCollaborators(failures={failing: ValueError("collaborator broke")})
        janitor = CountingJanitor()
        orchestrator = make_orchestrator(fakes, ml_enabled=True, janitor=janitor)

        with pytest.raises(ScanFailedError) as exc_info:
            asyncio.run(run_and_drain(orchestrator, scan_request))

        assert fakes.call_names == ran
        assert exc_info.value.scan_id == scan_request.scan_id
        assert isinstance(exc_info.value.cause, ValueError)
        assert exc_info.value.message == "collaborator broke"
        assert not apk_file.exists()
        assert janitor.discards == 1

    def test_malformed_report_is_a_stage_failure(self, scan_request, apk_file):
        fakes = FakeCollaborators(reports={"scan_apk": {"malicious_permissions": "lots"}})
        orchestrator = make_orchestrator(fakes)

        with pytest.raises(ScanFailedError) as exc_info:
            asyncio.run(run_and_drain(orchestrator, scan_request))

        assert exc_info.value.stage == "security"
        assert not apk_file.exists()

    def test_error_message_hidden_outside_development(self, scan_request):
        error = ScanFailedError(scan_request.scan_id, "basic", RuntimeError("secret path /tmp/x"))
        assert error.public_message(expose_errors=True) == "secret path /tmp/x"
        assert error.public_message(expose_errors=False) == "Internal server error"


class TestOptionalStage:
    def test_ml_failure_is_recorded_inline(self, scan_request, apk_file, ml_failure):
        fakes = FakeCollaborators(failures={"ml_detection": ml_failure})
        janitor = CountingJanitor()
        orchestrator = make_orchestrator(fakes, ml_enabled=True, janitor=janitor)

        result = asyncio.run(run_and_drain(orchestrator, scan_request))

        assert result.analysis.ml is not None
        assert result.analysis.ml.error == ML_UNAVAILABLE
        assert result.analysis.ml.malware_probability is None
        assert result.assessment.score == 0
        assert not apk_file.exists()
        assert janitor.discards == 1

    def test_ml_out_of_range_probability_is_recorded_inline(self, scan_request):
        fakes = FakeCollaborators(ml_probability=1.5)
        orchestrator = make_orchestrator(fakes, ml_enabled=True)
        result = asyncio.run(run_and_drain(orchestrator, scan_request))
        assert result.analysis.ml.error == ML_UNAVAILABLE

    def test_ml_probability_scores(self, scan_request):
        fakes = FakeCollaborators(ml_probability=0.9)
        orchestrator = make_orchestrator(fakes, ml_enabled=True)
        result = asyncio.run(run_and_drain(orchestrator, scan_request))
        assert result.analysis.ml.malware_probability == 0.9
        assert result.assessment.score == pytest.approx(45.0)
        assert result.threats == ["AI-based malware detection triggered"]


class TestCleanup:
    def test_success_defers_cleanup_to_hook(self, fakes, scan_request, apk_file):
        janitor = CountingJanitor()
        orchestrator = make_orchestrator(fakes, janitor=janitor)
        deferred = []

        asyncio.run(orchestrator.run(scan_request, defer=lambda fn, *args: deferred.append((fn, args))))

        # Nothing deleted until the hook runs
        assert apk_file.exists()
        assert len(deferred) == 1

        fn, args = deferred[0]
        asyncio.run(fn(*args))
        assert not apk_file.exists()
        assert janitor.discards == 1

    def test_success_without_hook_spawns_background_task(self, fakes, scan_request, apk_file):
        janitor = CountingJanitor()
        orchestrator = make_orchestrator(fakes, janitor=janitor)

        asyncio.run(run_and_drain(orchestrator, scan_request))

        assert not apk_file.exists()
        assert janitor.discards == 1
        assert janitor.pending == 0

    def test_artifact_deleted_once_even_if_discarded_again(self, fakes, scan_request, apk_file):
        janitor = CountingJanitor()
        orchestrator = make_orchestrator(fakes, janitor=janitor)

        async def scenario():
            await run_and_drain(orchestrator, scan_request)
            await janitor.discard(scan_request)

        asyncio.run(scenario())
        assert janitor.discards == 1
        assert scan_request.released is True


    def test_cancelled_scan_deletes_artifact(self, scan_request, apk_file):
        fakes = HangingSecurityScan()
        janitor = CountingJanitor()
        orchestrator = make_orchestrator(fakes, janitor=janitor)

        async def scenario():
            fakes.started = asyncio.Event()
            task = asyncio.create_task(orchestrator.run(scan_request))
            await fakes.started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await janitor.wait_pending()

        asyncio.run(scenario())
        assert fakes.call_names == ["analyze_apk", "scan_apk"]
        assert not apk_file.exists()
        assert janitor.discards == 1

    def test_scoring_error_keeps_scan_id_and_deletes_artifact(self, fakes, scan_request, apk_file, monkeypatch):
        def broken(record):
            raise RuntimeError("scoring bug")

        monkeypatch.setattr(scan_pipeline, "calculate_risk", broken)
        janitor = CountingJanitor()
        orchestrator = make_orchestrator(fakes, janitor=janitor)

        with pytest.raises(ScanFailedError) as exc_info:
            asyncio.run(run_and_drain(orchestrator, scan_request))

        assert exc_info.value.scan_id == scan_request.scan_id
        assert exc_info.value.stage == "scoring"
        assert exc_info.value.message == "scoring bug"
        assert not apk_file.exists()
        assert janitor.discards == 1

class TestCallCollaborator:
    def test_sync_function_runs_in_thread(self):
        assert asyncio.run(call_collaborator(lambda x: x * 2, 21)) == 42

    def test_async_function_is_awaited(self):
        async def double(x):
            return x * 2

        assert asyncio.run(call_collaborator(double, 21)) == 42
