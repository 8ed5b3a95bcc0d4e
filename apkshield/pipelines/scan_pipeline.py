"""
Scan orchestration pipeline.

Drives one uploaded APK through the analyzers in a fixed order, assembles
the AnalysisRecord, scores it and owns the artifact's cleanup.

    1) basic     package info from the artifact          (mandatory)
    2) security  heuristic scan, artifact + basic        (mandatory)
    3) banking   impersonation check, artifact + basic   (mandatory)
    4) threats   threat intelligence, basic only         (mandatory)
    5) ml        classifier, artifact + basic            (optional, config gated)
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Type

from pydantic import BaseModel

from apkshield.errors import ScanError, ScanFailedError
from apkshield.models.scan import ScanRequest, ScanResult
from apkshield.pipelines.risk_engine import calculate_risk
from apkshield.schemas.analysis_schemas import (
    AnalysisRecord,
    BankingReport,
    BasicInfo,
    MLReport,
    SecurityReport,
    ThreatReport,
)
from apkshield.services.upload_service import UploadJanitor
from apkshield.utils.logging_config import StructuredLogger, metrics, scan_id_var

logger = StructuredLogger(__name__)

ML_UNAVAILABLE = "ML detection unavailable"

# Hook used to run cleanup after the response is sent, e.g. BackgroundTasks.add_task
DeferFn = Callable[..., Any]


@dataclass
class ScanContext:
    """Collaborators and switches the orchestrator works with."""
    apk_analyzer: Any
    security_scanner: Any
    threat_intel: Any
    ml_classifier: Any = None
    ml_enabled: bool = False
    janitor: UploadJanitor = field(default_factory=UploadJanitor)


@dataclass
class StageOutcome:
    ok: bool
    report: Optional[BaseModel] = None
    error: Optional[BaseException] = None


@dataclass
class Stage:
    name: str  # AnalysisRecord field this stage fills
    report_model: Type[BaseModel]
    run: Callable[[ScanRequest, AnalysisRecord], Awaitable[Any]]
    mandatory: bool = True


async def call_collaborator(fn: Callable, *args):
    """Await async collaborators; run blocking ones in a worker thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ScanOrchestrator:
    def __init__(self, context: ScanContext):
        self.context = context
        self.stages = self._build_stages()

    def _build_stages(self) -> List[Stage]:
        ctx = self.context
        stages = [
            Stage(
                "basic",
                BasicInfo,
                lambda req, rec: call_collaborator(ctx.apk_analyzer.analyze_apk, req.path),
            ),
            Stage(
                "security",
                SecurityReport,
                lambda req, rec: call_collaborator(ctx.security_scanner.scan_apk, req.path, rec.basic),
            ),
            Stage(
                "banking",
                BankingReport,
                lambda req, rec: call_collaborator(
                    ctx.apk_analyzer.analyze_banking_characteristics, req.path, rec.basic
                ),
            ),
            Stage(
                "threats",
                ThreatReport,
                lambda req, rec: call_collaborator(ctx.threat_intel.check_apk, rec.basic),
            ),
        ]
        if ctx.ml_enabled:
            classifier = ctx.ml_classifier or ctx.security_scanner
            stages.append(
                Stage(
                    "ml",
                    MLReport,
                    lambda req, rec: call_collaborator(classifier.ml_detection, req.path, rec.basic),
                    mandatory=False,
                )
            )
        return stages

    async def _run_stage(self, stage: Stage, request: ScanRequest, record: AnalysisRecord) -> StageOutcome:
        start = time.time()
        try:
            raw = await stage.run(request, record)
            report = stage.report_model.model_validate(raw)
        except Exception as e:
            metrics.increment(f"scans.stage.{stage.name}.errors")
            return StageOutcome(ok=False, error=e)
        finally:
            metrics.timing(f"scans.stage.{stage.name}", time.time() - start)
        return StageOutcome(ok=True, report=report)

    async def _execute(self, request: ScanRequest) -> ScanResult:
        result = ScanResult(scan_id=request.scan_id, filename=request.filename)

        for stage in self.stages:
            logger.info(f"Starting {stage.name} stage")
            outcome = await self._run_stage(stage, request, result.analysis)

            if outcome.ok:
                setattr(result.analysis, stage.name, outcome.report)
                continue

            if stage.mandatory:
                logger.error(
                    f"{stage.name} stage failed",
                    stage=stage.name,
                    error=str(outcome.error),
                )
                raise ScanFailedError(request.scan_id, stage.name, outcome.error)

            logger.warning(f"{stage.name} stage failed, continuing", error=str(outcome.error))
            setattr(result.analysis, stage.name, MLReport(error=ML_UNAVAILABLE))

        assessment = calculate_risk(result.analysis)
        result.apply_assessment(assessment)
        return result

    async def run(self, request: ScanRequest, defer: Optional[DeferFn] = None) -> ScanResult:
        """
        Scan one uploaded artifact.

        On failure or cancellation the artifact is deleted before the error
        propagates, and unexpected errors surface as ScanFailedError so the
        scan id reaches the caller. On success deletion is handed to `defer`
        (run after the response is sent) or, without a hook, to a background
        task.
        """
        token = scan_id_var.set(request.scan_id)
        metrics.increment("scans.total")
        try:
            logger.info("Starting APK scan", filename=request.filename, path=request.path)
            try:
                result = await self._execute(request)
            except ScanError:
                metrics.increment("scans.failed")
                await self.context.janitor.discard(request)
                raise
            except Exception as e:
                metrics.increment("scans.failed")
                await self.context.janitor.discard(request)
                logger.error("Scoring failed", error=str(e), exc_info=True)
                raise ScanFailedError(request.scan_id, "scoring", e) from e
            except BaseException:
                # Cancelled mid-stage, e.g. the client went away
                metrics.increment("scans.cancelled")
                logger.warning("Scan cancelled, removing artifact")
                await self.context.janitor.discard(request)
                raise

            metrics.increment("scans.succeeded")
            metrics.increment(f"scans.risk.{result.risk_level}")
            logger.info(
                f"Scan completed - Risk: {result.risk_level}, Fake: {result.is_fake}",
                risk_level=result.risk_level,
                is_fake=result.is_fake,
                confidence=result.confidence,
            )

            if defer is not None:
                defer(self.context.janitor.discard, request)
            else:
                self.context.janitor.spawn(request)
            return result
        finally:
            scan_id_var.reset(token)
