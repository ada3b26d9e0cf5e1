"""
DriftScore - Compliance Assessment Engine
Scores a framework for a user from the open drift findings.

Per control:
  no mapping at all                               -> not_applicable
  open finding hit by a high/medium mapping       -> failed
  otherwise                                       -> passed
Low-confidence hits never fail a control. They are listed as advisory
resources, and every result records the confidence tier behind its status.

compliance_percent = passed / (passed + failed) * 100, one decimal.
Open findings are read once, at the start of the run, so a score is never
computed from a half-updated finding set. A run that errors is stored as
failed with no percentage.
"""

import logging
from typing import Optional

from driftscore.compliance.catalog import Control, Framework, FrameworkCatalog
from driftscore.compliance.mapper import ControlMapper, ControlMapping
from driftscore.config import Settings
from driftscore.errors import AssessmentError, NotFoundError
from driftscore.models import (
    OPEN_DRIFT_STATUSES,
    AssessmentStatus,
    Confidence,
    ControlStatus,
    Severity,
)
from driftscore.records import Assessment, ControlResult, DriftFinding, utcnow
from driftscore.schemas import (
    AssessmentExport,
    ComplianceOverview,
    ComplianceTrend,
    ExportSummary,
    FailingControl,
    FrameworkCompliance,
    ResourceCompliance,
    ResourceControlStatus,
    TrendPoint,
)
from driftscore.store.base import FindingStore

logger = logging.getLogger(__name__)

TREND_IMPROVING = "improving"
TREND_DECLINING = "declining"
TREND_STABLE = "stable"

DEFAULT_TREND_POINTS = 30


def compute_compliance_percent(passed: int, failed: int) -> float:
    """passed / (passed + failed) * 100 rounded to one decimal; 0.0 when nothing was scored."""
    scored = passed + failed
    if scored <= 0:
        return 0.0
    percent = round(passed / scored * 100, 1)
    # 100.0 and 0.0 are reserved for all-passed and all-failed
    if failed and percent >= 100.0:
        return 99.9
    if passed and percent <= 0.0:
        return 0.1
    return percent


def classify_trend(current: float, previous: float, threshold: float = 1.0) -> tuple[str, float]:
    """Relative change between two scores. A previous score of 0 is always stable."""
    if not previous:
        return TREND_STABLE, 0.0
    change = round((current - previous) / previous * 100, 2)
    if change > threshold:
        return TREND_IMPROVING, change
    if change < -threshold:
        return TREND_DECLINING, change
    return TREND_STABLE, change


def evaluate_control(
    control: Control,
    mappings: list[ControlMapping],
    findings: list[DriftFinding],
) -> ControlResult:
    """Decide one control's status from its mappings and the open findings."""
    result = ControlResult(
        framework_id=control.framework_id,
        control_id=control.control_id,
        title=control.title,
        category=control.category,
        severity=control.severity,
        status=ControlStatus.NOT_APPLICABLE,
        remediation=control.remediation,
    )
    if not mappings:
        return result

    failing_tier: Optional[Confidence] = None
    affected, finding_ids, advisory = set(), set(), set()
    for finding in findings:
        for mapping in mappings:
            if not mapping.matches(finding):
                continue
            if mapping.confidence.is_technical_evidence:
                affected.add(finding.resource_id)
                finding_ids.add(finding.id)
                if failing_tier is None or mapping.confidence.rank > failing_tier.rank:
                    failing_tier = mapping.confidence
            else:
                advisory.add(finding.resource_id)

    if failing_tier is not None:
        result.status = ControlStatus.FAILED
        result.confidence = failing_tier
        result.affected_resources = sorted(affected)
        result.finding_ids = sorted(finding_ids)
    else:
        result.status = ControlStatus.PASSED
        result.confidence = max((m.confidence for m in mappings), key=lambda c: c.rank)
    result.advisory_resources = sorted(advisory - affected)
    return result


class AssessmentEngine:

    def __init__(
        self,
        store: FindingStore,
        catalog: FrameworkCatalog,
        mapper: ControlMapper,
        settings: Settings,
    ):
        self.store = store
        self.catalog = catalog
        self.mapper = mapper
        self.settings = settings

    # ============================================================
    # Assessment runs
    # ============================================================

    def run_assessment(self, user_id: str, framework_id: str) -> Assessment:
        framework = self.catalog.get(framework_id)
        if not framework.controls:
            raise AssessmentError(f"Framework '{framework_id}' declares no controls to assess")
        assessment = Assessment(
            user_id=user_id,
            framework_id=framework.id,
            framework_name=framework.name,
            started_at=utcnow(),
        )
        self.store.append_assessment(assessment)
        logger.info(f"Assessment {assessment.id} started: {framework.id} for user {user_id}")

        try:
            findings = self.store.list_findings(user_id, statuses=OPEN_DRIFT_STATUSES)
            results = self._evaluate(framework, findings)
        except Exception as e:
            logger.exception(f"Assessment {assessment.id} failed for {framework.id}")
            assessment.status = AssessmentStatus.FAILED
            assessment.error = f"{type(e).__name__}: {e}"
            assessment.compliance_percent = None
            assessment.completed_at = utcnow()
            return self.store.finish_assessment(assessment)

        assessment.findings = results
        assessment.total_controls = len(results)
        assessment.passed_controls = sum(1 for r in results if r.status == ControlStatus.PASSED)
        assessment.failed_controls = sum(1 for r in results if r.status == ControlStatus.FAILED)
        assessment.not_applicable_controls = sum(
            1 for r in results if r.status == ControlStatus.NOT_APPLICABLE
        )
        assessment.compliance_percent = compute_compliance_percent(
            assessment.passed_controls, assessment.failed_controls
        )
        assessment.status = AssessmentStatus.COMPLETED
        assessment.completed_at = utcnow()
        self.store.finish_assessment(assessment)

        logger.info(
            f"Assessment {assessment.id} completed: {framework.id} "
            f"passed={assessment.passed_controls} failed={assessment.failed_controls} "
            f"n/a={assessment.not_applicable_controls} score={assessment.compliance_percent}%"
        )
        return assessment

    def _evaluate(self, framework: Framework, findings: list[DriftFinding]) -> list[ControlResult]:
        return [
            evaluate_control(
                control,
                self.mapper.for_control(framework.id, control.control_id),
                findings,
            )
            for control in framework.controls
        ]

    # ============================================================
    # Assessment reads
    # ============================================================

    def get_assessment(self, user_id: str, assessment_id: str) -> Assessment:
        assessment = self.store.get_assessment(user_id, assessment_id)
        if assessment is None:
            raise NotFoundError(f"Assessment {assessment_id} not found")
        return assessment

    def list_assessments(
        self, user_id: str, framework_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[Assessment]:
        return self.store.list_assessments(user_id, framework_id=framework_id, limit=limit)

    def latest_assessment(self, user_id: str, framework_id: str) -> Optional[Assessment]:
        rows = self.store.list_assessments(
            user_id, framework_id=framework_id, status=AssessmentStatus.COMPLETED, limit=1
        )
        return rows[0] if rows else None

    def failing_controls(self, user_id: str, framework_id: str) -> list[ControlResult]:
        latest = self.latest_assessment(user_id, framework_id)
        if latest is None:
            raise NotFoundError(f"No completed assessment for framework '{framework_id}'")
        return latest.failing_controls

    def export_assessment(self, user_id: str, assessment_id: str) -> AssessmentExport:
        assessment = self.get_assessment(user_id, assessment_id)
        try:
            framework = self.catalog.get(assessment.framework_id).to_dict()
        except NotFoundError:
            framework = {"id": assessment.framework_id, "name": assessment.framework_name}

        summary = ExportSummary(
            total_controls=assessment.total_controls,
            passed=assessment.passed_controls,
            failed=assessment.failed_controls,
            not_applicable=assessment.not_applicable_controls,
            score=assessment.compliance_percent,
        )
        for control in assessment.failing_controls:
            field_name = f"{control.severity.value}_count"
            if hasattr(summary, field_name):
                setattr(summary, field_name, getattr(summary, field_name) + 1)

        return AssessmentExport(
            assessment=assessment.to_dict(),
            framework=framework,
            findings=[f.to_dict() for f in assessment.findings],
            summary=summary,
            generated_at=utcnow(),
        )

    # ============================================================
    # Trend & overview
    # ============================================================

    def compute_trend(
        self, user_id: str, framework_id: str, points: int = DEFAULT_TREND_POINTS
    ) -> ComplianceTrend:
        completed = self.store.list_assessments(
            user_id, framework_id=framework_id, status=AssessmentStatus.COMPLETED, limit=points
        )
        trend = ComplianceTrend(
            framework_id=framework_id,
            data_points=[
                TrendPoint(
                    assessment_id=a.id,
                    date=a.started_at,
                    compliance_percent=a.compliance_percent or 0.0,
                    passed_controls=a.passed_controls,
                    total_controls=a.total_controls,
                )
                for a in reversed(completed)
            ],
        )
        if not completed:
            return trend

        trend.current_percent = completed[0].compliance_percent or 0.0
        if len(completed) > 1:
            trend.previous_percent = completed[1].compliance_percent or 0.0
            trend.trend, trend.change_percent = classify_trend(
                trend.current_percent,
                trend.previous_percent,
                self.settings.trend_threshold_percent,
            )
        return trend

    def get_compliance_overview(self, user_id: str) -> ComplianceOverview:
        overview = ComplianceOverview(user_id=user_id)
        failing: list[ControlResult] = []

        for framework in self.catalog.list_frameworks(enabled_only=True):
            latest = self.latest_assessment(user_id, framework.id)
            if latest is None:
                overview.unassessed_frameworks.append(framework.id)
                continue

            overview.by_framework.append(FrameworkCompliance(
                framework_id=framework.id,
                framework_name=framework.name,
                assessment_id=latest.id,
                total_controls=latest.total_controls,
                passed_controls=latest.passed_controls,
                failed_controls=latest.failed_controls,
                not_applicable_controls=latest.not_applicable_controls,
                compliance_percent=latest.compliance_percent or 0.0,
                last_assessment=latest.started_at,
                trend=self.compute_trend(user_id, framework.id),
            ))
            overview.total_controls += latest.total_controls
            overview.passed_controls += latest.passed_controls
            overview.failed_controls += latest.failed_controls
            overview.not_applicable_controls += latest.not_applicable_controls
            failing.extend(latest.failing_controls)

        overview.compliance_percent = compute_compliance_percent(
            overview.passed_controls, overview.failed_controls
        )
        overview.failing_by_severity = {s.value: 0 for s in Severity}
        for control in failing:
            overview.failing_by_severity[control.severity.value] += 1

        failing.sort(key=lambda c: (-c.severity.rank, -c.affected_count, c.framework_id, c.control_id))
        overview.top_failing_controls = [
            FailingControl(
                framework_id=c.framework_id,
                control_id=c.control_id,
                title=c.title,
                category=c.category,
                severity=c.severity.value,
                confidence=c.confidence.value if c.confidence else None,
                affected_count=c.affected_count,
                affected_resources=c.affected_resources,
                remediation=c.remediation,
            )
            for c in failing[: self.settings.top_failing_controls]
        ]
        return overview

    # ============================================================
    # Per-resource view
    # ============================================================

    def resource_compliance(self, user_id: str, resource_id: str) -> ResourceCompliance:
        """Controls a resource's open findings currently fail (or flag, at low confidence)."""
        findings = self.store.list_findings(
            user_id, resource_id=resource_id, statuses=OPEN_DRIFT_STATUSES
        )
        enabled = {f.id: f for f in self.catalog.list_frameworks(enabled_only=True)}

        statuses: dict[tuple[str, str], ResourceControlStatus] = {}
        for finding in findings:
            for mapping in self.mapper.controls_for(finding):
                framework = enabled.get(mapping.framework_id)
                control = framework.get_control(mapping.control_id) if framework else None
                if control is None:
                    continue
                key = (mapping.framework_id, mapping.control_id)
                status = "failed" if mapping.confidence.is_technical_evidence else "advisory"
                entry = statuses.get(key)
                if entry is None:
                    entry = statuses[key] = ResourceControlStatus(
                        framework_id=mapping.framework_id,
                        control_id=mapping.control_id,
                        title=control.title,
                        status=status,
                        confidence=mapping.confidence.value,
                        remediation=control.remediation,
                    )
                elif Confidence(entry.confidence).rank < mapping.confidence.rank:
                    entry.status = status
                    entry.confidence = mapping.confidence.value
                if finding.id not in entry.finding_ids:
                    entry.finding_ids.append(finding.id)

        resource_type = findings[0].resource_type if findings else ""
        provider = findings[0].provider if findings else ""
        if not findings:
            baselines = self.store.list_baselines(user_id, resource_id=resource_id)
            if baselines:
                resource_type, provider = baselines[0].resource_type, baselines[0].provider

        control_statuses = [statuses[k] for k in sorted(statuses)]
        failed = any(s.status == "failed" for s in control_statuses)
        return ResourceCompliance(
            user_id=user_id,
            resource_id=resource_id,
            resource_type=resource_type,
            provider=provider,
            overall_status="non_compliant" if failed else "compliant",
            control_statuses=control_statuses,
            open_findings=len(findings),
            last_checked=utcnow(),
        )
