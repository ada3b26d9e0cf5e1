"""
DriftScore - Engine
Single entry point for presentation layers and schedulers.

  detect_drifts(user)            -> DetectionReport
  get_drift_summary(user)        -> DriftSummary
  run_assessment(user, fw)       -> Assessment
  get_compliance_overview(user)  -> ComplianceOverview

plus baseline, finding, framework and assessment management.
Reference datasets are loaded once from settings; the store and the
resource provider are injected.
"""

import logging
import threading
from typing import Optional

from driftscore.compliance.assessment import AssessmentEngine
from driftscore.compliance.catalog import Control, Framework, FrameworkCatalog, load_catalog
from driftscore.compliance.mapper import ControlMapper, ControlMapping, load_mapper
from driftscore.config import Settings, configure_logging, get_settings
from driftscore.detection.base import Resource, ResourceProvider, StaticResourceProvider
from driftscore.detection.baselines import BaselineManager
from driftscore.detection.detector import DetectionReport, DriftDetector
from driftscore.detection.findings import DriftRecordManager
from driftscore.detection.rules import RuleSet, RulesEngine, load_ruleset
from driftscore.errors import NotFoundError, ValidationError
from driftscore.models import BaselineType
from driftscore.records import Assessment, Baseline, ControlResult, DriftFinding
from driftscore.schemas import (
    AssessmentExport,
    ComplianceOverview,
    ComplianceTrend,
    DriftSummary,
    ResourceCompliance,
)
from driftscore.store.base import FindingStore
from driftscore.store.factory import create_store

logger = logging.getLogger(__name__)


class DriftScoreEngine:

    def __init__(
        self,
        store: FindingStore,
        provider: ResourceProvider,
        settings: Optional[Settings] = None,
        ruleset: Optional[RuleSet] = None,
        catalog: Optional[FrameworkCatalog] = None,
        mapper: Optional[ControlMapper] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.provider = provider

        if ruleset is None:
            ruleset = load_ruleset(self.settings.security_rules_path)
        if catalog is None:
            catalog = load_catalog(self.settings.frameworks_path, self.settings.enabled_framework_list)
        if mapper is None:
            mapper = load_mapper(self.settings.control_mappings_path)

        self.rules = RulesEngine(ruleset)
        self.baselines = BaselineManager(store)
        self.findings = DriftRecordManager(store, self.settings)
        self.detector = DriftDetector(provider, self.baselines, self.rules, self.findings, self.settings)
        self.assessments = AssessmentEngine(store, catalog, mapper, self.settings)
        self._catalog_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, provider: Optional[ResourceProvider] = None
    ) -> "DriftScoreEngine":
        settings = settings or get_settings()
        configure_logging(settings)
        return cls(
            store=create_store(settings),
            provider=provider or StaticResourceProvider(),
            settings=settings,
        )

    # ============================================================
    # Core operations
    # ============================================================

    def detect_drifts(self, user_id: str) -> DetectionReport:
        return self.detector.detect_drifts(user_id)

    def get_drift_summary(self, user_id: str) -> DriftSummary:
        by_status = self.findings.count_by_status(user_id)
        return DriftSummary(
            user_id=user_id,
            total=sum(by_status.values()),
            open=by_status.get("detected", 0) + by_status.get("acknowledged", 0),
            by_severity=self.findings.count_by_severity(user_id),
            open_by_severity=self.findings.count_by_severity(user_id, open_only=True),
            by_status=by_status,
        )

    def run_assessment(self, user_id: str, framework_id: str) -> Assessment:
        return self.assessments.run_assessment(user_id, framework_id)

    def get_compliance_overview(self, user_id: str) -> ComplianceOverview:
        return self.assessments.get_compliance_overview(user_id)

    # ============================================================
    # Baselines
    # ============================================================

    def list_baselines(
        self, user_id: str, resource_id: Optional[str] = None, baseline_type: Optional[str] = None
    ) -> list[Baseline]:
        return self.baselines.list(
            user_id, resource_id=resource_id,
            baseline_type=_baseline_type(baseline_type) if baseline_type else None,
        )

    def get_baseline(self, user_id: str, baseline_id: str) -> Baseline:
        return self.baselines.get(user_id, baseline_id)

    def create_baseline(
        self,
        user_id: str,
        resource: Resource,
        baseline_type: str = BaselineType.MANUAL.value,
        description: str = "",
    ) -> Baseline:
        resource.validate()
        return self.baselines.create(
            user_id,
            resource.resource_id,
            resource.configuration,
            baseline_type=_baseline_type(baseline_type),
            provider=resource.provider,
            resource_type=resource.resource_type,
            description=description,
        )

    def update_baseline(self, baseline: Baseline) -> Baseline:
        return self.baselines.update(baseline)

    def delete_baseline(self, user_id: str, baseline_id: str) -> None:
        self.baselines.delete(user_id, baseline_id)

    def approve_baseline(self, user_id: str, baseline_id: str, description: str = "") -> Baseline:
        return self.baselines.promote(user_id, baseline_id, description)

    # ============================================================
    # Drift findings
    # ============================================================

    def list_drifts(
        self,
        user_id: str,
        resource_id: Optional[str] = None,
        drift_type: Optional[str] = None,
        severity: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[DriftFinding]:
        return self.findings.list_findings(
            user_id, resource_id=resource_id, drift_type=drift_type,
            severity=severity, status=status,
        )

    def get_drift(self, user_id: str, finding_id: str) -> DriftFinding:
        return self.findings.get(user_id, finding_id)

    def acknowledge_drift(self, user_id: str, finding_id: str) -> DriftFinding:
        return self.findings.acknowledge(user_id, finding_id)

    def resolve_drift(self, user_id: str, finding_id: str) -> DriftFinding:
        return self.findings.resolve(user_id, finding_id)

    def ignore_drift(self, user_id: str, finding_id: str) -> DriftFinding:
        return self.findings.ignore(user_id, finding_id)

    # ============================================================
    # Frameworks & controls
    # ============================================================

    @property
    def catalog(self) -> FrameworkCatalog:
        return self.assessments.catalog

    def list_frameworks(self, enabled_only: bool = False) -> list[Framework]:
        return self.catalog.list_frameworks(enabled_only=enabled_only)

    def get_framework(self, framework_id: str) -> Framework:
        return self.catalog.get(framework_id)

    def enable_framework(self, framework_id: str) -> Framework:
        return self._set_enabled(framework_id, True)

    def disable_framework(self, framework_id: str) -> Framework:
        return self._set_enabled(framework_id, False)

    def _set_enabled(self, framework_id: str, enabled: bool) -> Framework:
        with self._catalog_lock:
            catalog = self.catalog
            catalog.get(framework_id)
            ids = {f.id for f in catalog.list_frameworks(enabled_only=True)}
            if enabled:
                ids.add(framework_id)
            else:
                ids.discard(framework_id)
            self.assessments.catalog = catalog.with_enabled(ids)
        logger.info(f"Compliance framework {framework_id} {'enabled' if enabled else 'disabled'}")
        return self.catalog.get(framework_id)

    def list_controls(self, framework_id: str, category: Optional[str] = None) -> list[Control]:
        return self.catalog.get(framework_id).list_controls(category)

    def get_control_details(
        self, framework_id: str, control_id: str
    ) -> tuple[Control, list[ControlMapping]]:
        control = self.catalog.get(framework_id).get_control(control_id)
        if control is None:
            raise NotFoundError(f"Control '{control_id}' not found in framework '{framework_id}'")
        return control, self.assessments.mapper.for_control(framework_id, control_id)

    # ============================================================
    # Assessments
    # ============================================================

    def list_assessments(
        self, user_id: str, framework_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[Assessment]:
        return self.assessments.list_assessments(user_id, framework_id, limit)

    def get_assessment(self, user_id: str, assessment_id: str) -> Assessment:
        return self.assessments.get_assessment(user_id, assessment_id)

    def get_latest_assessment(self, user_id: str, framework_id: str) -> Assessment:
        latest = self.assessments.latest_assessment(user_id, framework_id)
        if latest is None:
            raise NotFoundError(f"No completed assessment for framework '{framework_id}'")
        return latest

    def get_failing_controls(self, user_id: str, framework_id: str) -> list[ControlResult]:
        return self.assessments.failing_controls(user_id, framework_id)

    def get_compliance_trend(self, user_id: str, framework_id: str, points: int = 30) -> ComplianceTrend:
        self.catalog.get(framework_id)
        return self.assessments.compute_trend(user_id, framework_id, points)

    def export_assessment(self, user_id: str, assessment_id: str) -> AssessmentExport:
        return self.assessments.export_assessment(user_id, assessment_id)

    def get_resource_compliance(self, user_id: str, resource_id: str) -> ResourceCompliance:
        return self.assessments.resource_compliance(user_id, resource_id)


def _baseline_type(value: str) -> BaselineType:
    try:
        return BaselineType(value)
    except ValueError:
        raise ValidationError(f"Unknown baseline type '{value}'") from None
