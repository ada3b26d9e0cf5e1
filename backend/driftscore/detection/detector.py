"""
DriftScore - Drift Detector
Runs one detection cycle for a user:

  provider -> baseline (get or create) -> diff -> rules -> record / auto-resolve

Diffing and rule evaluation are pure, so resources fan out over a thread
pool. The only shared state is the store, whose natural-key upsert keeps
overlapping runs from duplicating findings. A failing resource is reported
in the run's error list and never stops the others.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from driftscore.config import Settings
from driftscore.detection.base import Resource, ResourceProvider
from driftscore.detection.baselines import BaselineManager
from driftscore.detection.differ import diff_configurations
from driftscore.detection.findings import CREATED, SUPPRESSED, UPDATED, DriftRecordManager
from driftscore.detection.rules import RulesEngine
from driftscore.errors import DriftScoreError
from driftscore.records import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ResourceError:
    """One resource that could not be processed in a detection run."""

    resource_id: str
    error_type: str
    message: str

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass
class ResourceOutcome:
    resource_id: str
    outcome: Optional[str] = None            # created, updated, suppressed; None = no drift
    finding_id: Optional[str] = None
    resolved: int = 0


@dataclass
class DetectionReport:
    """Counts for one detection run."""

    user_id: str
    scanned: int = 0
    created: int = 0
    updated: int = 0
    resolved: int = 0
    suppressed: int = 0
    errors: list[ResourceError] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def drifted(self) -> int:
        return self.created + self.updated + self.suppressed

    def add(self, outcome: ResourceOutcome) -> None:
        self.scanned += 1
        self.resolved += outcome.resolved
        if outcome.outcome == CREATED:
            self.created += 1
        elif outcome.outcome == UPDATED:
            self.updated += 1
        elif outcome.outcome == SUPPRESSED:
            self.suppressed += 1

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "scanned": self.scanned,
            "created": self.created,
            "updated": self.updated,
            "resolved": self.resolved,
            "suppressed": self.suppressed,
            "errors": [e.to_dict() for e in self.errors],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class DriftDetector:
    """Detects configuration drift across every resource a user owns."""

    def __init__(
        self,
        provider: ResourceProvider,
        baselines: BaselineManager,
        rules: RulesEngine,
        findings: DriftRecordManager,
        settings: Settings,
    ):
        self.provider = provider
        self.baselines = baselines
        self.rules = rules
        self.findings = findings
        self._max_workers = max(1, settings.detection_workers)

    def detect_drifts(self, user_id: str) -> DetectionReport:
        report = DetectionReport(user_id=user_id)
        resources = self.provider.list_resources(user_id)
        logger.info(
            f"Drift detection started for user {user_id}: {len(resources)} resources "
            f"from {self.provider.provider_name}"
        )

        if resources:
            workers = min(self._max_workers, len(resources))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self.check_resource, user_id, resource): resource
                    for resource in resources
                }
                for future in as_completed(futures):
                    resource = futures[future]
                    resource_id = getattr(resource, "resource_id", "") or "<unknown>"
                    try:
                        report.add(future.result())
                    except DriftScoreError as e:
                        logger.error(f"Drift check failed for {resource_id}: {e}")
                        report.errors.append(ResourceError(resource_id, type(e).__name__, str(e)))
                    except Exception as e:
                        logger.exception(f"Unexpected error checking {resource_id}")
                        report.errors.append(ResourceError(resource_id, type(e).__name__, str(e)))

        report.errors.sort(key=lambda e: e.resource_id)
        report.completed_at = utcnow()
        logger.info(
            f"Drift detection finished for user {user_id}: scanned={report.scanned} "
            f"created={report.created} updated={report.updated} resolved={report.resolved} "
            f"suppressed={report.suppressed} errors={len(report.errors)}"
        )
        return report

    def check_resource(self, user_id: str, resource: Resource) -> ResourceOutcome:
        """Diff one resource against its baseline and record the result."""
        resource.validate()
        baseline = self.baselines.get_or_create(user_id, resource)
        diff = diff_configurations(baseline.configuration, resource.configuration)

        outcome = ResourceOutcome(resource_id=resource.resource_id)
        active_drift_types = set()
        if diff.has_drift:
            evaluation = self.rules.evaluate(
                resource.resource_type,
                resource.provider,
                changes=diff.changes,
                configuration=resource.configuration,
            )
            finding = self.findings.build_finding(user_id, resource, diff.changes, evaluation)
            stored, outcome.outcome = self.findings.record(finding)
            outcome.finding_id = stored.id if stored else None
            active_drift_types.add(finding.drift_type)

        outcome.resolved = len(
            self.findings.resolve_absent(user_id, resource.resource_id, active_drift_types)
        )
        return outcome
