"""
DriftScore - Drift Record Manager
Owns the drift finding lifecycle:

  detected --acknowledge--> acknowledged --resolve--> resolved
  detected --resolve--> resolved
  detected | acknowledged --ignore--> ignored

Resolved and ignored rows are terminal. A divergence that comes back after
resolution opens a new detected row; an ignored divergence stays quiet
until its change set differs from the one that was ignored, unless an open
row for the same drift type is there to take the new evidence.
"""

import logging
from typing import Iterable, Optional

from driftscore.config import Settings
from driftscore.detection.base import Resource
from driftscore.detection.differ import describe_changes, fingerprint_changes
from driftscore.detection.rules import RuleEvaluation
from driftscore.errors import InvalidTransitionError, NotFoundError, ValidationError
from driftscore.models import (
    DRIFT_TRANSITIONS,
    OPEN_DRIFT_STATUSES,
    DriftStatus,
    DriftType,
    Severity,
)
from driftscore.records import DriftFinding, FieldChange, utcnow
from driftscore.store.base import FindingStore

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SUPPRESSED = "suppressed"


class DriftRecordManager:

    def __init__(self, store: FindingStore, settings: Settings):
        self.store = store
        self.settings = settings

    # ============================================================
    # Detection-side writes
    # ============================================================

    def build_finding(
        self,
        user_id: str,
        resource: Resource,
        changes: Iterable[FieldChange],
        evaluation: RuleEvaluation,
    ) -> DriftFinding:
        """Classify a change set into an unsaved finding.

        Drift no rule recognises is still drift: it is recorded as a
        configuration_change at the configured unclassified severity.
        """
        changes = list(changes)
        primary = evaluation.primary
        if primary is not None:
            severity = evaluation.severity
            drift_type = primary.drift_type
        else:
            severity = Severity.parse(self.settings.unclassified_drift_severity)
            drift_type = DriftType.CONFIGURATION_CHANGE.value

        details = describe_changes(changes, severity)
        if primary is not None:
            details = f"{primary.title} ({primary.rule_id}). {details}"

        return DriftFinding(
            user_id=user_id,
            resource_id=resource.resource_id,
            resource_type=resource.resource_type,
            provider=resource.provider,
            drift_type=drift_type,
            severity=severity,
            changes=changes,
            matched_rules=evaluation.matched_rule_ids,
            primary_rule=primary.rule_id if primary else "",
            details=details,
            fingerprint=fingerprint_changes(changes),
        )

    def record(self, finding: DriftFinding) -> tuple[Optional[DriftFinding], str]:
        """Create or update-in-place the open finding for the finding's natural key.

        Returns (stored finding or None, outcome).
        """
        if self.settings.suppress_ignored_drift and self._is_ignored(finding):
            logger.debug(
                f"Ignored drift unchanged for {finding.resource_id} ({finding.drift_type}), not re-opened"
            )
            return None, SUPPRESSED

        stored, created = self.store.upsert_open_finding(finding)
        if created:
            logger.info(
                f"Drift detected: {stored.resource_id} {stored.drift_type} "
                f"severity={stored.severity.value} ({len(stored.changes)} changes)"
            )
            return stored, CREATED
        return stored, UPDATED

    def resolve_absent(
        self, user_id: str, resource_id: str, active_drift_types: Iterable[str]
    ) -> list[DriftFinding]:
        """Resolve open findings of a resource whose drift type was not detected this cycle.

        No-op unless auto_resolve_drift is on; then the divergence is gone
        and nothing needs a human.
        """
        if not self.settings.auto_resolve_drift:
            return []

        active = set(active_drift_types)
        resolved = []
        for finding in self.store.list_findings(
            user_id, resource_id=resource_id, statuses=OPEN_DRIFT_STATUSES
        ):
            if finding.drift_type in active:
                continue
            try:
                resolved.append(self._transition(user_id, finding.id, DriftStatus.RESOLVED))
            except InvalidTransitionError as e:
                # Closed by someone else between the read and the write.
                logger.info(f"Auto-resolve skipped: {e}")
                continue
            logger.info(f"Drift auto-resolved: {resource_id} {finding.drift_type} ({finding.id})")
        return resolved

    def _is_ignored(self, finding: DriftFinding) -> bool:
        """True when the change set matches an ignored row and no open row exists for the key.

        An open row always takes the new evidence, whatever was ignored before.
        """
        rows = self.store.list_findings(
            finding.user_id,
            resource_id=finding.resource_id,
            drift_type=finding.drift_type,
            statuses=(*OPEN_DRIFT_STATUSES, DriftStatus.IGNORED),
        )
        if any(f.status in OPEN_DRIFT_STATUSES for f in rows):
            return False
        return any(f.fingerprint == finding.fingerprint for f in rows)

    # ============================================================
    # Lifecycle
    # ============================================================

    def acknowledge(self, user_id: str, finding_id: str) -> DriftFinding:
        return self._transition(user_id, finding_id, DriftStatus.ACKNOWLEDGED)

    def resolve(self, user_id: str, finding_id: str) -> DriftFinding:
        return self._transition(user_id, finding_id, DriftStatus.RESOLVED)

    def ignore(self, user_id: str, finding_id: str) -> DriftFinding:
        return self._transition(user_id, finding_id, DriftStatus.IGNORED)

    def _transition(self, user_id: str, finding_id: str, target: DriftStatus) -> DriftFinding:
        finding = self.store.transition_finding(
            user_id,
            finding_id,
            target,
            allowed_from=DRIFT_TRANSITIONS[target],
            at=utcnow(),
        )
        logger.info(f"Drift finding {finding_id} -> {target.value}")
        return finding

    # ============================================================
    # Reads
    # ============================================================

    def get(self, user_id: str, finding_id: str) -> DriftFinding:
        finding = self.store.get_finding(user_id, finding_id)
        if finding is None:
            raise NotFoundError(f"Drift finding {finding_id} not found")
        return finding

    def list_findings(
        self,
        user_id: str,
        resource_id: Optional[str] = None,
        drift_type: Optional[str] = None,
        severity: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[DriftFinding]:
        statuses = None
        if status:
            try:
                statuses = (DriftStatus(status),)
            except ValueError:
                raise ValidationError(f"Unknown drift status '{status}'") from None
        if severity:
            severity = Severity.parse(severity).value
        return self.store.list_findings(
            user_id,
            resource_id=resource_id,
            drift_type=drift_type,
            severity=severity,
            statuses=statuses,
        )

    def open_findings(self, user_id: str) -> list[DriftFinding]:
        return self.store.list_findings(user_id, statuses=OPEN_DRIFT_STATUSES)

    def count_by_status(self, user_id: str) -> dict[str, int]:
        counts = {s.value: 0 for s in DriftStatus}
        counts.update(self.store.count_by_status(user_id))
        return counts

    def count_by_severity(self, user_id: str, open_only: bool = False) -> dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        counts.update(self.store.count_by_severity(user_id, open_only=open_only))
        return counts
