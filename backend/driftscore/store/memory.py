"""
DriftScore - In-Memory Store
Single-process store. One re-entrant lock makes every operation atomic and
every read a consistent snapshot; callers only ever see copies.
"""

import copy
import threading
from datetime import datetime
from typing import Optional

from driftscore.errors import InvalidTransitionError, NotFoundError, StoreError
from driftscore.models import AssessmentStatus, DriftStatus
from driftscore.records import Assessment, Baseline, DriftFinding, utcnow
from driftscore.store.base import FindingStore


class MemoryStore(FindingStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._baselines: dict[str, Baseline] = {}
        self._findings: dict[str, DriftFinding] = {}
        self._assessments: dict[str, Assessment] = {}
        self._assessment_seq: dict[str, int] = {}

    # --- Baselines ---

    def _find_baseline(self, user_id, resource_id, baseline_type) -> Optional[Baseline]:
        for b in self._baselines.values():
            if (b.user_id, b.resource_id, b.baseline_type) == (user_id, resource_id, baseline_type):
                return b
        return None

    def get_baseline(self, user_id, resource_id, baseline_type):
        with self._lock:
            return copy.deepcopy(self._find_baseline(user_id, resource_id, baseline_type))

    def get_baseline_by_id(self, user_id, baseline_id):
        with self._lock:
            b = self._baselines.get(baseline_id)
            if b is None or b.user_id != user_id:
                return None
            return copy.deepcopy(b)

    def list_baselines(self, user_id, resource_id=None, baseline_type=None):
        with self._lock:
            rows = [
                b for b in self._baselines.values()
                if b.user_id == user_id
                and (resource_id is None or b.resource_id == resource_id)
                and (baseline_type is None or b.baseline_type == baseline_type)
            ]
            rows.sort(key=lambda b: (b.resource_id, b.baseline_type.value))
            return copy.deepcopy(rows)

    def upsert_baseline(self, baseline):
        with self._lock:
            existing = self._find_baseline(baseline.user_id, baseline.resource_id, baseline.baseline_type)
            if existing is None:
                stored = copy.deepcopy(baseline)
                stored.updated_at = utcnow()
                self._baselines[stored.id] = stored
                return copy.deepcopy(stored)

            existing.configuration = copy.deepcopy(baseline.configuration)
            existing.description = baseline.description
            existing.provider = baseline.provider
            existing.resource_type = baseline.resource_type
            existing.updated_at = utcnow()
            return copy.deepcopy(existing)

    def insert_baseline_if_absent(self, baseline):
        with self._lock:
            existing = self._find_baseline(baseline.user_id, baseline.resource_id, baseline.baseline_type)
            if existing is not None:
                return copy.deepcopy(existing)
            stored = copy.deepcopy(baseline)
            self._baselines[stored.id] = stored
            return copy.deepcopy(stored)

    def delete_baseline(self, user_id, baseline_id):
        with self._lock:
            b = self._baselines.get(baseline_id)
            if b is None or b.user_id != user_id:
                return False
            del self._baselines[baseline_id]
            return True

    # --- Drift findings ---

    def upsert_open_finding(self, finding):
        with self._lock:
            for existing in self._findings.values():
                if existing.is_open and existing.natural_key == finding.natural_key:
                    existing.severity = finding.severity
                    existing.changes = copy.deepcopy(finding.changes)
                    existing.matched_rules = list(finding.matched_rules)
                    existing.primary_rule = finding.primary_rule
                    existing.details = finding.details
                    existing.fingerprint = finding.fingerprint
                    existing.resource_type = finding.resource_type
                    existing.provider = finding.provider
                    existing.updated_at = utcnow()
                    return copy.deepcopy(existing), False

            stored = copy.deepcopy(finding)
            stored.status = DriftStatus.DETECTED
            stored.resolved_at = None
            self._findings[stored.id] = stored
            return copy.deepcopy(stored), True

    def get_finding(self, user_id, finding_id):
        with self._lock:
            f = self._findings.get(finding_id)
            if f is None or f.user_id != user_id:
                return None
            return copy.deepcopy(f)

    def list_findings(self, user_id, resource_id=None, drift_type=None, severity=None, statuses=None):
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            rows = [
                f for f in self._findings.values()
                if f.user_id == user_id
                and (resource_id is None or f.resource_id == resource_id)
                and (drift_type is None or f.drift_type == drift_type)
                and (severity is None or f.severity.value == severity)
                and (wanted is None or f.status in wanted)
            ]
            rows.sort(key=lambda f: f.detected_at)
            return copy.deepcopy(rows)

    def transition_finding(self, user_id, finding_id, target, allowed_from, at: datetime):
        with self._lock:
            f = self._findings.get(finding_id)
            if f is None or f.user_id != user_id:
                raise NotFoundError(f"Drift finding {finding_id} not found")
            if f.status not in tuple(allowed_from):
                raise InvalidTransitionError(finding_id, f.status.value, target.value)
            f.status = target
            f.updated_at = at
            if target == DriftStatus.RESOLVED:
                f.resolved_at = at
            return copy.deepcopy(f)

    def count_by_status(self, user_id):
        counts: dict[str, int] = {}
        with self._lock:
            for f in self._findings.values():
                if f.user_id == user_id:
                    counts[f.status.value] = counts.get(f.status.value, 0) + 1
        return counts

    def count_by_severity(self, user_id, open_only=False):
        counts: dict[str, int] = {}
        with self._lock:
            for f in self._findings.values():
                if f.user_id != user_id or (open_only and not f.is_open):
                    continue
                counts[f.severity.value] = counts.get(f.severity.value, 0) + 1
        return counts

    # --- Assessments ---

    def append_assessment(self, assessment):
        with self._lock:
            if assessment.id in self._assessments:
                raise StoreError(f"Assessment {assessment.id} already exists")
            self._assessments[assessment.id] = copy.deepcopy(assessment)
            self._assessment_seq[assessment.id] = len(self._assessment_seq)
            return copy.deepcopy(assessment)

    def finish_assessment(self, assessment):
        with self._lock:
            current = self._assessments.get(assessment.id)
            if current is None:
                raise NotFoundError(f"Assessment {assessment.id} not found")
            if current.status != AssessmentStatus.RUNNING:
                raise StoreError(
                    f"Assessment {assessment.id} is {current.status.value}; only running assessments can be finished"
                )
            self._assessments[assessment.id] = copy.deepcopy(assessment)
            return copy.deepcopy(assessment)

    def get_assessment(self, user_id, assessment_id):
        with self._lock:
            a = self._assessments.get(assessment_id)
            if a is None or a.user_id != user_id:
                return None
            return copy.deepcopy(a)

    def list_assessments(self, user_id, framework_id=None, status=None, limit=None):
        with self._lock:
            rows = [
                a for a in self._assessments.values()
                if a.user_id == user_id
                and (framework_id is None or a.framework_id == framework_id)
                and (status is None or a.status == status)
            ]
            rows.sort(key=lambda a: (a.started_at, self._assessment_seq[a.id]), reverse=True)
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)
