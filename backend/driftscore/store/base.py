"""
DriftScore - Store Interface
Persistence contract the engine depends on. Implementations: MemoryStore, SQLStore.

Writes that must not race are single atomic operations here:
  upsert_baseline / insert_baseline_if_absent  -> keyed by (user, resource, baseline_type)
  upsert_open_finding                           -> keyed by (user, resource, drift_type) among open rows
  transition_finding                            -> compare-and-set on status
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from driftscore.models import AssessmentStatus, BaselineType, DriftStatus
from driftscore.records import Assessment, Baseline, DriftFinding


class FindingStore(ABC):
    """Abstract persistence for baselines, drift findings and assessments."""

    # --- Baselines ---

    @abstractmethod
    def get_baseline(
        self, user_id: str, resource_id: str, baseline_type: BaselineType
    ) -> Optional[Baseline]:
        ...

    @abstractmethod
    def get_baseline_by_id(self, user_id: str, baseline_id: str) -> Optional[Baseline]:
        ...

    @abstractmethod
    def list_baselines(
        self,
        user_id: str,
        resource_id: Optional[str] = None,
        baseline_type: Optional[BaselineType] = None,
    ) -> list[Baseline]:
        ...

    @abstractmethod
    def upsert_baseline(self, baseline: Baseline) -> Baseline:
        """Insert, or replace configuration/description of the existing row for the key."""
        ...

    @abstractmethod
    def insert_baseline_if_absent(self, baseline: Baseline) -> Baseline:
        """Insert unless a row exists for the key. Returns whichever row is stored."""
        ...

    @abstractmethod
    def delete_baseline(self, user_id: str, baseline_id: str) -> bool:
        ...

    # --- Drift findings ---

    @abstractmethod
    def upsert_open_finding(self, finding: DriftFinding) -> tuple[DriftFinding, bool]:
        """Create a detected finding or update the open one in place.

        Returns (stored finding, created).
        """
        ...

    @abstractmethod
    def get_finding(self, user_id: str, finding_id: str) -> Optional[DriftFinding]:
        ...

    @abstractmethod
    def list_findings(
        self,
        user_id: str,
        resource_id: Optional[str] = None,
        drift_type: Optional[str] = None,
        severity: Optional[str] = None,
        statuses: Optional[Iterable[DriftStatus]] = None,
    ) -> list[DriftFinding]:
        """Findings ordered by detected_at, oldest first. One consistent read."""
        ...

    @abstractmethod
    def transition_finding(
        self,
        user_id: str,
        finding_id: str,
        target: DriftStatus,
        allowed_from: Iterable[DriftStatus],
        at: datetime,
    ) -> DriftFinding:
        """Atomically move a finding to target if its status is in allowed_from.

        Raises NotFoundError or InvalidTransitionError.
        """
        ...

    @abstractmethod
    def count_by_status(self, user_id: str) -> dict[str, int]:
        ...

    @abstractmethod
    def count_by_severity(self, user_id: str, open_only: bool = False) -> dict[str, int]:
        ...

    # --- Assessments ---

    @abstractmethod
    def append_assessment(self, assessment: Assessment) -> Assessment:
        ...

    @abstractmethod
    def finish_assessment(self, assessment: Assessment) -> Assessment:
        """Persist the final state of a running assessment. Completed rows never change."""
        ...

    @abstractmethod
    def get_assessment(self, user_id: str, assessment_id: str) -> Optional[Assessment]:
        ...

    @abstractmethod
    def list_assessments(
        self,
        user_id: str,
        framework_id: Optional[str] = None,
        status: Optional[AssessmentStatus] = None,
        limit: Optional[int] = None,
    ) -> list[Assessment]:
        """Newest first."""
        ...
