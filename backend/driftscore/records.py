"""
DriftScore - Domain Records
Plain dataclasses passed between the engine components and the stores.
Stores convert these to and from their own representation.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from driftscore.models import (
    AssessmentStatus,
    BaselineType,
    ChangeType,
    Confidence,
    ControlStatus,
    DriftStatus,
    Severity,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form the SQL store round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class FieldChange:
    """A single leaf-level difference between baseline and actual configuration."""

    field_path: str          # encryption.enabled, ingress.0.cidr
    old_value: Any
    new_value: Any
    change_type: ChangeType

    def to_dict(self) -> dict:
        return {
            "field_path": self.field_path,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "change_type": self.change_type.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FieldChange":
        return cls(
            field_path=data["field_path"],
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            change_type=ChangeType(data["change_type"]),
        )


@dataclass
class Baseline:
    """Stored configuration snapshot used as the comparison point."""

    user_id: str
    resource_id: str
    configuration: dict
    baseline_type: BaselineType = BaselineType.AUTOMATIC
    provider: str = ""
    resource_type: str = ""
    description: str = ""
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "resource_id": self.resource_id,
            "provider": self.provider,
            "resource_type": self.resource_type,
            "configuration": self.configuration,
            "baseline_type": self.baseline_type.value,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class DriftFinding:
    """A tracked divergence. Lifecycle: detected -> acknowledged -> resolved, or ignored."""

    user_id: str
    resource_id: str
    drift_type: str
    severity: Severity
    changes: list[FieldChange]
    resource_type: str = ""
    provider: str = ""
    status: DriftStatus = DriftStatus.DETECTED
    matched_rules: list[str] = field(default_factory=list)
    primary_rule: str = ""
    details: str = ""
    fingerprint: str = ""
    id: str = field(default_factory=new_id)
    detected_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    @property
    def natural_key(self) -> tuple[str, str, str]:
        return (self.user_id, self.resource_id, self.drift_type)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "provider": self.provider,
            "drift_type": self.drift_type,
            "severity": self.severity.value,
            "status": self.status.value,
            "changes": [c.to_dict() for c in self.changes],
            "matched_rules": list(self.matched_rules),
            "primary_rule": self.primary_rule,
            "details": self.details,
            "fingerprint": self.fingerprint,
            "detected_at": self.detected_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class ControlResult:
    """Outcome of one control within an assessment."""

    framework_id: str
    control_id: str
    title: str
    category: str
    severity: Severity
    status: ControlStatus
    confidence: Optional[Confidence] = None   # tier of the evidence that decided the status
    affected_resources: list[str] = field(default_factory=list)
    finding_ids: list[str] = field(default_factory=list)
    advisory_resources: list[str] = field(default_factory=list)   # low-confidence matches only
    remediation: str = ""

    @property
    def affected_count(self) -> int:
        return len(self.affected_resources)

    def to_dict(self) -> dict:
        return {
            "framework_id": self.framework_id,
            "control_id": self.control_id,
            "title": self.title,
            "category": self.category,
            "severity": self.severity.value,
            "status": self.status.value,
            "confidence": self.confidence.value if self.confidence else None,
            "affected_count": self.affected_count,
            "affected_resources": list(self.affected_resources),
            "finding_ids": list(self.finding_ids),
            "advisory_resources": list(self.advisory_resources),
            "remediation": self.remediation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ControlResult":
        confidence = data.get("confidence")
        return cls(
            framework_id=data["framework_id"],
            control_id=data["control_id"],
            title=data.get("title", ""),
            category=data.get("category", ""),
            severity=Severity(data["severity"]),
            status=ControlStatus(data["status"]),
            confidence=Confidence(confidence) if confidence else None,
            affected_resources=list(data.get("affected_resources", [])),
            finding_ids=list(data.get("finding_ids", [])),
            advisory_resources=list(data.get("advisory_resources", [])),
            remediation=data.get("remediation", ""),
        )


@dataclass
class Assessment:
    """A scored run of every control in one framework for one user."""

    user_id: str
    framework_id: str
    framework_name: str = ""
    status: AssessmentStatus = AssessmentStatus.RUNNING
    total_controls: int = 0
    passed_controls: int = 0
    failed_controls: int = 0
    not_applicable_controls: int = 0
    compliance_percent: Optional[float] = None
    findings: list[ControlResult] = field(default_factory=list)
    error: str = ""
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def failing_controls(self) -> list[ControlResult]:
        return [f for f in self.findings if f.status == ControlStatus.FAILED]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "framework_id": self.framework_id,
            "framework_name": self.framework_name,
            "status": self.status.value,
            "total_controls": self.total_controls,
            "passed_controls": self.passed_controls,
            "failed_controls": self.failed_controls,
            "not_applicable_controls": self.not_applicable_controls,
            "compliance_percent": self.compliance_percent,
            "findings": [f.to_dict() for f in self.findings],
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
