"""
DriftScore - Database Models (SQLAlchemy ORM)
Same schema works on Postgres (production) and SQLite (tests, single node).
"""

import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Float, Integer, DateTime, Text, JSON, Index,
    UniqueConstraint, text,
)
from sqlalchemy.orm import DeclarativeBase

from driftscore.errors import ValidationError


class Base(DeclarativeBase):
    pass


# ============================================================
# Enums
# ============================================================

class Severity(str, PyEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value) -> "Severity":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown severity '{value}'") from None


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class DriftStatus(str, PyEnum):
    DETECTED = "detected"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    IGNORED = "ignored"

    @property
    def is_open(self) -> bool:
        return self in OPEN_DRIFT_STATUSES


OPEN_DRIFT_STATUSES = (DriftStatus.DETECTED, DriftStatus.ACKNOWLEDGED)

# target status -> statuses it may be entered from
DRIFT_TRANSITIONS = {
    DriftStatus.ACKNOWLEDGED: (DriftStatus.DETECTED,),
    DriftStatus.RESOLVED: (DriftStatus.DETECTED, DriftStatus.ACKNOWLEDGED),
    DriftStatus.IGNORED: (DriftStatus.DETECTED, DriftStatus.ACKNOWLEDGED),
}


class DriftType(str, PyEnum):
    CONFIGURATION_CHANGE = "configuration_change"
    SECURITY_GROUP = "security_group"
    IAM_POLICY = "iam_policy"
    NETWORK_RULE = "network_rule"
    ENCRYPTION = "encryption"
    COMPLIANCE = "compliance"


class BaselineType(str, PyEnum):
    MANUAL = "manual"        # Captured by an operator
    AUTOMATIC = "automatic"  # Created on first observation
    APPROVED = "approved"    # Signed-off configuration state


class ChangeType(str, PyEnum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class AssessmentStatus(str, PyEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ControlStatus(str, PyEnum):
    PASSED = "passed"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


class Confidence(str, PyEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]

    @property
    def is_technical_evidence(self) -> bool:
        """High/medium mappings can fail a control; low ones are advisory."""
        return self.rank >= Confidence.MEDIUM.rank


# Shared by the partial unique index and the upsert conflict target.
OPEN_FINDING_PREDICATE = "status IN ('detected', 'acknowledged')"


def _new_id() -> str:
    return str(uuid.uuid4())


# ============================================================
# Core Tables
# ============================================================

class StoredBaseline(Base):
    """Configuration snapshot a resource is compared against."""
    __tablename__ = "baselines"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(100), nullable=False)
    resource_id = Column(String(500), nullable=False)
    provider = Column(String(50), default="")               # aws, gcp, azure
    resource_type = Column(String(100), default="")
    configuration = Column(JSON, nullable=False)
    baseline_type = Column(String(20), nullable=False)      # manual, automatic, approved
    description = Column(Text, default="")

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "resource_id", "baseline_type", name="uq_baseline_resource_type"),
        Index("ix_baseline_user", "user_id"),
    )


class StoredDriftFinding(Base):
    """A detected divergence between a resource and its baseline."""
    __tablename__ = "drift_findings"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(100), nullable=False)
    resource_id = Column(String(500), nullable=False)
    resource_type = Column(String(100), default="")
    provider = Column(String(50), default="")
    drift_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=DriftStatus.DETECTED.value)

    # --- Evidence (kept whole for audit/export) ---
    changes = Column(JSON, nullable=False)                  # [{field_path, old_value, new_value, change_type}]
    matched_rules = Column(JSON, nullable=False)            # rule ids, declaration order
    primary_rule = Column(String(100), default="")
    details = Column(Text, default="")
    fingerprint = Column(String(64), nullable=False)

    detected_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime)

    __table_args__ = (
        # At most one open finding per natural key.
        Index(
            "uq_drift_open_finding", "user_id", "resource_id", "drift_type",
            unique=True,
            postgresql_where=text(OPEN_FINDING_PREDICATE),
            sqlite_where=text(OPEN_FINDING_PREDICATE),
        ),
        Index("ix_drift_user_status", "user_id", "status"),
        Index("ix_drift_user_severity", "user_id", "severity"),
    )


class StoredAssessment(Base):
    """One compliance assessment run. Immutable once completed."""
    __tablename__ = "compliance_assessments"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(100), nullable=False)
    framework_id = Column(String(50), nullable=False)
    framework_name = Column(String(200), default="")
    status = Column(String(20), nullable=False, default=AssessmentStatus.RUNNING.value)

    total_controls = Column(Integer, nullable=False, default=0)
    passed_controls = Column(Integer, nullable=False, default=0)
    failed_controls = Column(Integer, nullable=False, default=0)
    not_applicable_controls = Column(Integer, nullable=False, default=0)
    compliance_percent = Column(Float)                      # NULL unless completed
    findings = Column(JSON, nullable=False)                 # per-control results
    error = Column(Text, default="")

    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    sequence = Column(Integer, nullable=False, default=0)   # insertion order, breaks started_at ties

    __table_args__ = (
        Index("ix_assessment_user_framework", "user_id", "framework_id", "started_at"),
        Index("ix_assessment_status", "status"),
    )
