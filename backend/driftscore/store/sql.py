"""
DriftScore - SQL Store
SQLAlchemy-backed FindingStore for Postgres and SQLite.

Natural-key writes are single INSERT .. ON CONFLICT statements:
  baselines      -> uq_baseline_resource_type (user_id, resource_id, baseline_type)
  drift findings -> uq_drift_open_finding, partial on open statuses
Status changes are compare-and-set UPDATEs filtered on the current status,
so overlapping detection runs can never insert a duplicate open finding
or lose an update.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from driftscore.db.session import create_session_factory
from driftscore.errors import InvalidTransitionError, NotFoundError, StoreError
from driftscore.models import (
    OPEN_FINDING_PREDICATE,
    AssessmentStatus,
    BaselineType,
    DriftStatus,
    Severity,
    StoredAssessment,
    StoredBaseline,
    StoredDriftFinding,
)
from driftscore.records import (
    Assessment,
    Baseline,
    ControlResult,
    DriftFinding,
    FieldChange,
    utcnow,
)
from driftscore.store.base import FindingStore

logger = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_BASELINE_KEY = ["user_id", "resource_id", "baseline_type"]
_FINDING_KEY = ["user_id", "resource_id", "drift_type"]


class SQLStore(FindingStore):

    def __init__(self, engine: Engine):
        dialect = engine.dialect.name
        if dialect not in _INSERTS:
            raise StoreError(f"Unsupported database dialect '{dialect}' (postgresql or sqlite)")
        self.engine = engine
        self._insert = _INSERTS[dialect]
        self._session_factory = create_session_factory(engine)

    @contextmanager
    def _session(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Store operation failed: {e}")
            raise StoreError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ============================================================
    # Baselines
    # ============================================================

    def get_baseline(self, user_id, resource_id, baseline_type):
        with self._session() as session:
            row = session.execute(
                select(StoredBaseline).where(
                    StoredBaseline.user_id == user_id,
                    StoredBaseline.resource_id == resource_id,
                    StoredBaseline.baseline_type == baseline_type.value,
                )
            ).scalar_one_or_none()
            return _baseline(row) if row else None

    def get_baseline_by_id(self, user_id, baseline_id):
        with self._session() as session:
            row = session.get(StoredBaseline, baseline_id)
            if row is None or row.user_id != user_id:
                return None
            return _baseline(row)

    def list_baselines(self, user_id, resource_id=None, baseline_type=None):
        query = select(StoredBaseline).where(StoredBaseline.user_id == user_id)
        if resource_id is not None:
            query = query.where(StoredBaseline.resource_id == resource_id)
        if baseline_type is not None:
            query = query.where(StoredBaseline.baseline_type == baseline_type.value)
        query = query.order_by(StoredBaseline.resource_id, StoredBaseline.baseline_type)
        with self._session() as session:
            return [_baseline(r) for r in session.execute(query).scalars()]

    def upsert_baseline(self, baseline):
        now = utcnow()
        stmt = self._insert(StoredBaseline.__table__).values(**_baseline_values(baseline, updated_at=now))
        stmt = stmt.on_conflict_do_update(
            index_elements=_BASELINE_KEY,
            set_={
                "configuration": stmt.excluded.configuration,
                "description": stmt.excluded.description,
                "provider": stmt.excluded.provider,
                "resource_type": stmt.excluded.resource_type,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with self._session() as session:
            session.execute(stmt)
            return self._baseline_by_key(session, baseline)

    def insert_baseline_if_absent(self, baseline):
        stmt = self._insert(StoredBaseline.__table__).values(**_baseline_values(baseline))
        stmt = stmt.on_conflict_do_nothing(index_elements=_BASELINE_KEY)
        with self._session() as session:
            session.execute(stmt)
            return self._baseline_by_key(session, baseline)

    def delete_baseline(self, user_id, baseline_id):
        with self._session() as session:
            row = session.get(StoredBaseline, baseline_id)
            if row is None or row.user_id != user_id:
                return False
            session.delete(row)
            return True

    @staticmethod
    def _baseline_by_key(session, baseline: Baseline) -> Baseline:
        row = session.execute(
            select(StoredBaseline).where(
                StoredBaseline.user_id == baseline.user_id,
                StoredBaseline.resource_id == baseline.resource_id,
                StoredBaseline.baseline_type == baseline.baseline_type.value,
            )
        ).scalar_one()
        return _baseline(row)

    # ============================================================
    # Drift findings
    # ============================================================

    def upsert_open_finding(self, finding):
        now = utcnow()
        stmt = self._insert(StoredDriftFinding.__table__).values(
            id=finding.id,
            user_id=finding.user_id,
            resource_id=finding.resource_id,
            resource_type=finding.resource_type,
            provider=finding.provider,
            drift_type=finding.drift_type,
            severity=finding.severity.value,
            status=DriftStatus.DETECTED.value,
            changes=[c.to_dict() for c in finding.changes],
            matched_rules=list(finding.matched_rules),
            primary_rule=finding.primary_rule,
            details=finding.details,
            fingerprint=finding.fingerprint,
            detected_at=finding.detected_at,
            updated_at=now,
            resolved_at=None,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=_FINDING_KEY,
            index_where=text(OPEN_FINDING_PREDICATE),
            set_={
                "severity": stmt.excluded.severity,
                "changes": stmt.excluded.changes,
                "matched_rules": stmt.excluded.matched_rules,
                "primary_rule": stmt.excluded.primary_rule,
                "details": stmt.excluded.details,
                "fingerprint": stmt.excluded.fingerprint,
                "resource_type": stmt.excluded.resource_type,
                "provider": stmt.excluded.provider,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(StoredDriftFinding.__table__.c.id)

        with self._session() as session:
            stored_id = session.execute(stmt).scalar_one()
            row = session.get(StoredDriftFinding, stored_id)
            return _finding(row), stored_id == finding.id

    def get_finding(self, user_id, finding_id):
        with self._session() as session:
            row = session.get(StoredDriftFinding, finding_id)
            if row is None or row.user_id != user_id:
                return None
            return _finding(row)

    def list_findings(self, user_id, resource_id=None, drift_type=None, severity=None, statuses=None):
        query = select(StoredDriftFinding).where(StoredDriftFinding.user_id == user_id)
        if resource_id is not None:
            query = query.where(StoredDriftFinding.resource_id == resource_id)
        if drift_type is not None:
            query = query.where(StoredDriftFinding.drift_type == drift_type)
        if severity is not None:
            query = query.where(StoredDriftFinding.severity == severity)
        if statuses is not None:
            query = query.where(StoredDriftFinding.status.in_([s.value for s in statuses]))
        query = query.order_by(StoredDriftFinding.detected_at, StoredDriftFinding.id)
        with self._session() as session:
            return [_finding(r) for r in session.execute(query).scalars()]

    def transition_finding(self, user_id, finding_id, target, allowed_from, at):
        values = {"status": target.value, "updated_at": at}
        if target == DriftStatus.RESOLVED:
            values["resolved_at"] = at

        with self._session() as session:
            result = session.execute(
                update(StoredDriftFinding)
                .where(
                    StoredDriftFinding.id == finding_id,
                    StoredDriftFinding.user_id == user_id,
                    StoredDriftFinding.status.in_([s.value for s in allowed_from]),
                )
                .values(**values)
            )
            row = session.get(StoredDriftFinding, finding_id)
            if row is None or row.user_id != user_id:
                raise NotFoundError(f"Drift finding {finding_id} not found")
            if result.rowcount == 0:
                raise InvalidTransitionError(finding_id, row.status, target.value)
            return _finding(row)

    def count_by_status(self, user_id):
        query = (
            select(StoredDriftFinding.status, func.count())
            .where(StoredDriftFinding.user_id == user_id)
            .group_by(StoredDriftFinding.status)
        )
        with self._session() as session:
            return {status: count for status, count in session.execute(query)}

    def count_by_severity(self, user_id, open_only=False):
        query = select(StoredDriftFinding.severity, func.count()).where(
            StoredDriftFinding.user_id == user_id
        )
        if open_only:
            query = query.where(text(OPEN_FINDING_PREDICATE))
        query = query.group_by(StoredDriftFinding.severity)
        with self._session() as session:
            return {severity: count for severity, count in session.execute(query)}

    # ============================================================
    # Assessments
    # ============================================================

    def append_assessment(self, assessment):
        with self._session() as session:
            if session.get(StoredAssessment, assessment.id) is not None:
                raise StoreError(f"Assessment {assessment.id} already exists")
            sequence = session.scalar(select(func.coalesce(func.max(StoredAssessment.sequence), 0)))
            session.add(StoredAssessment(sequence=sequence + 1, **_assessment_values(assessment)))
        return assessment

    def finish_assessment(self, assessment):
        values = _assessment_values(assessment)
        values.pop("id")
        with self._session() as session:
            result = session.execute(
                update(StoredAssessment)
                .where(
                    StoredAssessment.id == assessment.id,
                    StoredAssessment.status == AssessmentStatus.RUNNING.value,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                row = session.get(StoredAssessment, assessment.id)
                if row is None:
                    raise NotFoundError(f"Assessment {assessment.id} not found")
                raise StoreError(
                    f"Assessment {assessment.id} is {row.status}; only running assessments can be finished"
                )
        return assessment

    def get_assessment(self, user_id, assessment_id):
        with self._session() as session:
            row = session.get(StoredAssessment, assessment_id)
            if row is None or row.user_id != user_id:
                return None
            return _assessment(row)

    def list_assessments(self, user_id, framework_id=None, status=None, limit=None):
        query = select(StoredAssessment).where(StoredAssessment.user_id == user_id)
        if framework_id is not None:
            query = query.where(StoredAssessment.framework_id == framework_id)
        if status is not None:
            query = query.where(StoredAssessment.status == status.value)
        query = query.order_by(
            StoredAssessment.started_at.desc(),
            StoredAssessment.sequence.desc(),
            StoredAssessment.id.desc(),
        )
        if limit is not None:
            query = query.limit(limit)
        with self._session() as session:
            return [_assessment(r) for r in session.execute(query).scalars()]


# ============================================================
# Row <-> record conversion
# ============================================================

def _baseline_values(baseline: Baseline, updated_at=None) -> dict:
    return {
        "id": baseline.id,
        "user_id": baseline.user_id,
        "resource_id": baseline.resource_id,
        "provider": baseline.provider,
        "resource_type": baseline.resource_type,
        "configuration": baseline.configuration,
        "baseline_type": baseline.baseline_type.value,
        "description": baseline.description,
        "created_at": baseline.created_at,
        "updated_at": updated_at or baseline.updated_at,
    }


def _baseline(row: StoredBaseline) -> Baseline:
    return Baseline(
        id=row.id,
        user_id=row.user_id,
        resource_id=row.resource_id,
        provider=row.provider or "",
        resource_type=row.resource_type or "",
        configuration=row.configuration,
        baseline_type=BaselineType(row.baseline_type),
        description=row.description or "",
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _finding(row: StoredDriftFinding) -> DriftFinding:
    return DriftFinding(
        id=row.id,
        user_id=row.user_id,
        resource_id=row.resource_id,
        resource_type=row.resource_type or "",
        provider=row.provider or "",
        drift_type=row.drift_type,
        severity=Severity(row.severity),
        status=DriftStatus(row.status),
        changes=[FieldChange.from_dict(c) for c in row.changes or []],
        matched_rules=list(row.matched_rules or []),
        primary_rule=row.primary_rule or "",
        details=row.details or "",
        fingerprint=row.fingerprint,
        detected_at=row.detected_at,
        updated_at=row.updated_at,
        resolved_at=row.resolved_at,
    )


def _assessment_values(assessment: Assessment) -> dict:
    return {
        "id": assessment.id,
        "user_id": assessment.user_id,
        "framework_id": assessment.framework_id,
        "framework_name": assessment.framework_name,
        "status": assessment.status.value,
        "total_controls": assessment.total_controls,
        "passed_controls": assessment.passed_controls,
        "failed_controls": assessment.failed_controls,
        "not_applicable_controls": assessment.not_applicable_controls,
        "compliance_percent": assessment.compliance_percent,
        "findings": [f.to_dict() for f in assessment.findings],
        "error": assessment.error,
        "started_at": assessment.started_at,
        "completed_at": assessment.completed_at,
    }


def _assessment(row: StoredAssessment) -> Assessment:
    return Assessment(
        id=row.id,
        user_id=row.user_id,
        framework_id=row.framework_id,
        framework_name=row.framework_name or "",
        status=AssessmentStatus(row.status),
        total_controls=row.total_controls,
        passed_controls=row.passed_controls,
        failed_controls=row.failed_controls,
        not_applicable_controls=row.not_applicable_controls,
        compliance_percent=row.compliance_percent,
        findings=[ControlResult.from_dict(f) for f in row.findings or []],
        error=row.error or "",
        started_at=row.started_at,
        completed_at=row.completed_at,
    )
