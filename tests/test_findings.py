"""
DriftScore - Drift Record Manager Tests
Dedupe, lifecycle transitions, auto-resolve, ignore suppression and counts.
"""

import threading

import pytest

from conftest import USER, bucket, security_group
from driftscore.detection.findings import CREATED, SUPPRESSED, UPDATED, DriftRecordManager
from driftscore.detection.rules import RuleEvaluation
from driftscore.errors import InvalidTransitionError, NotFoundError, ValidationError
from driftscore.models import DriftStatus, Severity


def _scan(engine, provider, *resources):
    provider.set_resources(USER, resources)
    return engine.detect_drifts(USER)


# ═══════════════════════════════════════
# Dedupe
# ═══════════════════════════════════════

class TestDedupe:
    def test_repeated_detection_updates_one_row(self, engine, provider):
        _scan(engine, provider, bucket())
        first = _scan(engine, provider, bucket(encrypted=False))
        second = _scan(engine, provider, bucket(encrypted=False))

        assert first.created == 1
        assert second.created == 0
        assert second.updated == 1

        findings = engine.list_drifts(USER)
        assert len(findings) == 1
        assert findings[0].status == DriftStatus.DETECTED
        assert findings[0].drift_type == "encryption"
        assert findings[0].severity == Severity.CRITICAL

    def test_update_refreshes_evidence(self, engine, provider):
        _scan(engine, provider, bucket())
        _scan(engine, provider, bucket(encrypted=False))
        before = engine.list_drifts(USER)[0]

        _scan(engine, provider, bucket(encrypted=False, tags={"env": "prod"}))
        after = engine.list_drifts(USER)[0]

        assert after.id == before.id
        assert len(after.changes) == 2
        assert after.fingerprint != before.fingerprint
        assert after.updated_at >= before.updated_at
        assert "tags_changed" in after.matched_rules

    def test_acknowledged_finding_is_updated_not_duplicated(self, engine, provider):
        _scan(engine, provider, bucket())
        _scan(engine, provider, bucket(encrypted=False))
        finding = engine.list_drifts(USER)[0]
        engine.acknowledge_drift(USER, finding.id)

        _scan(engine, provider, bucket(encrypted=False))
        findings = engine.list_drifts(USER)
        assert len(findings) == 1
        assert findings[0].status == DriftStatus.ACKNOWLEDGED

    def test_concurrent_records_keep_one_open_row(self, store, settings):
        manager = DriftRecordManager(store, settings)
        resource = bucket(encrypted=False)
        outcomes = []

        def record():
            finding = manager.build_finding(USER, resource, [], RuleEvaluation())
            outcomes.append(manager.record(finding)[1])

        threads = [threading.Thread(target=record) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(CREATED) == 1
        assert outcomes.count(UPDATED) == 7
        assert len(manager.open_findings(USER)) == 1


# ═══════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════

class TestLifecycle:
    @pytest.fixture
    def finding(self, engine, provider):
        _scan(engine, provider, bucket())
        _scan(engine, provider, bucket(encrypted=False))
        return engine.list_drifts(USER)[0]

    def test_acknowledge_then_resolve(self, engine, finding):
        acked = engine.acknowledge_drift(USER, finding.id)
        assert acked.status == DriftStatus.ACKNOWLEDGED
        assert acked.resolved_at is None

        resolved = engine.resolve_drift(USER, finding.id)
        assert resolved.status == DriftStatus.RESOLVED
        assert resolved.resolved_at is not None

    def test_resolve_directly(self, engine, finding):
        assert engine.resolve_drift(USER, finding.id).status == DriftStatus.RESOLVED

    def test_ignore_from_acknowledged(self, engine, finding):
        engine.acknowledge_drift(USER, finding.id)
        assert engine.ignore_drift(USER, finding.id).status == DriftStatus.IGNORED

    def test_terminal_states_reject_transitions(self, engine, finding):
        engine.resolve_drift(USER, finding.id)
        with pytest.raises(InvalidTransitionError):
            engine.acknowledge_drift(USER, finding.id)
        with pytest.raises(InvalidTransitionError):
            engine.ignore_drift(USER, finding.id)
        with pytest.raises(InvalidTransitionError):
            engine.resolve_drift(USER, finding.id)

    def test_cannot_acknowledge_twice(self, engine, finding):
        engine.acknowledge_drift(USER, finding.id)
        with pytest.raises(InvalidTransitionError) as exc:
            engine.acknowledge_drift(USER, finding.id)
        assert exc.value.current == "acknowledged"

    def test_other_user_gets_not_found(self, engine, finding):
        with pytest.raises(NotFoundError):
            engine.get_drift("user-2", finding.id)
        with pytest.raises(NotFoundError):
            engine.resolve_drift("user-2", finding.id)
        assert engine.get_drift(USER, finding.id).status == DriftStatus.DETECTED

    def test_resolved_drift_that_returns_opens_new_row(self, engine, provider, finding):
        engine.resolve_drift(USER, finding.id)
        report = _scan(engine, provider, bucket(encrypted=False))
        assert report.created == 1

        rows = engine.list_drifts(USER)
        assert len(rows) == 2
        statuses = {r.id: r.status for r in rows}
        assert statuses[finding.id] == DriftStatus.RESOLVED
        assert sorted(s.value for s in statuses.values()) == ["detected", "resolved"]


# ═══════════════════════════════════════
# Auto-resolve & suppression
# ═══════════════════════════════════════

class TestAutoResolve:
    def test_drift_that_disappears_is_resolved(self, engine, provider):
        _scan(engine, provider, bucket())
        _scan(engine, provider, bucket(encrypted=False))
        report = _scan(engine, provider, bucket())

        assert report.resolved == 1
        finding = engine.list_drifts(USER)[0]
        assert finding.status == DriftStatus.RESOLVED
        assert finding.resolved_at is not None

    def test_disabled_auto_resolve_leaves_finding_open(self, make_engine, provider):
        engine = make_engine(auto_resolve_drift=False)
        _scan(engine, provider, bucket())
        _scan(engine, provider, bucket(encrypted=False))
        report = _scan(engine, provider, bucket())

        assert report.resolved == 0
        assert engine.list_drifts(USER)[0].status == DriftStatus.DETECTED

    def test_drift_type_change_resolves_previous_type(self, engine, provider):
        _scan(engine, provider, bucket(tags={"env": "prod"}))
        _scan(engine, provider, bucket(tags={"env": "dev"}))
        assert engine.list_drifts(USER)[0].drift_type == "configuration_change"

        report = _scan(engine, provider, bucket(encrypted=False, tags={"env": "dev"}))
        assert report.created == 1
        assert report.resolved == 1
        open_types = {f.drift_type for f in engine.list_drifts(USER, status="detected")}
        assert open_types == {"encryption"}

    def test_only_the_scanned_resource_is_resolved(self, engine, provider):
        _scan(engine, provider, bucket("b1"), bucket("b2"))
        _scan(engine, provider, bucket("b1", encrypted=False), bucket("b2", encrypted=False))
        _scan(engine, provider, bucket("b1"), bucket("b2", encrypted=False))

        by_resource = {f.resource_id: f.status for f in engine.list_drifts(USER)}
        assert by_resource == {"b1": DriftStatus.RESOLVED, "b2": DriftStatus.DETECTED}


class TestIgnoreSuppression:
    def test_ignored_drift_stays_quiet(self, engine, provider):
        _scan(engine, provider, bucket())
        _scan(engine, provider, bucket(encrypted=False))
        finding = engine.list_drifts(USER)[0]
        engine.ignore_drift(USER, finding.id)

        report = _scan(engine, provider, bucket(encrypted=False))
        assert report.suppressed == 1
        assert report.created == 0
        assert len(engine.list_drifts(USER)) == 1

    def test_new_divergence_after_ignore_is_reported(self, engine, provider):
        _scan(engine, provider, bucket())
        _scan(engine, provider, bucket(encrypted=False))
        engine.ignore_drift(USER, engine.list_drifts(USER)[0].id)

        report = _scan(engine, provider, bucket(encrypted=False, versioning={"enabled": False}))
        assert report.created == 1
        assert len(engine.list_drifts(USER, status="detected")) == 1

    def test_suppression_can_be_turned_off(self, make_engine, provider):
        engine = make_engine(suppress_ignored_drift=False)
        _scan(engine, provider, bucket())
        _scan(engine, provider, bucket(encrypted=False))
        engine.ignore_drift(USER, engine.list_drifts(USER)[0].id)

        report = _scan(engine, provider, bucket(encrypted=False))
        assert report.created == 1

    def test_open_row_takes_evidence_matching_an_ignored_change_set(self, engine, provider):
        _scan(engine, provider, bucket())
        _scan(engine, provider, bucket(encrypted=False))
        engine.ignore_drift(USER, engine.list_drifts(USER)[0].id)
        _scan(engine, provider, bucket(encrypted=False, versioning={"enabled": False}))
        open_row = engine.list_drifts(USER, status="detected")[0]
        assert [c.field_path for c in open_row.changes] == ["encryption.enabled", "versioning.enabled"]

        report = _scan(engine, provider, bucket(encrypted=False))
        assert report.suppressed == 0
        assert report.updated == 1

        refreshed = engine.get_drift(USER, open_row.id)
        assert refreshed.status == DriftStatus.DETECTED
        assert [c.field_path for c in refreshed.changes] == ["encryption.enabled"]


# ═══════════════════════════════════════
# Queries & summary
# ═══════════════════════════════════════

class TestQueries:
    def test_filters(self, engine, provider):
        _scan(engine, provider, bucket(), security_group())
        _scan(engine, provider, bucket(encrypted=False), security_group(cidr="0.0.0.0/0"))

        assert len(engine.list_drifts(USER)) == 2
        assert [f.resource_id for f in engine.list_drifts(USER, resource_id="sg-1")] == ["sg-1"]
        assert [f.drift_type for f in engine.list_drifts(USER, drift_type="encryption")] == ["encryption"]
        assert len(engine.list_drifts(USER, severity="CRITICAL")) == 2
        assert engine.list_drifts(USER, status="resolved") == []

    def test_invalid_filters_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.list_drifts(USER, status="closed")
        with pytest.raises(ValidationError):
            engine.list_drifts(USER, severity="urgent")

    def test_summary_counts(self, engine, provider):
        _scan(engine, provider, bucket(), security_group(), bucket("b2", tags={"env": "a"}))
        _scan(
            engine, provider,
            bucket(encrypted=False), security_group(cidr="0.0.0.0/0"), bucket("b2", tags={"env": "b"}),
        )
        sg = engine.list_drifts(USER, resource_id="sg-1")[0]
        engine.resolve_drift(USER, sg.id)

        summary = engine.get_drift_summary(USER)
        assert summary.total == 3
        assert summary.open == 2
        assert summary.by_status == {"detected": 2, "acknowledged": 0, "resolved": 1, "ignored": 0}
        assert summary.by_severity["critical"] == 2
        assert summary.by_severity["info"] == 1
        assert summary.open_by_severity["critical"] == 1
        assert summary.open_by_severity["info"] == 1
        assert set(summary.by_severity) == {"critical", "high", "medium", "low", "info"}

    def test_empty_summary(self, engine):
        summary = engine.get_drift_summary("nobody")
        assert summary.total == 0
        assert summary.open == 0
        assert all(v == 0 for v in summary.by_severity.values())
