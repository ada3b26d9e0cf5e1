"""
DriftScore - Engine Facade Tests
Baseline, framework and control management through DriftScoreEngine,
plus an end-to-end detect -> assess -> overview cycle on the default datasets.
"""

import pytest

from conftest import USER, bucket, security_group
from driftscore.detection.base import Resource
from driftscore.errors import NotFoundError, ValidationError
from driftscore.models import BaselineType, ControlStatus


# ═══════════════════════════════════════
# Baselines
# ═══════════════════════════════════════

class TestEngineBaselines:
    def test_create_and_list(self, engine):
        baseline = engine.create_baseline(USER, bucket(), description="golden")
        assert baseline.baseline_type == BaselineType.MANUAL
        assert engine.get_baseline(USER, baseline.id).description == "golden"
        assert [b.id for b in engine.list_baselines(USER, baseline_type="manual")] == [baseline.id]

    def test_unknown_baseline_type(self, engine):
        with pytest.raises(ValidationError):
            engine.create_baseline(USER, bucket(), baseline_type="golden")
        with pytest.raises(ValidationError):
            engine.list_baselines(USER, baseline_type="golden")

    def test_invalid_resource(self, engine):
        with pytest.raises(ValidationError):
            engine.create_baseline(USER, Resource(resource_id=" "))

    def test_approve_existing_baseline(self, engine, provider):
        provider.set_resources(USER, [bucket()])
        engine.detect_drifts(USER)
        automatic = engine.list_baselines(USER)[0]

        approved = engine.approve_baseline(USER, automatic.id)
        assert approved.baseline_type == BaselineType.APPROVED
        assert approved.configuration == automatic.configuration

    def test_update_and_delete(self, engine):
        baseline = engine.create_baseline(USER, bucket())
        baseline.configuration = {"encryption": {"enabled": False}}
        assert engine.update_baseline(baseline).configuration == {"encryption": {"enabled": False}}
        engine.delete_baseline(USER, baseline.id)
        with pytest.raises(NotFoundError):
            engine.get_baseline(USER, baseline.id)

    def test_accepting_drift_as_new_baseline(self, engine, provider):
        provider.set_resources(USER, [bucket()])
        engine.detect_drifts(USER)
        provider.set_resources(USER, [bucket(encrypted=False)])
        engine.detect_drifts(USER)
        assert len(engine.list_drifts(USER, status="detected")) == 1

        engine.create_baseline(USER, bucket(encrypted=False), baseline_type="approved")
        report = engine.detect_drifts(USER)
        assert report.resolved == 1
        assert engine.list_drifts(USER, status="detected") == []


# ═══════════════════════════════════════
# Frameworks & controls
# ═══════════════════════════════════════

class TestEngineFrameworks:
    def test_list_and_get(self, engine):
        assert len(engine.list_frameworks()) == 3
        assert engine.get_framework("soc2-2017").name == "SOC 2 Type II"
        with pytest.raises(NotFoundError):
            engine.get_framework("hipaa")

    def test_disable_and_enable(self, engine):
        disabled = engine.disable_framework("nist-800-53-r5")
        assert disabled.enabled is False
        assert "nist-800-53-r5" not in [f.id for f in engine.list_frameworks(enabled_only=True)]

        enabled = engine.enable_framework("nist-800-53-r5")
        assert enabled.enabled is True
        assert len(engine.list_frameworks(enabled_only=True)) == 3

    def test_disable_unknown_framework(self, engine):
        with pytest.raises(NotFoundError):
            engine.disable_framework("hipaa")

    def test_list_controls_by_category(self, engine):
        controls = engine.list_controls("cis-aws-v1.5", category="Networking")
        assert [c.control_id for c in controls] == ["5.1", "5.2", "5.3", "5.4"]

    def test_control_details(self, engine):
        control, mappings = engine.get_control_details("nist-800-53-r5", "SC-28")
        assert control.title
        assert [m.rule_type for m in mappings] == ["encryption"]
        with pytest.raises(NotFoundError):
            engine.get_control_details("nist-800-53-r5", "ZZ-1")


# ═══════════════════════════════════════
# End to end on the shipped datasets
# ═══════════════════════════════════════

class TestEndToEnd:
    def test_detect_assess_overview(self, engine, provider):
        provider.set_resources(USER, [bucket(), security_group()])
        engine.detect_drifts(USER)
        for framework in ("cis-aws-v1.5", "nist-800-53-r5", "soc2-2017"):
            assert engine.run_assessment(USER, framework).failed_controls == 0

        provider.set_resources(USER, [bucket(encrypted=False), security_group(cidr="0.0.0.0/0")])
        report = engine.detect_drifts(USER)
        assert report.created == 2

        soc2 = engine.run_assessment(USER, "soc2-2017")
        by_control = {c.control_id: c for c in soc2.findings}
        assert by_control["CC6.6"].status == ControlStatus.FAILED
        assert by_control["CC6.6"].affected_resources == ["bucket-1"]
        assert by_control["CC6.1"].status == ControlStatus.FAILED
        assert by_control["CC6.1"].affected_resources == ["sg-1"]
        assert by_control["CC1.1"].status == ControlStatus.NOT_APPLICABLE

        overview = engine.get_compliance_overview(USER)
        assert overview.unassessed_frameworks == []
        assert len(overview.by_framework) == 3
        assert overview.failed_controls > 0
        assert overview.top_failing_controls[0].severity == "critical"

        trend = engine.get_compliance_trend(USER, "soc2-2017")
        assert trend.trend == "declining"
        assert len(trend.data_points) == 2

        export = engine.export_assessment(USER, soc2.id)
        assert export.summary.failed == soc2.failed_controls
        assert export.summary.critical_count >= 1
        assert export.model_dump()["framework"]["id"] == "soc2-2017"

        resource = engine.get_resource_compliance(USER, "bucket-1")
        assert resource.overall_status == "non_compliant"

    def test_report_serializes(self, engine, provider):
        provider.set_resources(USER, [bucket()])
        data = engine.detect_drifts(USER).to_dict()
        assert data["scanned"] == 1
        assert data["completed_at"] is not None

        summary = engine.get_drift_summary(USER).model_dump()
        assert summary["total"] == 0
