"""
DriftScore - Report Schemas (Pydantic)
Read models returned by the engine facade. Presentation layers serialize
these directly with model_dump() / model_dump_json().
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# ============================================================
# Drift
# ============================================================

class DriftSummary(BaseModel):
    user_id: str
    total: int = 0
    open: int = 0
    by_severity: dict[str, int] = Field(description="All findings, by severity")
    open_by_severity: dict[str, int] = Field(description="Detected + acknowledged findings, by severity")
    by_status: dict[str, int]


# ============================================================
# Compliance
# ============================================================

class TrendPoint(BaseModel):
    assessment_id: str
    date: datetime
    compliance_percent: float = Field(ge=0, le=100)
    passed_controls: int
    total_controls: int


class ComplianceTrend(BaseModel):
    framework_id: str
    trend: str = "stable"                    # improving, declining, stable
    current_percent: Optional[float] = None
    previous_percent: Optional[float] = None
    change_percent: float = 0.0
    data_points: list[TrendPoint] = []


class FailingControl(BaseModel):
    framework_id: str
    control_id: str
    title: str
    category: str
    severity: str
    confidence: Optional[str] = None
    affected_count: int
    affected_resources: list[str] = []
    remediation: str = ""


class FrameworkCompliance(BaseModel):
    framework_id: str
    framework_name: str
    assessment_id: str
    total_controls: int
    passed_controls: int
    failed_controls: int
    not_applicable_controls: int
    compliance_percent: float = Field(ge=0, le=100)
    last_assessment: datetime
    trend: ComplianceTrend


class ComplianceOverview(BaseModel):
    user_id: str
    total_controls: int = 0
    passed_controls: int = 0
    failed_controls: int = 0
    not_applicable_controls: int = 0
    compliance_percent: float = Field(default=0.0, ge=0, le=100)
    by_framework: list[FrameworkCompliance] = []
    failing_by_severity: dict[str, int] = {}
    top_failing_controls: list[FailingControl] = []
    unassessed_frameworks: list[str] = []


class ExportSummary(BaseModel):
    total_controls: int
    passed: int
    failed: int
    not_applicable: int
    score: Optional[float] = None
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0


class AssessmentExport(BaseModel):
    assessment: dict
    framework: dict
    findings: list[dict]
    summary: ExportSummary
    generated_at: datetime


class ResourceControlStatus(BaseModel):
    framework_id: str
    control_id: str
    title: str
    status: str                              # failed, advisory
    confidence: str
    finding_ids: list[str] = []
    remediation: str = ""


class ResourceCompliance(BaseModel):
    user_id: str
    resource_id: str
    resource_type: str = ""
    provider: str = ""
    overall_status: str                      # compliant, non_compliant
    control_statuses: list[ResourceControlStatus] = []
    open_findings: int = 0
    last_checked: datetime
