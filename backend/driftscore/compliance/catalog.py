"""
DriftScore - Compliance Framework Catalog
CIS AWS Foundations, NIST 800-53 Rev 5 and SOC 2 controls, loaded once from
YAML into immutable objects. Evaluation never mutates the catalog; enabling
a framework produces a new catalog.
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Optional

import yaml

from driftscore.errors import NotFoundError, ValidationError
from driftscore.models import Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Control:
    """A named, checkable requirement within a framework (e.g. CIS "1.5")."""

    framework_id: str
    control_id: str
    title: str
    category: str = ""
    severity: Severity = Severity.MEDIUM
    description: str = ""
    remediation: str = ""

    def to_dict(self) -> dict:
        return {
            "framework_id": self.framework_id,
            "control_id": self.control_id,
            "title": self.title,
            "category": self.category,
            "severity": self.severity.value,
            "description": self.description,
            "remediation": self.remediation,
        }


@dataclass(frozen=True)
class Framework:
    id: str
    name: str
    version: str = ""
    description: str = ""
    provider: str = ""                       # aws, gcp, azure; empty = multi-cloud
    enabled: bool = True
    controls: tuple[Control, ...] = ()

    def get_control(self, control_id: str) -> Optional[Control]:
        for control in self.controls:
            if control.control_id == control_id:
                return control
        return None

    def list_controls(self, category: Optional[str] = None) -> list[Control]:
        if not category:
            return list(self.controls)
        wanted = category.lower()
        return [c for c in self.controls if c.category.lower() == wanted]

    @property
    def categories(self) -> list[str]:
        return list(dict.fromkeys(c.category for c in self.controls))

    def to_dict(self, include_controls: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "provider": self.provider,
            "enabled": self.enabled,
            "control_count": len(self.controls),
        }
        if include_controls:
            data["controls"] = [c.to_dict() for c in self.controls]
        return data


@dataclass(frozen=True)
class FrameworkCatalog:
    frameworks: tuple[Framework, ...] = ()

    def get(self, framework_id: str) -> Framework:
        for framework in self.frameworks:
            if framework.id == framework_id:
                return framework
        raise NotFoundError(f"Compliance framework '{framework_id}' not found")

    def list_frameworks(self, enabled_only: bool = False) -> list[Framework]:
        return [f for f in self.frameworks if f.enabled or not enabled_only]

    def with_enabled(self, framework_ids: Iterable[str]) -> "FrameworkCatalog":
        """Catalog with exactly the given frameworks enabled. Unknown ids are logged and skipped."""
        wanted = set(framework_ids)
        known = {f.id for f in self.frameworks}
        for unknown in sorted(wanted - known):
            logger.warning(f"Unknown compliance framework in enabled list: '{unknown}'")
        return FrameworkCatalog(frameworks=tuple(
            replace(f, enabled=f.id in wanted) for f in self.frameworks
        ))


def build_framework(entry: dict) -> Framework:
    framework_id = str(entry["id"])
    controls = []
    for item in entry.get("controls") or []:
        controls.append(Control(
            framework_id=framework_id,
            control_id=str(item["id"]),
            title=item.get("title", str(item["id"])),
            category=item.get("category", ""),
            severity=Severity.parse(item.get("severity", "medium")),
            description=item.get("description", ""),
            remediation=item.get("remediation", ""),
        ))

    ids = [c.control_id for c in controls]
    if len(ids) != len(set(ids)):
        raise ValidationError(f"Framework '{framework_id}' declares duplicate control ids")

    return Framework(
        id=framework_id,
        name=entry.get("name", framework_id),
        version=str(entry.get("version", "")),
        description=entry.get("description", ""),
        provider=entry.get("provider") or "",
        enabled=bool(entry.get("enabled", True)),
        controls=tuple(controls),
    )


def load_catalog(path: str, enabled: Optional[Iterable[str]] = None) -> FrameworkCatalog:
    """Load frameworks from YAML. A non-empty `enabled` list overrides the file's flags."""
    try:
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Compliance frameworks file not found at {path}")
        return FrameworkCatalog()

    frameworks = []
    for index, entry in enumerate(config.get("frameworks", [])):
        try:
            frameworks.append(build_framework(entry))
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Skipping compliance framework #{index}: {e}")

    catalog = FrameworkCatalog(frameworks=tuple(frameworks))
    enabled = list(enabled or [])
    if enabled:
        catalog = catalog.with_enabled(enabled)

    logger.info(
        f"Loaded {len(catalog.frameworks)} compliance frameworks "
        f"({sum(len(f.controls) for f in catalog.frameworks)} controls) from {path}"
    )
    return catalog
