"""
DriftScore - Compliance Control Mapper
Static table associating rule ids / drift types with framework controls.

A mapping's rule_type matches a finding when it equals the finding's
drift_type or one of the rule ids the finding matched. Optional
resource_type and provider narrow the match.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import yaml

from driftscore.errors import ValidationError
from driftscore.models import Confidence
from driftscore.records import DriftFinding

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControlMapping:
    rule_type: str
    framework_id: str
    control_id: str
    confidence: Confidence = Confidence.MEDIUM
    resource_type: str = ""                  # empty = any
    provider: str = ""                       # empty = any

    def matches(self, finding: DriftFinding) -> bool:
        if self.rule_type != finding.drift_type and self.rule_type not in finding.matched_rules:
            return False
        if self.resource_type and self.resource_type != (finding.resource_type or "").lower():
            return False
        if self.provider and self.provider != (finding.provider or "").lower():
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "rule_type": self.rule_type,
            "framework_id": self.framework_id,
            "control_id": self.control_id,
            "confidence": self.confidence.value,
            "resource_type": self.resource_type,
            "provider": self.provider,
        }


@dataclass(frozen=True)
class ControlMapper:
    """Immutable lookup over every ControlMapping."""

    mappings: tuple[ControlMapping, ...] = ()

    def __len__(self) -> int:
        return len(self.mappings)

    def for_control(self, framework_id: str, control_id: str) -> list[ControlMapping]:
        return [
            m for m in self.mappings
            if m.framework_id == framework_id and m.control_id == control_id
        ]

    def controls_for(
        self, finding: DriftFinding, framework_id: Optional[str] = None
    ) -> list[ControlMapping]:
        """Every mapping a finding provides evidence for."""
        return [
            m for m in self.mappings
            if (framework_id is None or m.framework_id == framework_id) and m.matches(finding)
        ]

    @classmethod
    def from_dicts(cls, entries: Iterable[dict]) -> "ControlMapper":
        mappings = []
        for index, entry in enumerate(entries):
            try:
                mappings.append(build_mapping(entry))
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping control mapping #{index} ({entry!r}): {e}")
        return cls(mappings=tuple(mappings))


def build_mapping(entry: dict) -> ControlMapping:
    rule_type = str(entry["rule_type"]).strip()
    if not rule_type:
        raise ValidationError("Control mapping is missing rule_type")
    return ControlMapping(
        rule_type=rule_type,
        framework_id=str(entry["framework"]),
        control_id=str(entry["control"]),
        confidence=Confidence(str(entry.get("confidence", "medium")).lower()),
        resource_type=str(entry.get("resource_type") or "").lower(),
        provider=str(entry.get("provider") or "").lower(),
    )


def load_mapper(path: str) -> ControlMapper:
    try:
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Control mappings file not found at {path}")
        return ControlMapper()
    mapper = ControlMapper.from_dicts(config.get("mappings", []))
    logger.info(f"Loaded {len(mapper)} control mappings from {path}")
    return mapper
