"""
DriftScore - Baseline Manager
Chooses the snapshot each resource is compared against.

Lookup order: approved baseline, then automatic baseline. A resource seen
for the first time gets an automatic baseline equal to its current
configuration, so its first scan never reports drift.
"""

import copy
import logging
from typing import Optional

from driftscore.detection.base import Resource
from driftscore.detection.differ import MAP, value_kind
from driftscore.errors import NotFoundError, ValidationError
from driftscore.models import BaselineType
from driftscore.records import Baseline, utcnow
from driftscore.store.base import FindingStore

logger = logging.getLogger(__name__)


class BaselineManager:

    def __init__(self, store: FindingStore):
        self.store = store

    def get_or_create(self, user_id: str, resource: Resource) -> Baseline:
        """Approved baseline if one exists, else the automatic one (created on first sight)."""
        resource.validate()
        approved = self.store.get_baseline(user_id, resource.resource_id, BaselineType.APPROVED)
        if approved is not None:
            return approved

        automatic = self.store.get_baseline(user_id, resource.resource_id, BaselineType.AUTOMATIC)
        if automatic is not None:
            return automatic

        baseline = self.store.insert_baseline_if_absent(Baseline(
            user_id=user_id,
            resource_id=resource.resource_id,
            provider=resource.provider,
            resource_type=resource.resource_type,
            configuration=copy.deepcopy(resource.configuration),
            baseline_type=BaselineType.AUTOMATIC,
            description="Automatically captured on first observation",
        ))
        logger.info(f"Automatic baseline created for {resource.resource_id} (user {user_id})")
        return baseline

    def create(
        self,
        user_id: str,
        resource_id: str,
        configuration: dict,
        baseline_type: BaselineType = BaselineType.MANUAL,
        provider: str = "",
        resource_type: str = "",
        description: str = "",
    ) -> Baseline:
        """Create or replace the baseline of the given type for a resource."""
        if not resource_id:
            raise ValidationError("Baseline is missing resource_id")
        _check_configuration(resource_id, configuration)
        baseline = self.store.upsert_baseline(Baseline(
            user_id=user_id,
            resource_id=resource_id,
            provider=provider,
            resource_type=resource_type,
            configuration=copy.deepcopy(configuration),
            baseline_type=BaselineType(baseline_type),
            description=description,
        ))
        logger.info(f"Baseline {baseline.baseline_type.value} stored for {resource_id} (user {user_id})")
        return baseline

    def update(self, baseline: Baseline) -> Baseline:
        """Replace configuration and description; bumps updated_at."""
        if not baseline.resource_id:
            raise ValidationError("Baseline is missing resource_id")
        _check_configuration(baseline.resource_id, baseline.configuration)
        existing = self.store.get_baseline_by_id(baseline.user_id, baseline.id)
        if existing is None:
            raise NotFoundError(f"Baseline {baseline.id} not found")
        if (existing.resource_id, existing.baseline_type) != (baseline.resource_id, baseline.baseline_type):
            raise ValidationError("A baseline's resource_id and baseline_type cannot change")

        baseline = copy.deepcopy(baseline)
        baseline.updated_at = utcnow()
        return self.store.upsert_baseline(baseline)

    def delete(self, user_id: str, baseline_id: str) -> None:
        if not self.store.delete_baseline(user_id, baseline_id):
            raise NotFoundError(f"Baseline {baseline_id} not found")
        logger.info(f"Baseline {baseline_id} deleted (user {user_id})")

    def approve(self, user_id: str, resource: Resource, description: str = "") -> Baseline:
        """Promote a resource's current configuration to its approved baseline."""
        resource.validate()
        return self.create(
            user_id,
            resource.resource_id,
            resource.configuration,
            baseline_type=BaselineType.APPROVED,
            provider=resource.provider,
            resource_type=resource.resource_type,
            description=description or "Approved configuration",
        )

    def promote(self, user_id: str, baseline_id: str, description: str = "") -> Baseline:
        """Copy an existing baseline's configuration into the approved slot."""
        source = self.get(user_id, baseline_id)
        return self.create(
            user_id,
            source.resource_id,
            source.configuration,
            baseline_type=BaselineType.APPROVED,
            provider=source.provider,
            resource_type=source.resource_type,
            description=description or f"Promoted from {source.baseline_type.value} baseline",
        )

    def get(self, user_id: str, baseline_id: str) -> Baseline:
        baseline = self.store.get_baseline_by_id(user_id, baseline_id)
        if baseline is None:
            raise NotFoundError(f"Baseline {baseline_id} not found")
        return baseline

    def list(
        self,
        user_id: str,
        resource_id: Optional[str] = None,
        baseline_type: Optional[BaselineType] = None,
    ) -> list[Baseline]:
        return self.store.list_baselines(user_id, resource_id=resource_id, baseline_type=baseline_type)


def _check_configuration(resource_id: str, configuration) -> None:
    if value_kind(configuration) != MAP:
        raise ValidationError(f"Baseline configuration for {resource_id} must be a map")
