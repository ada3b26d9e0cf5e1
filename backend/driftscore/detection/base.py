"""
DriftScore - Resource Provider Interface
Cloud extraction lives behind this interface. Whatever the source
(AWS Config export, Terraform state, a collector agent), resources
arrive as the same Resource shape before diffing.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable

from driftscore.detection.differ import MAP, value_kind
from driftscore.errors import ValidationError


@dataclass
class Resource:
    """Current configuration of one cloud resource."""

    resource_id: str                         # arn:aws:s3:::prod-logs, projects/x/instances/y
    provider: str = ""                       # aws, gcp, azure
    resource_type: str = ""                  # s3-bucket, security-group, rds-instance
    configuration: dict = field(default_factory=dict)

    def validate(self) -> None:
        if not isinstance(self.resource_id, str) or not self.resource_id.strip():
            raise ValidationError("Resource is missing resource_id")
        if value_kind(self.configuration) != MAP:
            raise ValidationError(
                f"Resource {self.resource_id} configuration must be a map, "
                f"got {type(self.configuration).__name__}"
            )

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "provider": self.provider,
            "resource_type": self.resource_type,
            "configuration": self.configuration,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Resource":
        return cls(
            resource_id=data.get("resource_id", ""),
            provider=data.get("provider", ""),
            resource_type=data.get("resource_type", ""),
            configuration=data.get("configuration", {}),
        )


class ResourceProvider(ABC):
    """Supplies the current configuration of every resource a user owns."""

    @abstractmethod
    def list_resources(self, user_id: str) -> list[Resource]:
        """Return current resource configurations for the user."""
        ...

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...


class StaticResourceProvider(ResourceProvider):
    """Serves pre-collected configurations, keyed by user. Used for exports and tests."""

    def __init__(self, resources_by_user: dict[str, Iterable[Resource]] | None = None):
        self._resources = {
            user: list(resources) for user, resources in (resources_by_user or {}).items()
        }

    @property
    def provider_name(self) -> str:
        return "static"

    def set_resources(self, user_id: str, resources: Iterable[Resource]) -> None:
        self._resources[user_id] = list(resources)

    def list_resources(self, user_id: str) -> list[Resource]:
        return list(self._resources.get(user_id, []))
