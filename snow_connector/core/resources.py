"""Normalized resource / entitlement / grant model.

Platform records are mapped into these value objects before they leave the
connector, so callers never see ServiceNow table shapes.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

RESOURCE_TYPE_USER = "user"
RESOURCE_TYPE_GROUP = "group"
RESOURCE_TYPE_ROLE = "role"
# Not synced as a resource; only names catalog-item listing cursors.
RESOURCE_TYPE_CATALOG_ITEM = "catalog_item"

MEMBER_SLUG = "member"

STATUS_ENABLED = "enabled"
STATUS_DISABLED = "disabled"


class MutationResult(str, Enum):
    """Outcome of an idempotent grant or revoke."""
    GRANTED = "granted"
    ALREADY_GRANTED = "already_granted"
    REVOKED = "revoked"
    ALREADY_REVOKED = "already_revoked"


@dataclass(frozen=True)
class ResourceType:
    id: str
    display_name: str
    trait: str
    skip_entitlements_and_grants: bool = False


USER_TYPE = ResourceType(RESOURCE_TYPE_USER, "User", "user", skip_entitlements_and_grants=True)
GROUP_TYPE = ResourceType(RESOURCE_TYPE_GROUP, "Group", "group")
ROLE_TYPE = ResourceType(RESOURCE_TYPE_ROLE, "Role", "role")

RESOURCE_TYPES: Tuple[ResourceType, ...] = (USER_TYPE, ROLE_TYPE, GROUP_TYPE)


@dataclass(frozen=True)
class ResourceId:
    resource_type: str
    resource: str

    def __str__(self) -> str:
        return f"{self.resource_type}:{self.resource}"


@dataclass
class Resource:
    """A user, group or role as seen by the caller."""
    id: ResourceId
    display_name: str
    profile: Dict[str, Any] = field(default_factory=dict)
    login: Optional[str] = None
    email: Optional[str] = None
    status: Optional[str] = None

    @property
    def resource_type(self) -> str:
        return self.id.resource_type


@dataclass(frozen=True)
class Entitlement:
    """Assignable access on a resource (``<type>:<id>:<slug>``)."""
    resource_id: ResourceId
    slug: str
    display_name: str = ""
    description: str = ""
    grantable_to: Tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return f"{self.resource_id}:{self.slug}"


@dataclass(frozen=True)
class GrantExpandable:
    """Marks a grant whose principal can be expanded into its own grants.

    ``shallow`` means only the direct members of the principal's entitlements
    are expanded, not their descendants.
    """
    entitlement_ids: Tuple[str, ...]
    shallow: bool = True


@dataclass(frozen=True)
class Grant:
    """One access fact: ``principal`` holds ``entitlement``."""
    entitlement: Entitlement
    principal: ResourceId
    expandable: Optional[GrantExpandable] = None
    inherited: bool = False

    @property
    def id(self) -> str:
        return f"{self.entitlement.id}:{self.principal}"


def member_entitlement_id(resource_id: ResourceId) -> str:
    return f"{resource_id}:{MEMBER_SLUG}"


def parse_entitlement_id(entitlement_id: str) -> Tuple[str, str, str]:
    """Split ``<type>:<id>:<slug>`` into its parts.

    Raises:
        ValueError: If the id does not have three non-empty parts
    """
    parts = entitlement_id.split(":")
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Invalid entitlement id '{entitlement_id}'")
    return parts[0], parts[1], parts[2]
