"""ServiceNow connector facade.

Dispatches the generic resource / entitlement / grant operations to the
per-type services. The connector holds no enumeration state: every listing
call takes the caller's cursor token and returns the next one.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from .config.settings import AppConfig
from .core.resources import (
    MEMBER_SLUG,
    RESOURCE_TYPE_GROUP,
    RESOURCE_TYPE_ROLE,
    RESOURCE_TYPE_USER,
    RESOURCE_TYPES,
    Entitlement,
    Grant,
    MutationResult,
    Resource,
    ResourceId,
    ResourceType,
    parse_entitlement_id,
)
from .core.servicenow import (
    CatalogService,
    GroupService,
    PreconditionError,
    RoleService,
    ServiceNowClient,
    ServiceNowError,
    Ticket,
    TicketSchema,
    UserService,
    user_resource,
)

logger = logging.getLogger(__name__)

VALIDATION_LIMIT = 1


class ServiceNowConnector:
    """Entry point for syncing and provisioning ServiceNow access.

    Usage:
        connector = ServiceNowConnector.from_settings(load_settings())
        connector.validate()

        grants, token = connector.list_grants(role, "")
        while token:
            more, token = connector.list_grants(role, token)
    """

    def __init__(
        self,
        client: ServiceNowClient,
        page_size: int,
        allowed_domains: Optional[List[str]] = None,
        catalog_id: str = "",
        category_id: str = "",
    ):
        self.client = client
        self.catalog_id = catalog_id
        self.category_id = category_id
        self.users = UserService(client, page_size, allowed_domains or ())
        self.groups = GroupService(client, page_size)
        self.roles = RoleService(client, page_size)
        self.catalog = CatalogService(client, page_size, catalog_id, category_id)

    @classmethod
    def from_settings(cls, config: AppConfig) -> "ServiceNowConnector":
        client = ServiceNowClient(
            config.base_url,
            config.username,
            config.password,
            timeout=config.request_timeout,
        )
        return cls(
            client,
            config.page_size,
            config.allowed_domains,
            catalog_id=config.catalog_id,
            category_id=config.category_id,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Connector metadata
    # ─────────────────────────────────────────────────────────────────────────
    @staticmethod
    def resource_types() -> Tuple[ResourceType, ...]:
        return RESOURCE_TYPES

    def metadata(self) -> Dict[str, Any]:
        return {
            "display_name": "ServiceNow",
            "description": "Connector syncing ServiceNow users, their roles and groups.",
            "account_provisioning": {"credential_options": ["no_password"], "preferred": "no_password"},
            "actions": ["enable_user", "disable_user"],
            "ticketing": {"catalog_id": self.catalog_id, "category_id": self.category_id},
        }

    def validate(self) -> None:
        """Check the configured credentials can read every table the connector uses.

        Raises:
            ServiceNowError: Naming the first table the user cannot list
        """
        checks = [
            ("users", "sys_user", ""),
            ("roles", "sys_user_role", "grantable=true"),
            ("groups", "sys_user_group", ""),
            ("group members", "sys_user_grmember", ""),
            ("users to roles", "sys_user_has_role", ""),
            ("groups to roles", "sys_group_has_role", ""),
        ]
        for label, table, query in checks:
            try:
                self.client.query(table, query, ["sys_id"], limit=VALIDATION_LIMIT)
            except ServiceNowError as exc:
                raise ServiceNowError(f"Current user is not able to list {label}: {exc}") from exc
        logger.info("[validate] Credentials can read users, roles, groups and assignments")

    # ─────────────────────────────────────────────────────────────────────────
    # Sync
    # ─────────────────────────────────────────────────────────────────────────
    def list_resources(self, resource_type: str, token: Optional[str] = None) -> Tuple[List[Resource], str]:
        if resource_type == RESOURCE_TYPE_USER:
            return self.users.list_users(token)
        if resource_type == RESOURCE_TYPE_GROUP:
            return self.groups.list_groups(token)
        if resource_type == RESOURCE_TYPE_ROLE:
            return self.roles.list_roles(token)
        raise PreconditionError(f"Unknown resource type '{resource_type}'")

    def list_entitlements(self, resource: Resource) -> List[Entitlement]:
        """Users carry no entitlements; roles and groups expose ``member``."""
        if resource.resource_type == RESOURCE_TYPE_ROLE:
            return self.roles.entitlements(resource)
        if resource.resource_type == RESOURCE_TYPE_GROUP:
            return self.groups.entitlements(resource)
        return []

    def list_grants(
        self,
        resource: Union[Resource, ResourceId],
        token: Optional[str] = None,
    ) -> Tuple[List[Grant], str]:
        """Return the next batch of grants on a role or group resource."""
        resource_id = resource.id if isinstance(resource, Resource) else resource
        if resource_id.resource_type == RESOURCE_TYPE_ROLE:
            return self.roles.grants(resource_id.resource, token)
        if resource_id.resource_type == RESOURCE_TYPE_GROUP:
            return self.groups.grants(resource_id.resource, token)
        return [], ""

    # ─────────────────────────────────────────────────────────────────────────
    # Provisioning
    # ─────────────────────────────────────────────────────────────────────────
    @staticmethod
    def _target(entitlement: Union[Entitlement, str]) -> Tuple[str, str]:
        if isinstance(entitlement, Entitlement):
            resource_type, resource, slug = (
                entitlement.resource_id.resource_type,
                entitlement.resource_id.resource,
                entitlement.slug,
            )
        else:
            try:
                resource_type, resource, slug = parse_entitlement_id(entitlement)
            except ValueError as exc:
                raise PreconditionError(str(exc)) from exc

        if slug != MEMBER_SLUG or resource_type not in (RESOURCE_TYPE_ROLE, RESOURCE_TYPE_GROUP):
            raise PreconditionError(f"Entitlement '{resource_type}:{resource}:{slug}' is not grantable")
        return resource_type, resource

    def grant(self, principal: ResourceId, entitlement: Union[Entitlement, str]) -> MutationResult:
        resource_type, resource = self._target(entitlement)
        if resource_type == RESOURCE_TYPE_ROLE:
            return self.roles.grant(principal, resource)
        return self.groups.add_member(principal, resource)

    def revoke(self, grant: Grant) -> MutationResult:
        resource_type, resource = self._target(grant.entitlement)
        if resource_type == RESOURCE_TYPE_ROLE:
            return self.roles.revoke(grant.principal, resource)
        return self.groups.remove_member(grant.principal, resource)

    def create_account(self, profile: Dict[str, Any]) -> Resource:
        return self.users.create_account(profile)

    def enable_user(self, user_id: str) -> Resource:
        return user_resource(self.users.set_active(user_id, True))

    def disable_user(self, user_id: str) -> Resource:
        return user_resource(self.users.set_active(user_id, False))

    # ─────────────────────────────────────────────────────────────────────────
    # Ticketing
    # ─────────────────────────────────────────────────────────────────────────
    def list_ticket_schemas(self, token: Optional[str] = None) -> Tuple[List[TicketSchema], str]:
        """Catalog items (within the configured catalog/category) as ticket schemas."""
        return self.catalog.list_ticket_schemas(token)

    def get_ticket_schema(self, schema_id: str) -> TicketSchema:
        if not schema_id:
            raise PreconditionError("Ticket schema id is required")
        return self.catalog.get_ticket_schema(schema_id)

    def get_ticket(self, ticket_id: str) -> Ticket:
        if not ticket_id:
            raise PreconditionError("Ticket id is required")
        return self.catalog.get_ticket(ticket_id)
