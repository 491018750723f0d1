"""ServiceNow Table API client library.

Architecture:
- client.py: HTTP client with Basic authentication and paging headers
- query.py: Encoded query (sysparm_query) construction
- models.py: Typed table records and page signals
- pagination.py: Resumable cursor shared by every listing
- users.py: User listing, account creation and enable/disable
- roles.py: Role listing, grant enumeration, grant/revoke
- groups.py: Group listing, member grants, add/remove member
- catalog.py: Catalog item variables, ticket schemas and requested-item tickets
- exceptions.py: Typed exceptions for error handling

Usage:
    from snow_connector.core.servicenow import ServiceNowClient, RoleService

    client = ServiceNowClient("https://acme.service-now.com", "admin", "password")
    roles = RoleService(client, page_size=50)

    grants, token = roles.grants(role_id)
    while token:
        more, token = roles.grants(role_id, token)
"""
from .exceptions import (
    ServiceNowError,
    ServiceNowAPIError,
    ResponseDecodeError,
    CursorDecodeError,
    PreconditionError,
    ResourceNotFoundError,
    PartialRevokeError,
)
from .models import (
    Page,
    TotalCount,
    HasMore,
    NoSignal,
    User,
    Group,
    Role,
    UserToRole,
    GroupToRole,
    GroupMember,
)
from .client import ServiceNowClient, instance_url, REQUEST_TIMEOUT
from .pagination import Cursor, Frame
from .users import UserService, user_resource
from .groups import GroupService, group_resource
from .roles import RoleService, role_resource
from .catalog import (
    CatalogService,
    CatalogItemVariable,
    FieldKind,
    VariableType,
    Ticket,
    TicketField,
    TicketSchema,
    TicketStatus,
)

__all__ = [
    # Exceptions
    "ServiceNowError",
    "ServiceNowAPIError",
    "ResponseDecodeError",
    "CursorDecodeError",
    "PreconditionError",
    "ResourceNotFoundError",
    "PartialRevokeError",
    # Models
    "Page",
    "TotalCount",
    "HasMore",
    "NoSignal",
    "User",
    "Group",
    "Role",
    "UserToRole",
    "GroupToRole",
    "GroupMember",
    # Client
    "ServiceNowClient",
    "instance_url",
    "REQUEST_TIMEOUT",
    # Pagination
    "Cursor",
    "Frame",
    # Services
    "UserService",
    "GroupService",
    "RoleService",
    "CatalogService",
    "user_resource",
    "group_resource",
    "role_resource",
    # Catalog
    "CatalogItemVariable",
    "FieldKind",
    "VariableType",
    "Ticket",
    "TicketField",
    "TicketSchema",
    "TicketStatus",
]
