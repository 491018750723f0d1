"""ServiceNow role operations: listing, grant enumeration and grant/revoke.

Role grants span two tables. ``sys_user_has_role`` holds the users assigned
to a role and ``sys_group_has_role`` the groups. A single cursor walks both:
the role entry frame is replaced by a groups frame with a users frame on top,
so users are enumerated first and the traversal falls through to groups once
the users frame is exhausted.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple

from ..resources import (
    MEMBER_SLUG,
    RESOURCE_TYPE_GROUP,
    RESOURCE_TYPE_ROLE,
    RESOURCE_TYPE_USER,
    Entitlement,
    Grant,
    GrantExpandable,
    MutationResult,
    Resource,
    ResourceId,
    member_entitlement_id,
)
from .client import ServiceNowClient
from .exceptions import CursorDecodeError, PreconditionError
from .groups import GROUPS_TABLE
from .models import (
    GROUP_FIELDS,
    GROUP_TO_ROLE_FIELDS,
    ROLE_FIELDS,
    USER_FIELDS,
    USER_TO_ROLE_FIELDS,
    Group,
    GroupToRole,
    Role,
    User,
    UserToRole,
)
from .pagination import Cursor, Frame, after_page, flat_cursor, seed
from .query import clause, group_to_role_filter, user_to_role_filter
from .users import USERS_TABLE

logger = logging.getLogger(__name__)

ROLES_TABLE = "sys_user_role"
USER_ROLES_TABLE = "sys_user_has_role"
GROUP_ROLES_TABLE = "sys_group_has_role"

GRANTABLE_ROLES_QUERY = clause("grantable", "true")

_ROLE_CURSOR_SHAPES = {
    (RESOURCE_TYPE_ROLE,),
    (RESOURCE_TYPE_GROUP,),
    (RESOURCE_TYPE_GROUP, RESOURCE_TYPE_USER),
}


def role_resource(role: Role) -> Resource:
    """Map a ``sys_user_role`` record to a normalized role resource."""
    return Resource(
        id=ResourceId(RESOURCE_TYPE_ROLE, role.id),
        display_name=role.name,
        profile={"role_name": role.name, "role_id": role.id},
    )


def role_member_entitlement(role: Resource) -> Entitlement:
    return Entitlement(
        resource_id=role.id,
        slug=MEMBER_SLUG,
        display_name=f"{role.display_name} Role {MEMBER_SLUG}",
        description=f"Access to {role.display_name} role in ServiceNow",
        grantable_to=(RESOURCE_TYPE_USER, RESOURCE_TYPE_GROUP),
    )


class RoleService:
    """Service for ServiceNow roles and role assignments."""

    def __init__(self, client: ServiceNowClient, page_size: int):
        """Initialize role service.

        Args:
            client: ServiceNow client
            page_size: Records per page for listings and grant enumeration
        """
        self.client = client
        self.page_size = page_size

    # ─────────────────────────────────────────────────────────────────────────
    # Listing
    # ─────────────────────────────────────────────────────────────────────────
    def list_roles(self, token: Optional[str] = None) -> Tuple[List[Resource], str]:
        """List one page of grantable roles.

        Returns:
            Tuple of (role resources, next cursor token; "" when done)
        """
        cursor = flat_cursor(token, RESOURCE_TYPE_ROLE)
        offset = cursor.top().offset

        page = self.client.query(
            ROLES_TABLE,
            GRANTABLE_ROLES_QUERY,
            ROLE_FIELDS,
            limit=self.page_size,
            offset=offset,
        )
        roles = [role_resource(Role.from_record(r)) for r in page.records]
        cursor = after_page(cursor, len(page.records), page.is_last(offset, self.page_size))
        return roles, cursor.encode()

    def get_role(self, role_id: str) -> Role:
        return Role.from_record(self.client.get(ROLES_TABLE, role_id, ROLE_FIELDS))

    def entitlements(self, role: Resource) -> List[Entitlement]:
        """Each role exposes one ``member`` entitlement, grantable to users and groups."""
        return [role_member_entitlement(role)]

    # ─────────────────────────────────────────────────────────────────────────
    # Grant enumeration
    # ─────────────────────────────────────────────────────────────────────────
    def grants(self, role_id: str, token: Optional[str] = None) -> Tuple[List[Grant], str]:
        """Return the next batch of grants for a role.

        Call repeatedly with the returned token until it is "". Users holding
        the role come first, then groups. A failed call leaves the caller's
        token valid, so retrying with it is safe.

        Args:
            role_id: Role sys_id
            token: Cursor returned by the previous call ("" or None to start)

        Returns:
            Tuple of (grants, next cursor token; "" when the traversal is complete)

        Raises:
            PreconditionError: If role_id is empty
            CursorDecodeError: If the token is malformed or belongs to another role
            ServiceNowAPIError: On HTTP error
        """
        if not role_id:
            raise PreconditionError("Role id is required")

        cursor = seed(token, RESOURCE_TYPE_ROLE, role_id)
        self._check_cursor(cursor, role_id)
        entitlement = Entitlement(ResourceId(RESOURCE_TYPE_ROLE, role_id), MEMBER_SLUG)
        grants: List[Grant] = []

        while not cursor.is_empty:
            frame = cursor.top()
            if frame.resource_type == RESOURCE_TYPE_ROLE:
                cursor = self._expand_role_frame(cursor, role_id)
                continue

            if frame.resource_type == RESOURCE_TYPE_USER:
                page_grants, returned, is_last = self._user_grants_page(entitlement, frame)
            elif frame.resource_type == RESOURCE_TYPE_GROUP:
                page_grants, returned, is_last = self._group_grants_page(entitlement, frame)
            else:
                raise CursorDecodeError(f"Unexpected resource type in cursor: {frame.resource_type}")

            grants.extend(page_grants)
            cursor = after_page(cursor, returned, is_last)

            # Fall through to the next frame only while nothing has been emitted
            if not is_last or grants:
                break

        return grants, cursor.encode()

    @staticmethod
    def _check_cursor(cursor: Cursor, role_id: str) -> None:
        """Accept only the stacks this enumeration produces for ``role_id``.

        Valid stacks (bottom first): [role], [group] and [group, user]; the
        role entry frame is never resumed past offset 0.

        Raises:
            CursorDecodeError: On any other stack or a frame for another role
        """
        shape = tuple(f.resource_type for f in cursor.frames)
        if shape not in _ROLE_CURSOR_SHAPES:
            raise CursorDecodeError(f"Cursor is not a role grants cursor (frames={list(shape)})")
        if any(f.resource_id != role_id for f in cursor.frames):
            raise CursorDecodeError(f"Cursor does not belong to role '{role_id}'")
        if shape[0] == RESOURCE_TYPE_ROLE and cursor.frames[0].offset != 0:
            raise CursorDecodeError("Role entry frame cannot carry an offset")

    @staticmethod
    def _expand_role_frame(cursor: Cursor, role_id: str) -> Cursor:
        return (
            cursor.pop()
            .push(Frame(RESOURCE_TYPE_GROUP, role_id))
            .push(Frame(RESOURCE_TYPE_USER, role_id))
        )

    def _user_grants_page(self, entitlement: Entitlement, frame: Frame) -> Tuple[List[Grant], int, bool]:
        role_id = entitlement.resource_id.resource
        page = self.client.query(
            USER_ROLES_TABLE,
            user_to_role_filter(role_id=role_id),
            USER_TO_ROLE_FIELDS,
            limit=self.page_size,
            offset=frame.offset,
        )

        grants = []
        for record in page.records:
            assignment = UserToRole.from_record(record)
            user = User.from_record(self.client.get(USERS_TABLE, assignment.user, USER_FIELDS))
            grants.append(
                Grant(
                    entitlement=entitlement,
                    principal=ResourceId(RESOURCE_TYPE_USER, user.id or assignment.user),
                    inherited=assignment.inherited,
                )
            )
        return grants, len(page.records), page.is_last(frame.offset, self.page_size)

    def _group_grants_page(self, entitlement: Entitlement, frame: Frame) -> Tuple[List[Grant], int, bool]:
        role_id = entitlement.resource_id.resource
        page = self.client.query(
            GROUP_ROLES_TABLE,
            group_to_role_filter(role_id=role_id),
            GROUP_TO_ROLE_FIELDS,
            limit=self.page_size,
            offset=frame.offset,
        )

        grants = []
        for record in page.records:
            assignment = GroupToRole.from_record(record)
            group = Group.from_record(self.client.get(GROUPS_TABLE, assignment.group, GROUP_FIELDS))
            principal = ResourceId(RESOURCE_TYPE_GROUP, group.id or assignment.group)
            grants.append(
                Grant(
                    entitlement=entitlement,
                    principal=principal,
                    expandable=GrantExpandable((member_entitlement_id(principal),), shallow=True),
                    inherited=assignment.inherits,
                )
            )
        return grants, len(page.records), page.is_last(frame.offset, self.page_size)

    # ─────────────────────────────────────────────────────────────────────────
    # Grant / revoke
    # ─────────────────────────────────────────────────────────────────────────
    @staticmethod
    def _assignment(principal: ResourceId, role_id: str) -> Tuple[str, List[str], str, Dict[str, Any]]:
        """Resolve table, fields, filter and create payload for a principal/role pair.

        Raises:
            PreconditionError: If the principal is not a user or group, or an id is empty
        """
        if not isinstance(principal, ResourceId) or not principal.resource:
            raise PreconditionError("Principal with a non-empty id is required")
        if not role_id:
            raise PreconditionError("Role id is required")

        if principal.resource_type == RESOURCE_TYPE_USER:
            return (
                USER_ROLES_TABLE,
                USER_TO_ROLE_FIELDS,
                user_to_role_filter(principal.resource, role_id),
                {"user": principal.resource, "role": role_id},
            )
        if principal.resource_type == RESOURCE_TYPE_GROUP:
            return (
                GROUP_ROLES_TABLE,
                GROUP_TO_ROLE_FIELDS,
                group_to_role_filter(principal.resource, role_id),
                {"group": principal.resource, "role": role_id},
            )

        logger.warning(
            "[role-grant] Only users or groups can be granted role membership (principal=%s)",
            principal,
        )
        raise PreconditionError("Only users or groups can be granted role membership")

    def grant(self, principal: ResourceId, role_id: str) -> MutationResult:
        """Assign a role to a user or group (idempotent).

        Returns:
            GRANTED if an assignment was created, ALREADY_GRANTED if one existed

        Raises:
            PreconditionError: On an invalid principal or empty role id
            ServiceNowAPIError: On HTTP error
        """
        table, fields, query, payload = self._assignment(principal, role_id)

        existing = self.client.query(table, query, fields, limit=1)
        if existing.records:
            logger.warning("[role-grant] %s already has role %s", principal, role_id)
            return MutationResult.ALREADY_GRANTED

        self.client.create(table, payload)
        logger.debug("[role-grant] Granted role %s to %s", role_id, principal)
        return MutationResult.GRANTED

    def revoke(self, principal: ResourceId, role_id: str) -> MutationResult:
        """Remove every assignment (direct or inherited) of a role from a principal.

        Returns:
            REVOKED if at least one record was deleted, ALREADY_REVOKED if none existed

        Raises:
            PreconditionError: On an invalid principal or empty role id
            PartialRevokeError: If a delete failed after earlier deletes succeeded
            ServiceNowAPIError: On HTTP error (including a failed first delete)
        """
        table, fields, query, _ = self._assignment(principal, role_id)

        records = self.client.query_all(table, query, fields, self.page_size)
        record_ids = [str(r["sys_id"]) for r in records if r.get("sys_id")]
        if not record_ids:
            logger.warning("[role-revoke] %s does not have role %s", principal, role_id)
            return MutationResult.ALREADY_REVOKED

        deleted = self.client.delete_all(table, record_ids)
        for record_id in deleted:
            logger.debug("[role-revoke] Deleted %s record %s", table, record_id)
        return MutationResult.REVOKED
