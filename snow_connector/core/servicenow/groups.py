"""ServiceNow group operations: listing, member grants and membership changes."""
from __future__ import annotations
import logging
from typing import List, Optional, Tuple

from ..resources import (
    MEMBER_SLUG,
    RESOURCE_TYPE_GROUP,
    RESOURCE_TYPE_USER,
    Entitlement,
    Grant,
    MutationResult,
    Resource,
    ResourceId,
)
from .client import ServiceNowClient
from .exceptions import PreconditionError, ResourceNotFoundError
from .models import GROUP_FIELDS, GROUP_MEMBER_FIELDS, USER_FIELDS, Group, GroupMember
from .pagination import after_page, flat_cursor
from .query import group_member_filter
from .users import USERS_TABLE

logger = logging.getLogger(__name__)

GROUPS_TABLE = "sys_user_group"
GROUP_MEMBERS_TABLE = "sys_user_grmember"


def group_resource(group: Group) -> Resource:
    """Map a ``sys_user_group`` record to a normalized group resource."""
    return Resource(
        id=ResourceId(RESOURCE_TYPE_GROUP, group.id),
        display_name=group.name,
        profile={
            "group_name": group.name,
            "group_id": group.id,
            "group_description": group.description,
        },
    )


def group_member_entitlement(group: Resource) -> Entitlement:
    return Entitlement(
        resource_id=group.id,
        slug=MEMBER_SLUG,
        display_name=f"{group.display_name} Group {MEMBER_SLUG}",
        description=f"Access to {group.display_name} group in ServiceNow",
        grantable_to=(RESOURCE_TYPE_USER,),
    )


class GroupService:
    """Service for ServiceNow groups (``sys_user_group``) and their members."""

    def __init__(self, client: ServiceNowClient, page_size: int):
        """Initialize group service.

        Args:
            client: ServiceNow client
            page_size: Records per listing page
        """
        self.client = client
        self.page_size = page_size

    def list_groups(self, token: Optional[str] = None) -> Tuple[List[Resource], str]:
        """List one page of groups.

        Returns:
            Tuple of (group resources, next cursor token; "" when done)
        """
        cursor = flat_cursor(token, RESOURCE_TYPE_GROUP)
        offset = cursor.top().offset

        page = self.client.query(GROUPS_TABLE, "", GROUP_FIELDS, limit=self.page_size, offset=offset)
        groups = [group_resource(Group.from_record(r)) for r in page.records]
        cursor = after_page(cursor, len(page.records), page.is_last(offset, self.page_size))
        return groups, cursor.encode()

    def get_group(self, group_id: str) -> Group:
        return Group.from_record(self.client.get(GROUPS_TABLE, group_id, GROUP_FIELDS))

    def entitlements(self, group: Resource) -> List[Entitlement]:
        """Each group exposes one ``member`` entitlement, grantable to users."""
        return [group_member_entitlement(group)]

    def grants(self, group_id: str, token: Optional[str] = None) -> Tuple[List[Grant], str]:
        """Return one page of member grants for a group.

        Member records whose user can no longer be read (404) are skipped.

        Args:
            group_id: Group sys_id
            token: Cursor returned by the previous call ("" or None to start)

        Returns:
            Tuple of (grants, next cursor token; "" when done)

        Raises:
            PreconditionError: If group_id is empty
            CursorDecodeError: If the token is malformed
            ServiceNowAPIError: On HTTP error
        """
        if not group_id:
            raise PreconditionError("Group id is required")

        cursor = flat_cursor(token, RESOURCE_TYPE_GROUP, group_id)
        offset = cursor.top().offset
        entitlement = Entitlement(ResourceId(RESOURCE_TYPE_GROUP, group_id), MEMBER_SLUG)

        page = self.client.query(
            GROUP_MEMBERS_TABLE,
            group_member_filter(group_id=group_id),
            GROUP_MEMBER_FIELDS,
            limit=self.page_size,
            offset=offset,
        )

        grants = []
        for record in page.records:
            member = GroupMember.from_record(record)
            try:
                self.client.get(USERS_TABLE, member.user, USER_FIELDS)
            except ResourceNotFoundError:
                logger.debug("[group-member] Skipping unreadable user %s in group %s", member.user, group_id)
                continue
            grants.append(Grant(entitlement=entitlement, principal=ResourceId(RESOURCE_TYPE_USER, member.user)))

        cursor = after_page(cursor, len(page.records), page.is_last(offset, self.page_size))
        return grants, cursor.encode()

    @staticmethod
    def _check_member(principal: ResourceId, group_id: str) -> None:
        if not isinstance(principal, ResourceId) or not principal.resource:
            raise PreconditionError("Principal with a non-empty id is required")
        if principal.resource_type != RESOURCE_TYPE_USER:
            logger.warning(
                "[group-member] Only users can be granted group membership (principal=%s)",
                principal,
            )
            raise PreconditionError("Only users can be granted group membership")
        if not group_id:
            raise PreconditionError("Group id is required")

    def add_member(self, principal: ResourceId, group_id: str) -> MutationResult:
        """Add a user to a group (idempotent).

        Returns:
            GRANTED if a membership was created, ALREADY_GRANTED if one existed

        Raises:
            PreconditionError: If the principal is not a user or an id is empty
            ServiceNowAPIError: On HTTP error
        """
        self._check_member(principal, group_id)
        query = group_member_filter(principal.resource, group_id)

        existing = self.client.query(GROUP_MEMBERS_TABLE, query, GROUP_MEMBER_FIELDS, limit=1)
        if existing.records:
            logger.warning("[group-member] %s is already a member of group %s", principal, group_id)
            return MutationResult.ALREADY_GRANTED

        self.client.create(GROUP_MEMBERS_TABLE, {"user": principal.resource, "group": group_id})
        logger.debug("[group-member] Added %s to group %s", principal, group_id)
        return MutationResult.GRANTED

    def remove_member(self, principal: ResourceId, group_id: str) -> MutationResult:
        """Remove every membership record linking a user to a group.

        Returns:
            REVOKED if at least one record was deleted, ALREADY_REVOKED if none existed

        Raises:
            PreconditionError: If the principal is not a user or an id is empty
            PartialRevokeError: If a delete failed after earlier deletes succeeded
            ServiceNowAPIError: On HTTP error (including a failed first delete)
        """
        self._check_member(principal, group_id)
        query = group_member_filter(principal.resource, group_id)

        records = self.client.query_all(GROUP_MEMBERS_TABLE, query, GROUP_MEMBER_FIELDS, self.page_size)
        record_ids = [str(r["sys_id"]) for r in records if r.get("sys_id")]
        if not record_ids:
            logger.warning("[group-member] %s is not a member of group %s", principal, group_id)
            return MutationResult.ALREADY_REVOKED

        deleted = self.client.delete_all(GROUP_MEMBERS_TABLE, record_ids)
        for record_id in deleted:
            logger.debug("[group-member] Deleted membership record %s", record_id)
        return MutationResult.REVOKED
