"""ServiceNow user listing, provisioning and account actions."""
from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..resources import (
    RESOURCE_TYPE_USER,
    STATUS_DISABLED,
    STATUS_ENABLED,
    Resource,
    ResourceId,
)
from .client import ServiceNowClient
from .exceptions import PreconditionError
from .models import USER_FIELDS, User
from .pagination import after_page, flat_cursor
from .query import all_of, email_domains_filter, ids_filter

logger = logging.getLogger(__name__)

USERS_TABLE = "sys_user"

# Profile keys required by create_account, in the order they are reported.
REQUIRED_ACCOUNT_FIELDS = ("user_name", "email", "first_name", "last_name")


def user_resource(user: User) -> Resource:
    """Map a ``sys_user`` record to a normalized user resource."""
    profile: Dict[str, Any] = {
        "login": user.user_name,
        "user_id": user.id,
        "user_roles": user.roles,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "active": user.active,
    }
    profile.update(user.custom_fields)

    return Resource(
        id=ResourceId(RESOURCE_TYPE_USER, user.id),
        display_name=user.user_name,
        profile=profile,
        login=user.user_name,
        email=user.email,
        status=STATUS_ENABLED if user.active else STATUS_DISABLED,
    )


class UserService:
    """Service for ServiceNow users (``sys_user``)."""

    def __init__(
        self,
        client: ServiceNowClient,
        page_size: int,
        allowed_domains: Iterable[str] = (),
    ):
        """Initialize user service.

        Args:
            client: ServiceNow client
            page_size: Records per listing page
            allowed_domains: Only list users whose email ends with one of these domains
        """
        self.client = client
        self.page_size = page_size
        self.allowed_domains = [d for d in allowed_domains if d]

    def _list_query(self, user_ids: Optional[List[str]] = None) -> str:
        id_clause = ids_filter(user_ids) if user_ids else None
        domain_clause = email_domains_filter(self.allowed_domains) if self.allowed_domains else None
        return all_of(id_clause, domain_clause)

    def list_users(
        self,
        token: Optional[str] = None,
        user_ids: Optional[List[str]] = None,
    ) -> Tuple[List[Resource], str]:
        """List one page of users.

        Args:
            token: Cursor returned by the previous call ("" or None to start)
            user_ids: Optional sys_id allow-list

        Returns:
            Tuple of (user resources, next cursor token; "" when done)

        Raises:
            CursorDecodeError: If the token is malformed
            ServiceNowAPIError: On HTTP error
        """
        cursor = flat_cursor(token, RESOURCE_TYPE_USER)
        offset = cursor.top().offset

        page = self.client.query(
            USERS_TABLE,
            self._list_query(user_ids),
            USER_FIELDS,
            limit=self.page_size,
            offset=offset,
        )
        users = [user_resource(User.from_record(r)) for r in page.records]
        cursor = after_page(cursor, len(page.records), page.is_last(offset, self.page_size))
        return users, cursor.encode()

    def get_user(self, user_id: str) -> User:
        """Fetch a single user.

        Raises:
            ResourceNotFoundError: If the user does not exist
        """
        return User.from_record(self.client.get(USERS_TABLE, user_id, USER_FIELDS))

    def create_account(self, profile: Dict[str, Any]) -> Resource:
        """Create an active user account without a password.

        Args:
            profile: Must contain non-empty ``user_name`` (or ``username``),
                ``email``, ``first_name`` and ``last_name`` strings

        Returns:
            The created user resource

        Raises:
            PreconditionError: If a required profile field is missing or empty
            ServiceNowAPIError: On HTTP error
        """
        if not isinstance(profile, dict):
            raise PreconditionError("Account profile is required")

        values = dict(profile)
        if not values.get("user_name") and values.get("username"):
            values["user_name"] = values["username"]

        payload = {}
        for key in REQUIRED_ACCOUNT_FIELDS:
            value = values.get(key)
            if not isinstance(value, str) or not value:
                raise PreconditionError(f"Missing or invalid '{key}' in profile")
            payload[key] = value
        payload["active"] = "true"

        record = self.client.create(USERS_TABLE, payload)
        user = User.from_record(record)
        logger.info("[account] Created user '%s' (id=%s)", user.user_name, user.id)
        return user_resource(user)

    def set_active(self, user_id: str, active: bool) -> User:
        """Enable or disable a user account.

        Raises:
            PreconditionError: If user_id is empty
            ServiceNowAPIError: On HTTP error
        """
        if not user_id:
            raise PreconditionError("User id is required")

        action = "enabling" if active else "disabling"
        logger.info("[account] %s user %s", action.capitalize(), user_id)
        record = self.client.update(USERS_TABLE, user_id, {"active": "true" if active else "false"})
        return User.from_record(record)
