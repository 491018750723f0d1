"""Typed ServiceNow records and page signals.

Raw JSON dictionaries stop at the client boundary; everything above it works
with these dataclasses. Decoding is lenient: missing optional columns fall
back to empty values, and reference columns are accepted either as a plain
sys_id string or as a ``{"link": ..., "value": ...}`` object.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

TRUTHY_VALUES = {"true", "True", "TRUE", "1"}

USER_FIELDS = ["sys_id", "name", "roles", "user_name", "email", "first_name", "last_name", "active"]
ROLE_FIELDS = ["sys_id", "grantable", "name"]
GROUP_FIELDS = ["sys_id", "description", "name"]
USER_TO_ROLE_FIELDS = ["sys_id", "user", "role", "inherited"]
GROUP_TO_ROLE_FIELDS = ["sys_id", "role", "group", "inherits"]
GROUP_MEMBER_FIELDS = ["sys_id", "user", "group"]


def parse_bool(value: Any) -> bool:
    """ServiceNow serializes booleans as strings; anything unrecognized is False."""
    if isinstance(value, bool):
        return value
    return str(value) in TRUTHY_VALUES


def reference_value(value: Any) -> str:
    """Return the sys_id held by a reference column."""
    if isinstance(value, dict):
        return str(value.get("value") or "")
    if value is None:
        return ""
    return str(value)


def _text(record: Dict[str, Any], key: str) -> str:
    value = record.get(key)
    if value is None:
        return ""
    return str(value)


# ─────────────────────────────────────────────────────────────────────────────
# Page signals
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class TotalCount:
    """Store reported the total number of matching records (X-Total-Count)."""
    total: int

    def is_last(self, offset: int, returned: int, limit: int) -> bool:
        return returned == 0 or offset + returned >= self.total


@dataclass(frozen=True)
class HasMore:
    """Store omitted the count but advertised a next page (Link rel="next")."""
    next_offset: int

    def is_last(self, offset: int, returned: int, limit: int) -> bool:
        return returned == 0 or self.next_offset <= offset


@dataclass(frozen=True)
class NoSignal:
    """Neither header present; a short page marks the end."""

    def is_last(self, offset: int, returned: int, limit: int) -> bool:
        return returned == 0 or returned < limit


PageSignal = Union[TotalCount, HasMore, NoSignal]


@dataclass(frozen=True)
class Page:
    """One page of raw records returned by ``ServiceNowClient.query``."""
    records: List[Dict[str, Any]]
    signal: PageSignal = field(default_factory=NoSignal)

    def is_last(self, offset: int, limit: int) -> bool:
        return self.signal.is_last(offset, len(self.records), limit)


# ─────────────────────────────────────────────────────────────────────────────
# Table records
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class User:
    id: str
    user_name: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    roles: str = ""
    active: bool = False
    custom_fields: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "User":
        # Only string-valued u_* columns are kept; null and nested values are skipped.
        custom = {
            key: value
            for key, value in record.items()
            if key.startswith("u_") and isinstance(value, str)
        }
        return cls(
            id=_text(record, "sys_id"),
            user_name=_text(record, "user_name"),
            email=_text(record, "email"),
            first_name=_text(record, "first_name"),
            last_name=_text(record, "last_name"),
            roles=_text(record, "roles"),
            active=parse_bool(record.get("active")),
            custom_fields=custom,
        )


@dataclass
class Group:
    id: str
    name: str = ""
    description: str = ""

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Group":
        return cls(
            id=_text(record, "sys_id"),
            name=_text(record, "name"),
            description=_text(record, "description"),
        )


@dataclass
class Role:
    id: str
    name: str = ""
    grantable: bool = False

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Role":
        return cls(
            id=_text(record, "sys_id"),
            name=_text(record, "name"),
            grantable=parse_bool(record.get("grantable")),
        )


@dataclass
class UserToRole:
    """Row of ``sys_user_has_role``."""
    id: str
    user: str
    role: str
    inherited: bool = False

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "UserToRole":
        return cls(
            id=_text(record, "sys_id"),
            user=reference_value(record.get("user")),
            role=reference_value(record.get("role")),
            inherited=parse_bool(record.get("inherited")),
        )


@dataclass
class GroupToRole:
    """Row of ``sys_group_has_role``."""
    id: str
    group: str
    role: str
    inherits: bool = False

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "GroupToRole":
        return cls(
            id=_text(record, "sys_id"),
            group=reference_value(record.get("group")),
            role=reference_value(record.get("role")),
            inherits=parse_bool(record.get("inherits")),
        )


@dataclass
class GroupMember:
    """Row of ``sys_user_grmember``."""
    id: str
    user: str
    group: str

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "GroupMember":
        return cls(
            id=_text(record, "sys_id"),
            user=reference_value(record.get("user")),
            group=reference_value(record.get("group")),
        )
