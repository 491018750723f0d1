"""Encoded-query (``sysparm_query``) construction for the Table API."""
from __future__ import annotations
from typing import Iterable, Optional

AND_OPERATOR = "^"
OR_OPERATOR = "^OR"


def clause(field: str, value: str, operator: str = "=") -> str:
    """Build a single ``field<op>value`` clause."""
    return f"{field}{operator}{value}"


def all_of(*clauses: Optional[str]) -> str:
    """Join non-empty clauses with the AND operator."""
    return AND_OPERATOR.join(c for c in clauses if c)


def any_of(clauses: Iterable[str]) -> str:
    """Join non-empty clauses with the OR operator."""
    return OR_OPERATOR.join(c for c in clauses if c)


def _optional(field: str, value: Optional[str]) -> Optional[str]:
    return clause(field, value) if value else None


def user_to_role_filter(user_id: Optional[str] = None, role_id: Optional[str] = None) -> str:
    return all_of(_optional("user", user_id), _optional("role", role_id))


def group_to_role_filter(group_id: Optional[str] = None, role_id: Optional[str] = None) -> str:
    return all_of(_optional("group", group_id), _optional("role", role_id))


def group_member_filter(user_id: Optional[str] = None, group_id: Optional[str] = None) -> str:
    return all_of(_optional("user", user_id), _optional("group", group_id))


def ids_filter(ids: Iterable[str]) -> str:
    """Match any of the given sys_ids."""
    return any_of(clause("sys_id", i) for i in ids)


def email_domains_filter(domains: Iterable[str]) -> str:
    """Match users whose email ends with one of the given domains."""
    return any_of(clause("email", f"@{d.lstrip('@')}", "ENDSWITH") for d in domains if d)


def catalog_items_filter(catalog_id: Optional[str] = None, category_id: Optional[str] = None) -> str:
    """Match active catalog items, optionally within one catalog and category.

    ``sc_catalogs`` is a comma-separated list, so the catalog is a substring match.
    """
    catalog_clause = clause("sc_catalogs", catalog_id, "LIKE") if catalog_id else None
    return all_of("active=true", catalog_clause, _optional("category", category_id))
