"""Unit tests for idempotent role grant / revoke."""
import logging

import pytest

from snow_connector.core.resources import MutationResult, ResourceId
from snow_connector.core.servicenow.exceptions import (
    PartialRevokeError,
    PreconditionError,
    ServiceNowAPIError,
)
from snow_connector.core.servicenow.roles import RoleService

ALICE = ResourceId("user", "U1")
DESK = ResourceId("group", "G1")


def _assignments(store, table, **match):
    return [r for r in store.tables[table] if all(r.get(k) == v for k, v in match.items())]


def test_grant_twice_creates_a_single_assignment(store, role_service, caplog):
    first = role_service.grant(ALICE, "R1")
    with caplog.at_level(logging.WARNING):
        second = role_service.grant(ALICE, "R1")

    assert first is MutationResult.GRANTED
    assert second is MutationResult.ALREADY_GRANTED
    assert len(_assignments(store, "sys_user_has_role", user="U1", role="R1")) == 1
    assert "[role-grant]" in caplog.text


def test_grant_to_group_writes_group_to_role(store, role_service):
    assert role_service.grant(DESK, "R1") is MutationResult.GRANTED

    assert _assignments(store, "sys_group_has_role", group="G1", role="R1")
    assert store.tables["sys_user_has_role"] == []
    create = store.calls_to("create")[0]
    assert create[3]["payload"] == {"group": "G1", "role": "R1"}


def test_grant_checks_exact_pair_with_limit_one(store, role_service):
    role_service.grant(ALICE, "R1")

    query = store.calls_to("query", "sys_user_has_role")[0]
    assert query[3]["query"] == "user=U1^role=R1"
    assert query[3]["limit"] == 1


def test_grant_existing_inherited_assignment_counts_as_granted(store, role_service):
    store.add("sys_user_has_role", user="U1", role="R1", inherited="true")

    assert role_service.grant(ALICE, "R1") is MutationResult.ALREADY_GRANTED
    assert store.calls_to("create") == []


def test_grant_transport_error_propagates(store, role_service):
    store.fail("create", "sys_user_has_role", error=ServiceNowAPIError(403, "ACL", "sys_user_has_role"))

    with pytest.raises(ServiceNowAPIError) as exc_info:
        role_service.grant(ALICE, "R1")

    assert exc_info.value.status_code == 403


def test_revoke_deletes_every_duplicate(store, role_service):
    store.add("sys_user_has_role", sys_id="A1", user="U1", role="R1", inherited="false")
    store.add("sys_user_has_role", sys_id="A2", user="U1", role="R1", inherited="true")
    store.add("sys_user_has_role", sys_id="B1", user="U2", role="R1", inherited="false")

    assert role_service.revoke(ALICE, "R1") is MutationResult.REVOKED
    assert role_service.revoke(ALICE, "R1") is MutationResult.ALREADY_REVOKED

    assert [c[2] for c in store.calls_to("delete")] == ["A1", "A2"]
    assert [r["sys_id"] for r in store.tables["sys_user_has_role"]] == ["B1"]


def test_revoke_pages_through_all_matches(store):
    for i in range(5):
        store.add("sys_user_has_role", sys_id=f"A{i}", user="U1", role="R1")

    assert RoleService(store, page_size=2).revoke(ALICE, "R1") is MutationResult.REVOKED

    assert store.tables["sys_user_has_role"] == []


def test_revoke_without_assignment_issues_no_delete(store, role_service):
    assert role_service.revoke(DESK, "R1") is MutationResult.ALREADY_REVOKED
    assert store.calls_to("delete") == []


def test_revoke_partial_failure_reports_progress(store, role_service):
    for sys_id in ("A1", "A2", "A3"):
        store.add("sys_user_has_role", sys_id=sys_id, user="U1", role="R1")
    store.fail("delete", "sys_user_has_role", sys_id="A2")

    with pytest.raises(PartialRevokeError) as exc_info:
        role_service.revoke(ALICE, "R1")

    err = exc_info.value
    assert err.deleted_ids == ["A1"]
    assert err.failed_id == "A2"
    assert isinstance(err.cause, ServiceNowAPIError)
    assert [r["sys_id"] for r in store.tables["sys_user_has_role"]] == ["A2", "A3"]


def test_revoke_first_delete_failure_propagates_unchanged(store, role_service):
    store.add("sys_user_has_role", sys_id="A1", user="U1", role="R1")
    store.add("sys_user_has_role", sys_id="A2", user="U1", role="R1")
    store.fail("delete", "sys_user_has_role", sys_id="A1", error=ServiceNowAPIError(403, "ACL", "x"))

    with pytest.raises(ServiceNowAPIError):
        role_service.revoke(ALICE, "R1")

    assert len(store.tables["sys_user_has_role"]) == 2


@pytest.mark.parametrize("principal,role_id", [
    (ResourceId("role", "R2"), "R1"),
    (ResourceId("user", ""), "R1"),
    (ResourceId("group", ""), "R1"),
    (ALICE, ""),
    ("user:U1", "R1"),
])
def test_invalid_requests_fail_before_any_call(store, role_service, principal, role_id):
    with pytest.raises(PreconditionError):
        role_service.grant(principal, role_id)
    with pytest.raises(PreconditionError):
        role_service.revoke(principal, role_id)

    assert store.calls == []


def test_precondition_error_is_a_value_error():
    assert issubclass(PreconditionError, ValueError)


def test_get_role_and_listing_only_grantable(store, role_service):
    store.add("sys_user_role", sys_id="R1", name="itil", grantable="true")
    store.add("sys_user_role", sys_id="R2", name="security_admin", grantable="false")

    assert role_service.get_role("R2").grantable is False

    roles, token = RoleService(store, page_size=10).list_roles()
    assert [r.display_name for r in roles] == ["itil"]
    assert roles[0].profile == {"role_name": "itil", "role_id": "R1"}
    assert token == ""
