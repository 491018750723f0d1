"""Unit tests for user listing, provisioning and account actions."""
from unittest.mock import MagicMock

import pytest

from snow_connector.core.servicenow.exceptions import PreconditionError, ResourceNotFoundError
from snow_connector.core.servicenow.models import Page, TotalCount, User
from snow_connector.core.servicenow.users import UserService, user_resource

PROFILE = {
    "user_name": "jdoe",
    "email": "jdoe@example.com",
    "first_name": "John",
    "last_name": "Doe",
}


def test_user_resource_maps_profile_and_status():
    user = User(
        id="U1",
        user_name="jdoe",
        email="jdoe@example.com",
        first_name="John",
        last_name="Doe",
        roles="itil,admin",
        active=True,
        custom_fields={"u_department": "engineering"},
    )

    resource = user_resource(user)

    assert str(resource.id) == "user:U1"
    assert resource.display_name == "jdoe"
    assert resource.login == "jdoe"
    assert resource.email == "jdoe@example.com"
    assert resource.status == "enabled"
    assert resource.profile["user_roles"] == "itil,admin"
    assert resource.profile["u_department"] == "engineering"


@pytest.mark.parametrize("active,status", [("true", "enabled"), ("1", "enabled"), ("false", "disabled"), ("maybe", "disabled")])
def test_unknown_active_values_map_to_disabled(active, status):
    user = User.from_record({"sys_id": "U1", "user_name": "jdoe", "active": active})

    assert user_resource(user).status == status


def test_list_users_pages_with_flat_cursor(store, user_service):
    for i in range(3):
        store.add("sys_user", sys_id=f"U{i}", user_name=f"user{i}", active="true")

    first, token = user_service.list_users("")
    second, final = user_service.list_users(token)

    assert [r.login for r in first] == ["user0", "user1"]
    assert [r.login for r in second] == ["user2"]
    assert final == ""


def test_list_users_applies_allowed_domains(store):
    store.add("sys_user", sys_id="U1", user_name="alice", email="alice@example.com")
    store.add("sys_user", sys_id="U2", user_name="mallory", email="mallory@evil.test")
    store.add("sys_user", sys_id="U3", user_name="bob", email="bob@corp.example.org")
    service = UserService(store, page_size=10, allowed_domains=["example.com", "corp.example.org"])

    users, token = service.list_users()

    assert [u.login for u in users] == ["alice", "bob"]
    assert store.calls_to("query")[0][3]["query"] == (
        "emailENDSWITH@example.com^ORemailENDSWITH@corp.example.org"
    )


def test_list_users_filters_ids_and_domains_together():
    client = MagicMock()
    client.query.return_value = Page(records=[], signal=TotalCount(0))
    service = UserService(client, page_size=5, allowed_domains=["example.com"])

    users, token = service.list_users(user_ids=["U1", "U2"])

    assert users == [] and token == ""
    args, kwargs = client.query.call_args
    assert args[1] == "sys_id=U1^ORsys_id=U2^emailENDSWITH@example.com"
    assert kwargs == {"limit": 5, "offset": 0}


def test_get_user_not_found_propagates(user_service):
    with pytest.raises(ResourceNotFoundError):
        user_service.get_user("missing")


def test_create_account_posts_active_user(store, user_service):
    resource = user_service.create_account(dict(PROFILE))

    [created] = store.tables["sys_user"]
    assert created["active"] == "true"
    assert created["user_name"] == "jdoe"
    assert resource.login == "jdoe"
    assert resource.status == "enabled"


def test_create_account_accepts_username_alias(store, user_service):
    profile = dict(PROFILE)
    profile["username"] = profile.pop("user_name")

    assert user_service.create_account(profile).login == "jdoe"


@pytest.mark.parametrize("missing", ["user_name", "email", "first_name", "last_name"])
def test_create_account_requires_profile_fields(store, user_service, missing):
    profile = dict(PROFILE)
    profile[missing] = ""

    with pytest.raises(PreconditionError, match=missing):
        user_service.create_account(profile)

    assert store.calls == []


def test_create_account_rejects_non_string_values(store, user_service):
    profile = dict(PROFILE, email=42)

    with pytest.raises(PreconditionError):
        user_service.create_account(profile)


def test_set_active_patches_flag(store, user_service):
    store.add("sys_user", sys_id="U1", user_name="jdoe", active="true")

    user = user_service.set_active("U1", False)

    assert user.active is False
    assert store.calls_to("update")[0][3]["payload"] == {"active": "false"}

    assert user_service.set_active("U1", True).active is True


def test_set_active_requires_id(store, user_service):
    with pytest.raises(PreconditionError):
        user_service.set_active("", True)
    assert store.calls == []
