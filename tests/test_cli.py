import json
import sys
import tempfile
from pathlib import Path

import pytest

import scripts.snow as snow
from scripts import audit
from snow_connector.config.settings import AppConfig
from snow_connector.connector import ServiceNowConnector


@pytest.fixture(autouse=True)
def restore_sys_argv():
    """Make sure every test sees a clean CLI invocation."""
    original = sys.argv[:]
    yield
    sys.argv = original


@pytest.fixture
def audit_file(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        audit_dir = Path(tmpdir) / "audit"
        path = audit_dir / "snow-events.jsonl"
        monkeypatch.setattr(audit, "AUDIT_LOG_DIR", audit_dir)
        monkeypatch.setattr(audit, "AUDIT_LOG_FILE", path)
        monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "cli-test-key")
        monkeypatch.delenv("AUDIT_LOG_SIGNING_KEY_FILE", raising=False)
        yield path


@pytest.fixture
def cli(monkeypatch, role_graph, audit_file, capsys):
    """Run the CLI against the in-memory store; returns parsed stdout JSON."""
    config = AppConfig(deployment="acme", username="integration", password="secret")
    monkeypatch.setattr(snow, "load_settings", lambda: config)
    monkeypatch.setattr(
        snow.ServiceNowConnector,
        "from_settings",
        classmethod(lambda cls, cfg: ServiceNowConnector(role_graph, page_size=10)),
    )

    def run(*argv):
        sys.argv = ["snow.py", *argv]
        snow.main()
        out = capsys.readouterr().out
        return json.loads(out) if out.strip() else None

    return run


def _events(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_validate(cli):
    assert cli("validate") == {"valid": True, "instance": "https://acme.service-now.com"}


def test_list_users(cli):
    out = cli("list-users")

    assert [r["login"] for r in out["resources"]] == ["alice", "bob"]
    assert out["next_token"] == ""


def test_role_grants(cli):
    principals = []
    token = ""
    while True:
        out = cli("role-grants", "--role", "R1", "--token", token)
        principals.extend(g["principal"] for g in out["grants"])
        token = out["next_token"]
        if not token:
            break

    assert principals == ["user:U1", "user:U2", "group:G1"]


def test_group_grant_output_is_expandable(cli):
    out = cli("role-grants", "--role", "R1")
    out = cli("role-grants", "--role", "R1", "--token", out["next_token"])

    [group_grant] = out["grants"]
    assert group_grant["expandable"] == {"entitlements": ["group:G1:member"], "shallow": True}


def test_grant_role_is_audited(cli, audit_file, role_graph):
    out = cli("--operator", "alice", "grant-role", "--role", "R2", "--user", "U1")

    assert out == {"principal": "user:U1", "entitlement": "role:R2:member", "result": "granted"}
    [event] = _events(audit_file)
    assert event["event_type"] == "role_grant"
    assert event["operator"] == "alice"
    assert event["target"] == "role:R2:member"
    assert event["details"] == {"result": "granted"}
    assert audit.verify_audit_log() == (1, 1)


def test_revoke_role_from_group(cli, audit_file):
    out = cli("revoke-role", "--role", "R1", "--group", "G1")

    assert out["result"] == "revoked"
    assert _events(audit_file)[0]["principal"] == "group:G1"


def test_membership_commands(cli, audit_file):
    assert cli("add-member", "--group", "G1", "--user", "U2")["result"] == "granted"
    assert cli("remove-member", "--group", "G1", "--user", "U2")["result"] == "revoked"
    assert cli("remove-member", "--group", "G1", "--user", "U2")["result"] == "already_revoked"

    assert [e["event_type"] for e in _events(audit_file)] == [
        "group_member_add", "group_member_remove", "group_member_remove",
    ]


def test_partial_revoke_is_audited_and_exits(cli, audit_file, role_graph, capsys):
    role_graph.add("sys_user_has_role", sys_id="A1", user="U3", role="R5")
    role_graph.add("sys_user_has_role", sys_id="A2", user="U3", role="R5")
    role_graph.fail("delete", "sys_user_has_role", sys_id="A2")

    with pytest.raises(SystemExit) as exc_info:
        cli("revoke-role", "--role", "R5", "--user", "U3")

    assert exc_info.value.code == 1
    assert "[revoke-role] Error:" in capsys.readouterr().err
    [event] = _events(audit_file)
    assert event["success"] is False
    assert event["details"]["deleted_ids"] == ["A1"]
    assert event["details"]["failed_id"] == "A2"


def test_create_and_disable_account(cli, audit_file):
    created = cli("create-account", "--username", "jdoe", "--email", "jdoe@example.com",
                  "--first", "John", "--last", "Doe")
    user_id = created["id"].split(":", 1)[1]

    disabled = cli("disable-user", "--user", user_id)

    assert created["status"] == "enabled"
    assert disabled["status"] == "disabled"
    assert [e["event_type"] for e in _events(audit_file)] == ["account_create", "account_disable"]


def test_catalog_variables(cli, role_graph):
    role_graph.add("item_option_new", sys_id="V1", name="env", type="5", active="true", cat_item="ITEM1")
    role_graph.add("question_choice", label="Dev", value="dev", question="V1")

    [variable] = cli("catalog-variables", "--item", "ITEM1")["variables"]

    assert variable["type"] == "SELECT_BOX"
    assert variable["field_kind"] == "pick_one"
    assert variable["choices"] == [{"label": "Dev", "value": "dev"}]


def test_precondition_error_exits_non_zero(cli, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli("enable-user", "--user", "")

    assert exc_info.value.code == 1
    assert "User id is required" in capsys.readouterr().err


def test_missing_settings_exit(monkeypatch, clean_env, capsys):
    def fail():
        raise RuntimeError("Environment variable SERVICENOW_USERNAME is required.")

    monkeypatch.setattr(snow, "load_settings", fail)
    sys.argv = ["snow.py", "validate"]

    with pytest.raises(SystemExit) as exc_info:
        snow.main()

    assert exc_info.value.code == 1
    assert "[settings] Error:" in capsys.readouterr().err


def test_mutually_exclusive_principal(cli):
    with pytest.raises(SystemExit):
        cli("grant-role", "--role", "R1", "--user", "U1", "--group", "G1")


def test_ticket_schemas_and_get_ticket(cli, role_graph):
    role_graph.add("sc_cat_item", sys_id="ITEM1", name="Laptop", active="true")
    role_graph.add("sys_choice", name="sc_req_item", element="state", inactive="false", label="Pending", value="1")
    role_graph.add("sc_req_item", sys_id="RITM1", number="RITM0010001", state="1", cat_item="ITEM1",
                   sys_created_on="2024-03-01 09:15:00", closed_at="")

    out = cli("ticket-schemas")
    ticket = cli("get-ticket", "--id", "RITM1")

    [schema] = out["schemas"]
    assert out["next_token"] == ""
    assert schema["fields"]["catalog_item"]["choices"] == [{"label": "Laptop", "value": "ITEM1"}]
    assert schema["statuses"] == [{"id": "1", "display_name": "Pending"}]
    assert ticket["status"] == {"id": "1", "display_name": "Pending"}
    assert ticket["created_at"] == "2024-03-01T09:15:00+00:00"
    assert ticket["completed_at"] is None


def test_missing_ticket_exits_non_zero(cli, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli("get-ticket", "--id", "RITM404")

    assert exc_info.value.code == 1
    assert "[get-ticket] Error:" in capsys.readouterr().err


def test_invalid_log_level_flag_is_a_usage_error(cli, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli("--log-level", "LOUD", "validate")

    assert exc_info.value.code == 2
    assert "invalid choice" in capsys.readouterr().err


def test_invalid_log_level_env_is_a_usage_error(cli, monkeypatch, capsys):
    monkeypatch.setenv("SNOW_LOG_LEVEL", "verbose")

    with pytest.raises(SystemExit) as exc_info:
        cli("validate")

    assert exc_info.value.code == 2
    assert "invalid log level 'VERBOSE'" in capsys.readouterr().err


def test_log_level_is_case_insensitive(cli, monkeypatch):
    monkeypatch.setenv("SNOW_LOG_LEVEL", "warning")

    assert cli("--log-level", "debug", "validate")["valid"] is True
    assert cli("validate")["valid"] is True
