"""Pytest shared fixtures: in-memory ServiceNow table store and services."""
import itertools
import os
import pathlib
import sys
from collections import defaultdict

import pytest

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from snow_connector.core.servicenow.client import ServiceNowClient
from snow_connector.core.servicenow.exceptions import ResourceNotFoundError, ServiceNowAPIError
from snow_connector.core.servicenow.groups import GroupService
from snow_connector.core.servicenow.models import HasMore, NoSignal, Page, TotalCount
from snow_connector.core.servicenow.roles import RoleService
from snow_connector.core.servicenow.users import UserService


# ─────────────────────────────────────────────────────────────────────────────
# In-memory table store
# ─────────────────────────────────────────────────────────────────────────────
def _clause_matches(record, clause):
    if "=" in clause:
        field, _, value = clause.partition("=")
        return str(record.get(field, "")) == value
    if "ENDSWITH" in clause:
        field, _, value = clause.partition("ENDSWITH")
        return str(record.get(field, "")).endswith(value)
    if "LIKE" in clause:
        field, _, value = clause.partition("LIKE")
        return value in str(record.get(field, ""))
    if "IN" in clause:
        field, _, values = clause.partition("IN")
        return str(record.get(field, "")) in values.split(",")
    raise AssertionError(f"Unsupported clause in fake store: {clause!r}")


def _matches(record, query):
    """Evaluate an encoded query; ``^OR`` binds tighter than ``^``."""
    if not query:
        return True
    groups = []
    for token in query.split("^"):
        if token.startswith("OR") and groups:
            groups[-1].append(token[2:])
        else:
            groups.append([token])
    return all(any(_clause_matches(record, c) for c in group) for group in groups)


class FakeTableStore(ServiceNowClient):
    """ServiceNowClient backed by in-memory tables.

    Only the transport methods are replaced, so ``query_all`` and
    ``delete_all`` run the real client logic.

    Args:
        signal: Paging header the fake instance sends: "total" (X-Total-Count),
            "link" (Link rel="next" only) or "none"
    """

    def __init__(self, signal="total"):
        super().__init__("https://test.service-now.com", "integration", "secret")
        self.signal = signal
        self.tables = defaultdict(list)
        self.calls = []
        self._failures = []
        self._ids = itertools.count(1)

    # Test helpers -----------------------------------------------------------
    def add(self, table, /, sys_id=None, **fields):
        record = {"sys_id": sys_id or f"{table}-{next(self._ids)}"}
        record.update(fields)
        self.tables[table].append(record)
        return record

    def fail(self, method, table, sys_id=None, error=None, times=1):
        """Make the next ``times`` matching calls raise ``error``."""
        error = error or ServiceNowAPIError(500, "injected failure", f"{method} {table}")
        self._failures.append({"method": method, "table": table, "sys_id": sys_id, "error": error, "times": times})

    def calls_to(self, method, table=None):
        return [c for c in self.calls if c[0] == method and (table is None or c[1] == table)]

    def _record_call(self, method, table, sys_id=None, **extra):
        self.calls.append((method, table, sys_id, extra))
        for failure in self._failures:
            if failure["times"] <= 0:
                continue
            if failure["method"] != method or failure["table"] != table:
                continue
            if failure["sys_id"] is not None and failure["sys_id"] != sys_id:
                continue
            failure["times"] -= 1
            raise failure["error"]

    def _signal(self, offset, returned, total):
        if self.signal == "total":
            return TotalCount(total)
        if self.signal == "link" and offset + returned < total:
            return HasMore(offset + returned)
        return NoSignal()

    # Client contract --------------------------------------------------------
    def query(self, table, query="", fields=None, limit=0, offset=0):
        self._record_call("query", table, query=query, limit=limit, offset=offset)
        matched = [dict(r) for r in self.tables[table] if _matches(r, query)]
        records = matched[offset:offset + limit] if limit else matched[offset:]
        return Page(records=records, signal=self._signal(offset, len(records), len(matched)))

    def get(self, table, sys_id, fields=None):
        self._record_call("get", table, sys_id)
        for record in self.tables[table]:
            if record["sys_id"] == sys_id:
                return dict(record)
        raise ResourceNotFoundError(f"{table} record '{sys_id}' not found")

    def create(self, table, payload):
        self._record_call("create", table, payload=payload)
        return dict(self.add(table, **payload))

    def update(self, table, sys_id, payload):
        self._record_call("update", table, sys_id, payload=payload)
        for record in self.tables[table]:
            if record["sys_id"] == sys_id:
                record.update(payload)
                return dict(record)
        raise ServiceNowAPIError(404, "No Record found", f"{table}/{sys_id}")

    def delete(self, table, sys_id):
        self._record_call("delete", table, sys_id)
        before = len(self.tables[table])
        self.tables[table] = [r for r in self.tables[table] if r["sys_id"] != sys_id]
        if len(self.tables[table]) == before:
            raise ServiceNowAPIError(404, "No Record found", f"{table}/{sys_id}")


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture
def make_store():
    """Factory for stores with a chosen paging signal."""
    return FakeTableStore


@pytest.fixture
def store():
    return FakeTableStore()


@pytest.fixture
def role_service(store):
    return RoleService(store, page_size=1)


@pytest.fixture
def group_service(store):
    return GroupService(store, page_size=2)


@pytest.fixture
def user_service(store):
    return UserService(store, page_size=2)


@pytest.fixture
def role_graph(store):
    """Role R1 held by users U1, U2 and group G1."""
    store.add("sys_user_role", sys_id="R1", name="itil", grantable="true")
    store.add("sys_user", sys_id="U1", user_name="alice", email="alice@example.com", active="true")
    store.add("sys_user", sys_id="U2", user_name="bob", email="bob@example.com", active="true")
    store.add("sys_user_group", sys_id="G1", name="Service Desk", description="Tier 1")
    store.add("sys_user_has_role", user="U1", role="R1", inherited="false")
    store.add("sys_user_has_role", user="U2", role="R1", inherited="false")
    store.add("sys_group_has_role", group="G1", role="R1", inherits="true")
    return store


@pytest.fixture
def clean_env(monkeypatch):
    """Remove connector settings from the environment."""
    for key in list(os.environ):
        if key.startswith("SERVICENOW_") or key in ("SNOW_LOG_LEVEL", "AUDIT_LOG_SIGNING_KEY"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
