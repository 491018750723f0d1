"""Command-line wrapper around the ServiceNow connector.

Every command prints JSON on stdout. Mutations are recorded in the audit trail.
"""
from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from datetime import datetime
from typing import Any, Optional

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from snow_connector.config.settings import load_settings
from snow_connector.connector import ServiceNowConnector
from snow_connector.core.resources import (
    RESOURCE_TYPE_GROUP,
    RESOURCE_TYPE_ROLE,
    RESOURCE_TYPE_USER,
    MEMBER_SLUG,
    Entitlement,
    Grant,
    Resource,
    ResourceId,
)
from snow_connector.core.servicenow.catalog import CatalogItemVariable, Ticket, TicketSchema
from snow_connector.core.servicenow.exceptions import PartialRevokeError, ServiceNowError
from scripts import audit

# Audit event per mutating command
_ROLE_EVENTS = {"grant-role": "role_grant", "revoke-role": "role_revoke"}
_MEMBER_EVENTS = {"add-member": "group_member_add", "remove-member": "group_member_remove"}
_ACCOUNT_EVENTS = {"enable-user": "account_enable", "disable-user": "account_disable"}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _resource_json(resource: Resource) -> dict[str, Any]:
    return {
        "id": str(resource.id),
        "type": resource.resource_type,
        "display_name": resource.display_name,
        "login": resource.login,
        "email": resource.email,
        "status": resource.status,
        "profile": resource.profile,
    }


def _grant_json(grant: Grant) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": grant.id,
        "entitlement": grant.entitlement.id,
        "principal": str(grant.principal),
        "inherited": grant.inherited,
    }
    if grant.expandable:
        data["expandable"] = {
            "entitlements": list(grant.expandable.entitlement_ids),
            "shallow": grant.expandable.shallow,
        }
    return data


def _variable_json(variable: CatalogItemVariable) -> dict[str, Any]:
    kind = variable.field_kind()
    return {
        "id": variable.id,
        "name": variable.name,
        "label": variable.label,
        "type": variable.type.name,
        "mandatory": variable.mandatory,
        "field_kind": kind.value if kind else None,
        "default": variable.value,
        "choices": [{"label": c.label, "value": c.value} for c in variable.choices],
    }


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _schema_json(schema: TicketSchema) -> dict[str, Any]:
    return {
        "id": schema.id,
        "display_name": schema.display_name,
        "fields": {
            key: {
                "id": f.id,
                "display_name": f.display_name,
                "kind": f.kind.value,
                "required": f.required,
                "choices": [{"label": c.label, "value": c.value} for c in f.choices],
            }
            for key, f in schema.fields.items()
        },
        "statuses": [{"id": s.id, "display_name": s.display_name} for s in schema.statuses],
    }


def _ticket_json(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "display_name": ticket.display_name,
        "description": ticket.description,
        "status": {"id": ticket.status.id, "display_name": ticket.status.display_name} if ticket.status else None,
        "labels": ticket.labels,
        "url": ticket.url,
        "schema_id": ticket.schema_id,
        "created_at": _timestamp(ticket.created_at),
        "updated_at": _timestamp(ticket.updated_at),
        "completed_at": _timestamp(ticket.completed_at),
    }


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _principal(args: argparse.Namespace) -> ResourceId:
    if getattr(args, "group", None) and args.cmd in _ROLE_EVENTS:
        return ResourceId(RESOURCE_TYPE_GROUP, args.group)
    return ResourceId(RESOURCE_TYPE_USER, args.user)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ServiceNow identity-governance connector")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS,
                        default=os.environ.get("SNOW_LOG_LEVEL", "INFO").strip().upper() or "INFO")
    parser.add_argument("--operator", default="automation",
                        help="Operator identifier for audit logs (default: automation)")

    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("validate")
    for name in ("list-users", "list-groups", "list-roles"):
        sp = sub.add_parser(name)
        sp.add_argument("--token", default="")

    srg = sub.add_parser("role-grants")
    srg.add_argument("--role", required=True)
    srg.add_argument("--token", default="")

    sgg = sub.add_parser("group-grants")
    sgg.add_argument("--group", required=True)
    sgg.add_argument("--token", default="")

    for name in _ROLE_EVENTS:
        sr = sub.add_parser(name)
        sr.add_argument("--role", required=True)
        who = sr.add_mutually_exclusive_group(required=True)
        who.add_argument("--user")
        who.add_argument("--group")

    for name in _MEMBER_EVENTS:
        sm = sub.add_parser(name)
        sm.add_argument("--group", required=True)
        sm.add_argument("--user", required=True)

    sc = sub.add_parser("create-account")
    sc.add_argument("--username", required=True)
    sc.add_argument("--email", required=True)
    sc.add_argument("--first", required=True)
    sc.add_argument("--last", required=True)

    for name in _ACCOUNT_EVENTS:
        sa = sub.add_parser(name)
        sa.add_argument("--user", required=True)

    scv = sub.add_parser("catalog-variables")
    scv.add_argument("--item", required=True, help="sc_cat_item sys_id")

    sts = sub.add_parser("ticket-schemas")
    sts.add_argument("--token", default="")

    sgt = sub.add_parser("get-ticket")
    sgt.add_argument("--id", required=True, help="sc_req_item sys_id")

    return parser


def _run(args: argparse.Namespace, connector: ServiceNowConnector, instance: str) -> None:
    if args.cmd == "validate":
        connector.validate()
        _emit({"valid": True, "instance": instance})
    elif args.cmd in ("list-users", "list-groups", "list-roles"):
        resource_type = {
            "list-users": RESOURCE_TYPE_USER,
            "list-groups": RESOURCE_TYPE_GROUP,
            "list-roles": RESOURCE_TYPE_ROLE,
        }[args.cmd]
        resources, token = connector.list_resources(resource_type, args.token)
        _emit({"resources": [_resource_json(r) for r in resources], "next_token": token})
    elif args.cmd == "catalog-variables":
        variables = connector.catalog.get_item_variables(args.item)
        _emit({"variables": [_variable_json(v) for v in variables]})
    elif args.cmd == "ticket-schemas":
        schemas, token = connector.list_ticket_schemas(args.token)
        _emit({"schemas": [_schema_json(s) for s in schemas], "next_token": token})
    elif args.cmd == "get-ticket":
        _emit(_ticket_json(connector.get_ticket(args.id)))
    elif args.cmd == "role-grants":
        grants, token = connector.list_grants(ResourceId(RESOURCE_TYPE_ROLE, args.role), args.token)
        _emit({"grants": [_grant_json(g) for g in grants], "next_token": token})
    elif args.cmd == "group-grants":
        grants, token = connector.list_grants(ResourceId(RESOURCE_TYPE_GROUP, args.group), args.token)
        _emit({"grants": [_grant_json(g) for g in grants], "next_token": token})
    elif args.cmd in _ROLE_EVENTS or args.cmd in _MEMBER_EVENTS:
        _mutate(args, connector, instance)
    elif args.cmd == "create-account":
        profile = {
            "user_name": args.username,
            "email": args.email,
            "first_name": args.first,
            "last_name": args.last,
        }
        try:
            resource = connector.create_account(profile)
        except ServiceNowError as e:
            audit.safe_log_event("account_create", f"user:{args.username}", operator=args.operator,
                                 instance=instance, details={"error": str(e)}, success=False)
            raise
        audit.safe_log_event("account_create", str(resource.id), operator=args.operator,
                             instance=instance, details={"login": args.username, "email": args.email})
        _emit(_resource_json(resource))
    elif args.cmd in _ACCOUNT_EVENTS:
        event = _ACCOUNT_EVENTS[args.cmd]
        action = connector.enable_user if args.cmd == "enable-user" else connector.disable_user
        try:
            resource = action(args.user)
        except ServiceNowError as e:
            audit.safe_log_event(event, f"user:{args.user}", operator=args.operator,
                                 instance=instance, details={"error": str(e)}, success=False)
            raise
        audit.safe_log_event(event, f"user:{args.user}", operator=args.operator, instance=instance)
        _emit(_resource_json(resource))


def _mutate(args: argparse.Namespace, connector: ServiceNowConnector, instance: str) -> None:
    principal = _principal(args)
    if args.cmd in _ROLE_EVENTS:
        event = _ROLE_EVENTS[args.cmd]
        entitlement = Entitlement(ResourceId(RESOURCE_TYPE_ROLE, args.role), MEMBER_SLUG)
    else:
        event = _MEMBER_EVENTS[args.cmd]
        entitlement = Entitlement(ResourceId(RESOURCE_TYPE_GROUP, args.group), MEMBER_SLUG)

    try:
        if args.cmd in ("grant-role", "add-member"):
            result = connector.grant(principal, entitlement)
        else:
            result = connector.revoke(Grant(entitlement, principal))
    except ServiceNowError as e:
        details: dict[str, Any] = {"error": str(e)}
        if isinstance(e, PartialRevokeError):
            details["deleted_ids"] = e.deleted_ids
            details["failed_id"] = e.failed_id
        audit.safe_log_event(event, str(principal), target=entitlement.id, operator=args.operator,
                             instance=instance, details=details, success=False)
        raise

    audit.safe_log_event(event, str(principal), target=entitlement.id, operator=args.operator,
                         instance=instance, details={"result": result.value})
    _emit({"principal": str(principal), "entitlement": entitlement.id, "result": result.value})


def main() -> None:
    """Command-line entry point."""
    parser = build_parser()
    args = parser.parse_args()
    # choices does not apply to the SNOW_LOG_LEVEL default
    if args.log_level not in LOG_LEVELS:
        parser.error(f"invalid log level {args.log_level!r} (choose from {', '.join(LOG_LEVELS)})")

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )

    if not args.cmd:
        parser.print_help()
        return

    try:
        config = load_settings()
    except RuntimeError as e:
        print(f"[settings] Error: {e}", file=sys.stderr)
        sys.exit(1)

    connector = ServiceNowConnector.from_settings(config)

    try:
        _run(args, connector, config.base_url)
    except ServiceNowError as e:
        print(f"[{args.cmd}] Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
