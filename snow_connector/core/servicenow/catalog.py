"""Service catalog items, their variables, and requested-item tickets.

Variable type codes are decoded once, at the boundary, into ``VariableType``;
codes the connector does not know become ``VariableType.UNSPECIFIED``. Catalog
items are exposed as ticket schemas and ``sc_req_item`` records as tickets.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..resources import RESOURCE_TYPE_CATALOG_ITEM
from .client import ServiceNowClient
from .exceptions import ResponseDecodeError
from .models import parse_bool, reference_value
from .pagination import after_page, flat_cursor
from .query import all_of, catalog_items_filter, clause

logger = logging.getLogger(__name__)

CATALOG_ITEM_TABLE = "sc_cat_item"
REQUESTED_ITEM_TABLE = "sc_req_item"
CHOICE_TABLE = "sys_choice"
LABEL_ENTRY_TABLE = "label_entry"
ITEM_OPTION_TABLE = "item_option_new"
QUESTION_CHOICE_TABLE = "question_choice"
VARIABLE_SET_LINK_TABLE = "io_set_item"

ITEM_OPTION_FIELDS = [
    "sys_id", "name", "question_text", "type", "mandatory", "default_value",
    "reference", "attributes", "active", "read_only", "cat_item", "variable_set", "reference_qual",
]
QUESTION_CHOICE_FIELDS = ["sys_id", "label", "value", "question"]
VARIABLE_SET_LINK_FIELDS = ["sys_id", "variable_set"]
CATALOG_ITEM_FIELDS = ["sys_id", "name", "short_description", "sc_catalogs", "category", "active"]
REQUESTED_ITEM_FIELDS = [
    "sys_id", "number", "short_description", "description", "state", "cat_item",
    "sys_created_on", "sys_updated_on", "closed_at",
]
CHOICE_FIELDS = ["sys_id", "label", "value"]
LABEL_ENTRY_FIELDS = ["sys_id", "label.name"]

REQUESTED_ITEM_STATES_QUERY = "name=sc_req_item^element=state^inactive=false"
CATALOG_ITEM_FIELD_ID = "catalog_item"

# Table API renders glide_date_time in UTC with this layout.
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

VARIABLE_SET_LINK_LIMIT = 200
VARIABLE_LIMIT = 500
CHOICE_LIMIT = 1000
LABEL_LIMIT = 100


class VariableType(IntEnum):
    """ServiceNow catalog variable type codes (13 and 30 are unassigned)."""
    UNSPECIFIED = 0
    YES_NO = 1
    MULTI_LINE_TEXT = 2
    MULTIPLE_CHOICE = 3
    NUMERIC_SCALE = 4
    SELECT_BOX = 5
    SINGLE_LINE_TEXT = 6
    CHECK_BOX = 7
    REFERENCE = 8
    DATE = 9
    DATE_TIME = 10
    LABEL = 11
    BREAK = 12
    MACRO = 14
    UI_PAGE = 15
    WIDE_SINGLE_LINE_TEXT = 16
    MACRO_WITH_LABEL = 17
    LOOKUP_SELECT_BOX = 18
    CONTAINER_START = 19
    CONTAINER_END = 20
    LIST_COLLECTOR = 21
    LOOKUP_MULTIPLE_CHOICE = 22
    HTML = 23
    SPLIT = 24
    MASKED = 25
    EMAIL = 26
    URL = 27
    IP_ADDRESS = 28
    DURATION = 29
    REQUESTED_FOR = 31
    RICH_TEXT_LABEL = 32
    ATTACHMENT = 33

    @classmethod
    def parse(cls, raw: Any) -> "VariableType":
        """Decode a raw type code (string or number); anything unknown is UNSPECIFIED."""
        if isinstance(raw, bool):
            return cls.UNSPECIFIED
        if isinstance(raw, int):
            code = raw
        elif isinstance(raw, float) and raw.is_integer():
            code = int(raw)
        elif isinstance(raw, str) and raw.isdigit() and raw.isascii():
            code = int(raw)
        else:
            return cls.UNSPECIFIED
        try:
            return cls(code)
        except ValueError:
            return cls.UNSPECIFIED


class FieldKind(str, Enum):
    """Ticket form-field kind a catalog variable is rendered as."""
    BOOL = "bool"
    STRING = "string"
    PICK_ONE = "pick_one"
    PICK_MANY = "pick_many"
    TIMESTAMP = "timestamp"


_FIELD_KINDS = {
    VariableType.YES_NO: FieldKind.BOOL,
    VariableType.CHECK_BOX: FieldKind.BOOL,
    VariableType.MULTI_LINE_TEXT: FieldKind.STRING,
    VariableType.SINGLE_LINE_TEXT: FieldKind.STRING,
    VariableType.WIDE_SINGLE_LINE_TEXT: FieldKind.STRING,
    VariableType.HTML: FieldKind.STRING,
    VariableType.EMAIL: FieldKind.STRING,
    VariableType.URL: FieldKind.STRING,
    VariableType.IP_ADDRESS: FieldKind.STRING,
    VariableType.REFERENCE: FieldKind.STRING,
    VariableType.REQUESTED_FOR: FieldKind.STRING,
    VariableType.LIST_COLLECTOR: FieldKind.STRING,
    VariableType.DURATION: FieldKind.STRING,
    VariableType.MULTIPLE_CHOICE: FieldKind.PICK_MANY,
    VariableType.LOOKUP_MULTIPLE_CHOICE: FieldKind.PICK_MANY,
    VariableType.SELECT_BOX: FieldKind.PICK_ONE,
    VariableType.LOOKUP_SELECT_BOX: FieldKind.PICK_ONE,
    VariableType.DATE: FieldKind.TIMESTAMP,
    VariableType.DATE_TIME: FieldKind.TIMESTAMP,
}


@dataclass(frozen=True)
class Choice:
    label: str
    value: str


@dataclass
class CatalogItemVariable:
    id: str
    name: str
    label: str = ""
    type: VariableType = VariableType.UNSPECIFIED
    mandatory: bool = False
    active: bool = False
    read_only: bool = False
    value: str = ""
    attributes: str = ""
    reference: str = ""
    ref_qualifier: str = ""
    choices: List[Choice] = field(default_factory=list)

    @classmethod
    def from_item_option(cls, row: Dict[str, Any], choices: Iterable[Dict[str, Any]] = ()) -> "CatalogItemVariable":
        """Map an ``item_option_new`` row and its ``question_choice`` rows."""
        return cls(
            id=str(row.get("sys_id") or ""),
            name=str(row.get("name") or ""),
            label=str(row.get("question_text") or ""),
            type=VariableType.parse(row.get("type")),
            mandatory=parse_bool(row.get("mandatory")),
            active=parse_bool(row.get("active")),
            read_only=parse_bool(row.get("read_only")),
            value=str(row.get("default_value") or ""),
            attributes=str(row.get("attributes") or ""),
            reference=reference_value(row.get("reference")),
            ref_qualifier=str(row.get("reference_qual") or ""),
            choices=[Choice(str(c.get("label") or ""), str(c.get("value") or "")) for c in choices],
        )

    def field_kind(self) -> Optional[FieldKind]:
        """Return the form-field kind, or None for variables that are not rendered.

        Inactive and read-only variables are skipped, as are layout and
        unsupported types (labels, containers, macros, attachments, ...).
        """
        if not self.active or self.read_only:
            return None
        kind = _FIELD_KINDS.get(self.type)
        if kind is None and self.mandatory and self.type != VariableType.UNSPECIFIED:
            logger.error("[catalog] Unsupported mandatory variable '%s' (type=%s)", self.name, self.type.name)
        return kind


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a Table API date-time; empty values are None.

    Raises:
        ResponseDecodeError: If the value is not in ``DATETIME_FORMAT``
    """
    if not value:
        return None
    try:
        return datetime.strptime(str(value), DATETIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise ResponseDecodeError(f"Invalid date-time '{value}'") from exc


@dataclass(frozen=True)
class TicketStatus:
    id: str
    display_name: str = ""


@dataclass
class TicketField:
    id: str
    display_name: str
    kind: FieldKind
    required: bool = False
    choices: List[Choice] = field(default_factory=list)


@dataclass
class TicketSchema:
    """A catalog item as a ticket form: the item picker plus its rendered variables."""
    id: str
    display_name: str
    fields: Dict[str, TicketField] = field(default_factory=dict)
    statuses: List[TicketStatus] = field(default_factory=list)


@dataclass
class Ticket:
    id: str
    display_name: str
    description: str = ""
    status: Optional[TicketStatus] = None
    labels: List[str] = field(default_factory=list)
    url: str = ""
    schema_id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CatalogService:
    """Reads catalog items, their variables and requested items through the Table API."""

    def __init__(
        self,
        client: ServiceNowClient,
        page_size: int = 50,
        catalog_id: str = "",
        category_id: str = "",
    ):
        """Initialize catalog service.

        Args:
            client: ServiceNow client
            page_size: Catalog items per ticket-schema page
            catalog_id: Only expose items published in this ``sc_catalog``
            category_id: Only expose items in this ``sc_category``
        """
        self.client = client
        self.page_size = page_size
        self.catalog_id = catalog_id
        self.category_id = category_id

    def _variables(self, query: str) -> List[Dict[str, Any]]:
        page = self.client.query(ITEM_OPTION_TABLE, query, ITEM_OPTION_FIELDS, limit=VARIABLE_LIMIT)
        return page.records

    def _choices_by_question(self, variable_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        if not variable_ids:
            return {}
        page = self.client.query(
            QUESTION_CHOICE_TABLE,
            "questionIN" + ",".join(variable_ids),
            QUESTION_CHOICE_FIELDS,
            limit=CHOICE_LIMIT,
        )
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for choice in page.records:
            grouped.setdefault(reference_value(choice.get("question")), []).append(choice)
        return grouped

    def _map(self, rows: List[Dict[str, Any]]) -> List[CatalogItemVariable]:
        choices = self._choices_by_question([str(r.get("sys_id")) for r in rows if r.get("sys_id")])
        return [
            CatalogItemVariable.from_item_option(row, choices.get(str(row.get("sys_id")), []))
            for row in rows
        ]

    def get_item_variables(self, item_id: str) -> List[CatalogItemVariable]:
        """Return the variables of a catalog item, including variable-set variables.

        Variables defined directly on the item win when a set variable has
        the same id.

        Args:
            item_id: ``sc_cat_item`` sys_id

        Returns:
            Direct variables followed by variable-set variables
        """
        direct = self._map(self._variables(f"cat_item={item_id}"))

        links = self.client.query(
            VARIABLE_SET_LINK_TABLE,
            f"sc_cat_item={item_id}",
            VARIABLE_SET_LINK_FIELDS,
            limit=VARIABLE_SET_LINK_LIMIT,
        ).records
        set_ids = [reference_value(link.get("variable_set")) for link in links]
        set_ids = [s for s in set_ids if s]
        if not set_ids:
            return direct

        from_sets = self._map(self._variables("variable_setIN" + ",".join(set_ids)))

        seen = {v.id for v in direct}
        merged = list(direct)
        merged.extend(v for v in from_sets if v.id not in seen)
        return merged

    # ─────────────────────────────────────────────────────────────────────────
    # Ticketing
    # ─────────────────────────────────────────────────────────────────────────
    def ticket_statuses(self) -> List[TicketStatus]:
        """Return the active ``sc_req_item`` state choices."""
        page = self.client.query(CHOICE_TABLE, REQUESTED_ITEM_STATES_QUERY, CHOICE_FIELDS, limit=CHOICE_LIMIT)
        return [
            TicketStatus(id=str(c.get("value") or ""), display_name=str(c.get("label") or ""))
            for c in page.records
        ]

    def _schema(self, item: Dict[str, Any], statuses: List[TicketStatus]) -> TicketSchema:
        item_id = str(item.get("sys_id") or "")
        name = str(item.get("name") or "")
        fields: Dict[str, TicketField] = {
            CATALOG_ITEM_FIELD_ID: TicketField(
                id=CATALOG_ITEM_FIELD_ID,
                display_name="Catalog Item",
                kind=FieldKind.PICK_ONE,
                required=True,
                choices=[Choice(name, item_id)],
            ),
        }
        for variable in self.get_item_variables(item_id):
            kind = variable.field_kind()
            if kind is None:
                continue
            fields[variable.name] = TicketField(
                id=variable.id,
                display_name=variable.label or variable.name,
                kind=kind,
                required=variable.mandatory,
                choices=list(variable.choices),
            )
        return TicketSchema(id=item_id, display_name=name, fields=fields, statuses=statuses)

    def list_ticket_schemas(self, token: Optional[str] = None) -> Tuple[List[TicketSchema], str]:
        """List one page of active catalog items as ticket schemas.

        Items are filtered by the configured catalog and category.

        Args:
            token: Cursor returned by the previous call ("" or None to start)

        Returns:
            Tuple of (ticket schemas, next cursor token; "" when done)

        Raises:
            CursorDecodeError: If the token is malformed
            ServiceNowAPIError: On HTTP error
        """
        cursor = flat_cursor(token, RESOURCE_TYPE_CATALOG_ITEM)
        offset = cursor.top().offset

        page = self.client.query(
            CATALOG_ITEM_TABLE,
            catalog_items_filter(self.catalog_id, self.category_id),
            CATALOG_ITEM_FIELDS,
            limit=self.page_size,
            offset=offset,
        )
        statuses = self.ticket_statuses() if page.records else []
        schemas = [self._schema(item, statuses) for item in page.records]
        cursor = after_page(cursor, len(page.records), page.is_last(offset, self.page_size))
        return schemas, cursor.encode()

    def get_ticket_schema(self, item_id: str) -> TicketSchema:
        """Fetch one catalog item as a ticket schema.

        Raises:
            ResourceNotFoundError: If the item does not exist
        """
        item = self.client.get(CATALOG_ITEM_TABLE, item_id, CATALOG_ITEM_FIELDS)
        return self._schema(item, self.ticket_statuses())

    def _labels(self, ticket_id: str) -> List[str]:
        query = all_of(clause("table", REQUESTED_ITEM_TABLE), clause("table_key", ticket_id))
        page = self.client.query(LABEL_ENTRY_TABLE, query, LABEL_ENTRY_FIELDS, limit=LABEL_LIMIT)
        return [str(e["label.name"]) for e in page.records if e.get("label.name")]

    def get_ticket(self, ticket_id: str) -> Ticket:
        """Fetch a requested item (``sc_req_item``) as a ticket.

        Raises:
            ResourceNotFoundError: If the requested item does not exist
            ResponseDecodeError: If a timestamp cannot be parsed
        """
        record = self.client.get(REQUESTED_ITEM_TABLE, ticket_id, REQUESTED_ITEM_FIELDS)
        sys_id = str(record.get("sys_id") or ticket_id)

        state = str(record.get("state") or "")
        state_names = {s.id: s.display_name for s in self.ticket_statuses()} if state else {}

        return Ticket(
            id=sys_id,
            display_name=str(record.get("number") or ""),
            description=str(record.get("description") or record.get("short_description") or ""),
            status=TicketStatus(state, state_names.get(state, "")) if state else None,
            labels=self._labels(sys_id),
            url=f"{self.client.base_url}/{REQUESTED_ITEM_TABLE}.do?sys_id={sys_id}",
            schema_id=reference_value(record.get("cat_item")),
            created_at=parse_datetime(record.get("sys_created_on")),
            updated_at=parse_datetime(record.get("sys_updated_on")),
            completed_at=parse_datetime(record.get("closed_at")),
        )
